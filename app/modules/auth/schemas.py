from pydantic import BaseModel
from typing import List, Optional
from uuid import UUID


class AuthContext(BaseModel):
    """Identidad del usuario que hace la petición, resuelta desde el JWT."""
    user_id: UUID
    email: Optional[str] = None
    roles: List[str] = []

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles
