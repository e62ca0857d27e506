from sqlalchemy import Column, String, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.database.database import Base
from app.common.mixins import TimestampMixin

# Roles disponibles en user_roles
ROLE_ADMIN = "admin"
ROLE_USER = "user"


class Profile(Base, TimestampMixin):
    """
    Perfil de un usuario del proveedor de autenticación.
    El id coincide con el "sub" del JWT emitido por el proveedor.
    """
    __tablename__ = "profiles"

    id = Column(UUID(as_uuid=True), primary_key=True)
    email = Column(String, nullable=True, index=True)
    display_name = Column(String, nullable=True)

    # Relationships
    roles = relationship("UserRole", back_populates="profile", cascade="all, delete-orphan")


class UserRole(Base, TimestampMixin):
    __tablename__ = "user_roles"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("profiles.id"), nullable=False, index=True)
    role = Column(String, nullable=False, default=ROLE_USER)  # admin, user

    # Relationships
    profile = relationship("Profile", back_populates="roles")

    __table_args__ = (
        UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )
