"""
Dependencias de autenticación para FastAPI.

La autenticación (login, registro, sesiones) vive en el proveedor externo;
aquí solo se verifica el JWT que emite y se resuelven los roles del usuario.
"""
from uuid import UUID
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import jwt
import logging

from app.database.database import get_async_db
from app.modules.auth.models import UserRole, ROLE_ADMIN, ROLE_USER
from app.modules.auth.schemas import AuthContext
from app.core.config import settings

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer()


def decode_access_token(token: str) -> dict:
    """
    Verificar un JWT del proveedor de autenticación y retornar el payload.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="No se pudieron validar las credenciales",
        headers={"WWW-Authenticate": "Bearer"},
    )
    options = {} if settings.AUTH_JWT_AUDIENCE else {"verify_aud": False}
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.ALGORITHM],
            audience=settings.AUTH_JWT_AUDIENCE,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expirado",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.PyJWTError as e:
        logger.debug(f"Invalid token: {e}")
        raise credentials_exception

    if not payload.get("sub"):
        raise credentials_exception
    return payload


class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    async def get_auth_context(
        credentials: HTTPAuthorizationCredentials = Depends(security),
        db: AsyncSession = Depends(get_async_db)
    ) -> AuthContext:
        """
        Obtener el contexto del usuario actual desde el token JWT
        y sus roles desde la tabla user_roles.
        """
        payload = decode_access_token(credentials.credentials)

        try:
            user_id = UUID(payload["sub"])
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Identificador de usuario inválido en el token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        result = await db.execute(select(UserRole.role).where(UserRole.user_id == user_id))
        roles = [row[0] for row in result.all()] or [ROLE_USER]

        return AuthContext(user_id=user_id, email=payload.get("email"), roles=roles)

    @staticmethod
    def require_role(allowed_roles: list[str]):
        """
        Dependencia para requerir roles específicos.
        """
        def role_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if not set(auth_context.roles) & set(allowed_roles):
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Se requiere uno de estos roles: {', '.join(allowed_roles)}"
                )
            return auth_context
        return role_checker

    @staticmethod
    def require_admin():
        """Dependencia para requerir rol de administrador."""
        return AuthDependencies.require_role([ROLE_ADMIN])

    @staticmethod
    def require_any_role():
        """Dependencia que requiere cualquier usuario autenticado."""
        return AuthDependencies.require_role([ROLE_ADMIN, ROLE_USER])


# Instancias de dependencias
get_auth_context = AuthDependencies.get_auth_context
require_admin = AuthDependencies.require_admin
require_any_role = AuthDependencies.require_any_role
