"""
Tests para el módulo de Autenticación

Cubren:
- Verificación del JWT emitido por el proveedor externo
- Resolución de roles desde user_roles
- Dependencias de roles (usuario / administrador)
"""

import asyncio
import pytest
import jwt
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from uuid import uuid4
from datetime import datetime, timedelta, timezone

from app.core.config import settings
from app.modules.auth.dependencies import AuthDependencies, decode_access_token
from app.modules.auth.models import ROLE_ADMIN, ROLE_USER
from app.modules.auth.schemas import AuthContext


# ===== FIXTURES =====

def make_token(**claims) -> str:
    payload = {
        "sub": str(uuid4()),
        "email": "contabilidad@example.com",
        "aud": settings.AUTH_JWT_AUDIENCE,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    payload.update(claims)
    return jwt.encode(payload, settings.AUTH_JWT_SECRET, algorithm=settings.ALGORITHM)


class FakeRolesResult:
    def __init__(self, roles):
        self.roles = roles

    def all(self):
        return [(role,) for role in self.roles]


class FakeRolesSession:
    def __init__(self, roles):
        self.roles = roles

    async def execute(self, query):
        return FakeRolesResult(self.roles)


def resolve_context(token: str, roles) -> AuthContext:
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)
    return asyncio.run(AuthDependencies.get_auth_context(credentials=credentials, db=FakeRolesSession(roles)))


# ===== TESTS DE TOKEN =====

class TestDecodeAccessToken:
    """Tests de verificación del JWT"""

    def test_valid_token(self):
        user_id = str(uuid4())
        payload = decode_access_token(make_token(sub=user_id))
        assert payload["sub"] == user_id

    def test_expired_token(self):
        token = make_token(exp=datetime.now(timezone.utc) - timedelta(minutes=5))
        with pytest.raises(HTTPException) as exc:
            decode_access_token(token)
        assert exc.value.status_code == 401
        assert exc.value.detail == "Token expirado"

    def test_wrong_audience(self):
        with pytest.raises(HTTPException) as exc:
            decode_access_token(make_token(aud="otra-app"))
        assert exc.value.status_code == 401

    def test_wrong_secret(self):
        token = jwt.encode(
            {"sub": str(uuid4()), "aud": settings.AUTH_JWT_AUDIENCE},
            "otro-secreto-que-no-corresponde-al-de-la-api",
            algorithm=settings.ALGORITHM
        )
        with pytest.raises(HTTPException) as exc:
            decode_access_token(token)
        assert exc.value.status_code == 401

    def test_missing_sub(self):
        token = jwt.encode(
            {"aud": settings.AUTH_JWT_AUDIENCE, "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
            settings.AUTH_JWT_SECRET,
            algorithm=settings.ALGORITHM
        )
        with pytest.raises(HTTPException) as exc:
            decode_access_token(token)
        assert exc.value.status_code == 401


# ===== TESTS DE CONTEXTO Y ROLES =====

class TestAuthContext:
    """Tests de resolución de roles"""

    def test_roles_from_table(self):
        context = resolve_context(make_token(), [ROLE_ADMIN])
        assert context.roles == [ROLE_ADMIN]
        assert context.is_admin
        assert context.email == "contabilidad@example.com"

    def test_default_role(self):
        """Sin filas en user_roles el usuario tiene el rol user"""
        context = resolve_context(make_token(), [])
        assert context.roles == [ROLE_USER]
        assert not context.is_admin

    def test_invalid_sub(self):
        with pytest.raises(HTTPException) as exc:
            resolve_context(make_token(sub="no-es-un-uuid"), [])
        assert exc.value.status_code == 401

    def test_require_admin_rejects_user(self):
        checker = AuthDependencies.require_admin()
        with pytest.raises(HTTPException) as exc:
            checker(auth_context=AuthContext(user_id=uuid4(), roles=[ROLE_USER]))
        assert exc.value.status_code == 403

    def test_require_any_role(self):
        checker = AuthDependencies.require_any_role()
        context = AuthContext(user_id=uuid4(), roles=[ROLE_USER])
        assert checker(auth_context=context) is context
