"""
Configuración común de pytest

ENVIRONMENT=test se fija antes de importar la app: el pool de conexiones pasa
a NullPool y no se crean tablas al arrancar. Los tests no requieren una base
de datos; las sesiones se reemplazan con dependency_overrides.
"""
import os

os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("WEBHOOK_TOKEN", "test-webhook-token")

import pytest

from app.main import app


@pytest.fixture(autouse=True)
def clear_dependency_overrides():
    """Cada test parte sin overrides de dependencias"""
    yield
    app.dependency_overrides.clear()
