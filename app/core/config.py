from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'facturas_user'
    POSTGRES_PASSWORD: str = 'facturas_pass'
    POSTGRES_DB: str = 'facturas_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # MinIO settings (PDFs de facturas)
    MINIO_HOST: str = 'minio'
    MINIO_PORT: int = 9000
    MINIO_PUBLIC_HOST: str = 'localhost'  # Hostname público para presigned URLs
    MINIO_PUBLIC_PORT: int = 9000
    MINIO_ACCESS_KEY: str = 'minioadmin'
    MINIO_SECRET_KEY: str = 'minioadmin'
    MINIO_PDF_BUCKET: str = 'facturas-pdf'
    MINIO_USE_SSL: bool = False
    PDF_URL_EXPIRE_SECONDS: int = 60 * 60

    # JWT emitido por el proveedor de autenticación externo
    AUTH_JWT_SECRET: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'
    AUTH_JWT_AUDIENCE: Optional[str] = 'authenticated'

    # Webhook de ingreso de facturas (n8n)
    WEBHOOK_TOKEN: str = 'change-me'
    WEBHOOK_DEFAULT_USER_ID: Optional[str] = None

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Sugerencia de números de serie
    SERIE_SUPPLIER_HISTORY_LIMIT: int = 5
    SERIE_GLOBAL_HISTORY_LIMIT: int = 100
    SERIE_SUPPLIER_MAX_ATTEMPTS: int = 10
    SERIE_GLOBAL_MAX_ATTEMPTS: int = 20
    SERIE_DEFAULT: str = '001'

    # Backfill de valor_real_a_pagar
    BACKFILL_BATCH_SIZE: int = 100

    # Pagos próximos: días hasta el vencimiento para cada nivel de urgencia
    PAGOS_URGENTE_DIAS: int = 3
    PAGOS_PROXIMO_DIAS: int = 7

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def async_database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def minio_endpoint(self) -> str:
        return f"{self.MINIO_HOST}:{self.MINIO_PORT}"

    @property
    def minio_public_endpoint(self) -> str:
        return f"{self.MINIO_PUBLIC_HOST}:{self.MINIO_PUBLIC_PORT}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", "MINIO_USE_SSL", mode="before")
    @classmethod
    def parse_bool(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

settings = Settings()
