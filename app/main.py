from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import database components
from app.database.database import sync_engine, Base

# Import middleware
from app.common.middleware import RequestContextMiddleware, SecurityHeadersMiddleware

# Import routers
from app.modules.facturas.router import facturas_router

# Import models for table creation
import app.modules.auth.models
import app.modules.facturas.models

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Facturas360 API",
    description="Gestión de facturas de proveedores: clasificación, pagos, notas de crédito y números de serie",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestContextMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Add your frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(facturas_router)


@app.get("/")
async def read_root():
    return {
        "message": "Facturas360 API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("Facturas360 API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

    # Create database tables (only for development - no migrations shipped)
    if settings.ENVIRONMENT == "development":
        try:
            Base.metadata.create_all(bind=sync_engine)
        except Exception as e:
            logger.warning(f"Table creation skipped or failed: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Facturas360 API shutting down...")
