"""
MinIO service for invoice PDF presigned URLs

Los PDFs los sube el flujo de ingreso (n8n); aquí solo se generan URLs
firmadas de descarga sobre el bucket de facturas.
"""
from minio import Minio
from minio.error import S3Error
from fastapi import HTTPException, status
from typing import Optional
from datetime import timedelta
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


class PDFStorageService:
    """Service for handling MinIO presigned download URLs of invoice PDFs"""

    def __init__(self, client: Optional[Minio] = None, bucket_name: Optional[str] = None):
        # Firmamos con el host público para que la URL sea válida desde el navegador.
        # Con region fija el cliente no consulta la ubicación del bucket al firmar.
        self.client = client or Minio(
            settings.minio_public_endpoint,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=settings.MINIO_USE_SSL,
            region="us-east-1"
        )
        self.bucket_name = bucket_name or settings.MINIO_PDF_BUCKET

    def get_presigned_download_url(
        self,
        key: str,
        expires: timedelta = timedelta(seconds=settings.PDF_URL_EXPIRE_SECONDS)
    ) -> str:
        """Generate presigned URL for PDF download"""
        try:
            return self.client.presigned_get_object(
                bucket_name=self.bucket_name,
                object_name=key,
                expires=expires
            )
        except S3Error as e:
            logger.error(f"MinIO download URL generation error for {key}: {e}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Archivo PDF no encontrado"
            )


def get_pdf_storage() -> PDFStorageService:
    """Dependencia FastAPI: servicio de PDFs por petición."""
    return PDFStorageService()
