"""
Router FastAPI para el módulo de Facturas

Endpoints:
- Listado, detalle, valores calculados, estadísticas y pagos próximos
- Ingreso manual y edición de facturas
- Sugerencia de número de serie por proveedor
- Clasificación, sistematización, pagos y notas de crédito
- URL firmada del PDF
- Webhook de ingreso (autenticado por token compartido)
- Backfill de valor_real_a_pagar (solo administradores)
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from typing import Optional
from uuid import UUID
import secrets
import logging

from app.core.config import settings
from app.dependencies.dbDependecies import async_db_dependency, db_dependency
from app.modules.auth.dependencies import AuthDependencies
from app.modules.facturas.backfill import BackfillError, run_backfill, verify_backfill
from app.modules.facturas.repository import SerieRepository, SQLAlchemySerieRepository
from app.modules.facturas.schemas import (
    BackfillReportOut, BackfillStatusOut, ClasificacionFiltro, EstadoPagoFiltro,
    FacturaClassify, FacturaCreate, FacturaDetail, FacturaList, FacturaStats, FacturaUpdate, FacturaValores,
    FacturaWebhookIn, NotaCreditoApply, NotaCreditoResult, PagosProximosOut, PaymentCreate, PaymentResult,
    PdfUrlOut, SerieSuggestionOut
)
from app.modules.facturas.serie_suggestion import SerieSuggestionService
from app.modules.facturas.service import FacturaService
from app.modules.files.service import PDFStorageService, get_pdf_storage

logger = logging.getLogger(__name__)

facturas_router = APIRouter(prefix="/facturas", tags=["Facturas"])


# ===== DEPENDENCIAS =====

def get_factura_service(db: async_db_dependency) -> FacturaService:
    return FacturaService(db)


def get_serie_repository(db: async_db_dependency) -> SerieRepository:
    return SQLAlchemySerieRepository(db)


def get_serie_suggestion_service(
    repository: SerieRepository = Depends(get_serie_repository)
) -> SerieSuggestionService:
    return SerieSuggestionService(repository)


def verify_webhook_token(x_webhook_token: Optional[str] = Header(None)) -> None:
    """El flujo de ingreso se autentica con el header X-Webhook-Token."""
    if not x_webhook_token or not secrets.compare_digest(x_webhook_token, settings.WEBHOOK_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token de webhook inválido"
        )


# ===== CONSULTAS =====

@facturas_router.get("/", response_model=FacturaList)
async def list_facturas(
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    clasificacion: Optional[ClasificacionFiltro] = Query(None, description="Filtrar por clasificación"),
    estado: Optional[EstadoPagoFiltro] = Query(None, description="Filtrar por estado de pago"),
    emisor_nit: Optional[str] = Query(None, description="Filtrar por NIT del emisor"),
    search: Optional[str] = Query(None, description="Buscar por número, emisor, NIT o serie"),
    service: FacturaService = Depends(get_factura_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """
    Listar facturas con filtros

    `clasificacion=sin_clasificar` retorna las facturas pendientes de
    clasificar; `estado=pendiente` las que no se han pagado.
    """
    return await service.list_facturas(
        limit=limit,
        offset=offset,
        clasificacion=clasificacion,
        estado=estado,
        emisor_nit=emisor_nit,
        search=search
    )


@facturas_router.get("/stats", response_model=FacturaStats)
async def get_stats(
    service: FacturaService = Depends(get_factura_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """Cantidades y totales por sección del dashboard"""
    return await service.get_stats()


@facturas_router.get("/pagos-proximos", response_model=PagosProximosOut)
async def list_pagos_proximos(
    dias: Optional[int] = Query(None, ge=0, le=365, description="Solo facturas que vencen en los próximos N días"),
    service: FacturaService = Depends(get_factura_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """
    Facturas sin pagar ordenadas por fecha de vencimiento

    Cada factura indica los días para vencer y su urgencia: `vencida`,
    `urgente` (por defecto hasta 3 días), `proximo` (hasta 7 días) o
    `normal`.
    """
    return await service.list_pagos_proximos(dias=dias)


@facturas_router.get("/serie-sugerida/{emisor_nit}", response_model=SerieSuggestionOut)
async def suggest_serie(
    emisor_nit: str,
    service: SerieSuggestionService = Depends(get_serie_suggestion_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """
    Sugerir el siguiente número de serie para un proveedor

    La sugerencia es orientativa: el número se valida de nuevo al clasificar.
    Si no se pudo calcular, `sugerencia` es null y el usuario la escribe.
    """
    return await service.get_pattern_info(emisor_nit)


# ===== BACKFILL =====

@facturas_router.get("/backfill-valor-real", response_model=BackfillStatusOut)
def backfill_status(
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_admin())
):
    """Facturas que todavía no tienen valor_real_a_pagar"""
    return verify_backfill(db)


@facturas_router.post("/backfill-valor-real", response_model=BackfillReportOut)
def run_backfill_valor_real(
    db: db_dependency,
    batch_size: int = Query(settings.BACKFILL_BATCH_SIZE, ge=1, le=1000),
    auth_context = Depends(AuthDependencies.require_admin())
):
    """
    Calcular y guardar valor_real_a_pagar donde falta

    Solo administradores. Si un lote falla, los anteriores quedan guardados
    y el reporte indica el lote fallido y las facturas pendientes.
    """
    try:
        return run_backfill(db, batch_size).to_schema()
    except BackfillError as e:
        logger.error(f"Backfill requested by {auth_context.user_id} failed: {e.report.error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=e.report.to_schema().model_dump(mode="json")
        )


# ===== ESCRITURAS =====

@facturas_router.post("/", response_model=FacturaDetail, status_code=status.HTTP_201_CREATED)
async def create_factura(
    factura_data: FacturaCreate,
    service: FacturaService = Depends(get_factura_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """
    Registrar una factura manualmente

    Si se envía `numero_serie` y ya está asignado a otra factura se
    responde 409.
    """
    return await service.create_factura(factura_data, user_id=auth_context.user_id)


@facturas_router.post("/pagos", response_model=PaymentResult)
async def register_payment(
    payment_data: PaymentCreate,
    service: FacturaService = Depends(get_factura_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """
    Registrar el pago de una o varias facturas

    El descuento por pronto pago solo se aplica a las facturas incluidas en
    `pronto_pago_ids`.
    """
    return await service.register_payment(payment_data)


@facturas_router.post("/webhook", response_model=FacturaDetail, status_code=status.HTTP_201_CREATED)
async def webhook_factura(
    factura_data: FacturaWebhookIn,
    service: FacturaService = Depends(get_factura_service),
    _: None = Depends(verify_webhook_token)
):
    """Ingreso de facturas desde el flujo de n8n"""
    return await service.create_from_webhook(factura_data)


@facturas_router.get("/{factura_id}", response_model=FacturaDetail)
async def get_factura(
    factura_id: UUID,
    service: FacturaService = Depends(get_factura_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """Detalle de una factura con sus valores calculados"""
    return await service.get_factura(factura_id)


@facturas_router.patch("/{factura_id}", response_model=FacturaDetail)
async def update_factura(
    factura_id: UUID,
    update_data: FacturaUpdate,
    service: FacturaService = Depends(get_factura_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """
    Editar los datos de una factura

    Solo se modifican los campos enviados; el valor real a pagar se
    recalcula con los nuevos valores.
    """
    return await service.update_factura(factura_id, update_data)


@facturas_router.get("/{factura_id}/valores", response_model=FacturaValores)
async def get_factura_valores(
    factura_id: UUID,
    service: FacturaService = Depends(get_factura_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """Base sin IVA, retención, pronto pago y valor real a pagar"""
    factura = await service.get_factura(factura_id)
    return factura.valores


@facturas_router.get("/{factura_id}/pdf-url", response_model=PdfUrlOut)
async def get_pdf_url(
    factura_id: UUID,
    service: FacturaService = Depends(get_factura_service),
    storage: PDFStorageService = Depends(get_pdf_storage),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """URL firmada y temporal para descargar el PDF de la factura"""
    key = await service.get_pdf_key(factura_id)
    return PdfUrlOut(
        url=storage.get_presigned_download_url(key),
        expires_in=settings.PDF_URL_EXPIRE_SECONDS
    )


@facturas_router.patch("/{factura_id}/clasificacion", response_model=FacturaDetail)
async def classify_factura(
    factura_id: UUID,
    classify_data: FacturaClassify,
    service: FacturaService = Depends(get_factura_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """
    Clasificar una factura como mercancía o gasto

    Para mercancía se puede enviar `numero_serie`; si ya está asignado a
    otra factura se responde 409.
    """
    return await service.classify_factura(factura_id, classify_data)


@facturas_router.post("/{factura_id}/sistematizar", response_model=FacturaDetail)
async def mark_sistematizada(
    factura_id: UUID,
    service: FacturaService = Depends(get_factura_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """Marcar una factura como sistematizada"""
    return await service.mark_sistematizada(factura_id)


@facturas_router.post("/{factura_id}/nota-credito", response_model=NotaCreditoResult)
async def apply_credit_note(
    factura_id: UUID,
    nota_data: NotaCreditoApply,
    service: FacturaService = Depends(get_factura_service),
    auth_context = Depends(AuthDependencies.require_any_role())
):
    """
    Aplicar la factura `factura_id` como nota de crédito de otra factura

    La nota queda con valor real 0 y el total de la factura original se
    reduce en `valor_descuento`.
    """
    return await service.apply_credit_note(factura_id, nota_data)
