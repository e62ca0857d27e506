"""
Backfill de valor_real_a_pagar

Calcula y persiste valor_real_a_pagar en las facturas que aún no lo tienen
(registros anteriores a la columna). Cada lote se confirma por separado: si
un lote falla se revierte solo ese lote y los anteriores quedan guardados.
Volver a ejecutarlo solo procesa lo que sigue pendiente.
"""

from dataclasses import dataclass, field
from typing import List, Optional
from uuid import UUID
import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.modules.facturas.calculator import calculate_stored_real_payable
from app.modules.facturas.models import Factura
from app.modules.facturas.schemas import BackfillReportOut, BackfillStatusOut

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    total_encontradas: int = 0
    actualizadas: int = 0
    lotes_completados: int = 0
    lote_fallido: Optional[int] = None
    ids_fallidos: List[UUID] = field(default_factory=list)
    ids_pendientes: List[UUID] = field(default_factory=list)
    error: Optional[str] = None

    def to_schema(self) -> BackfillReportOut:
        return BackfillReportOut(
            total_encontradas=self.total_encontradas,
            actualizadas=self.actualizadas,
            lotes_completados=self.lotes_completados,
            lote_fallido=self.lote_fallido,
            ids_fallidos=self.ids_fallidos,
            ids_pendientes=self.ids_pendientes,
            error=self.error,
        )


class BackfillError(Exception):
    """Un lote del backfill falló; `report` describe lo que alcanzó a guardarse."""

    def __init__(self, report: BackfillReport):
        super().__init__(report.error)
        self.report = report


def _chunks(items: List[Factura], size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def run_backfill(db: Session, batch_size: Optional[int] = None) -> BackfillReport:
    """
    Persistir valor_real_a_pagar en todas las facturas donde es NULL.

    Raises:
        BackfillError: si un lote no se pudo guardar. Los lotes anteriores
            ya están confirmados.
    """
    batch_size = batch_size or settings.BACKFILL_BATCH_SIZE
    report = BackfillReport()

    facturas = db.execute(
        select(Factura)
        .where(Factura.valor_real_a_pagar.is_(None))
        .order_by(Factura.created_at)
    ).scalars().all()
    report.total_encontradas = len(facturas)
    logger.info(f"Backfill: {len(facturas)} facturas sin valor_real_a_pagar")

    batches = list(_chunks(list(facturas), batch_size))
    # Tras un rollback las instancias quedan expiradas y leer f.id vuelve a
    # consultar la base; los ids se toman antes de escribir
    batch_ids = [[f.id for f in batch] for batch in batches]
    for number, batch in enumerate(batches, start=1):
        try:
            for factura in batch:
                factura.valor_real_a_pagar = calculate_stored_real_payable(factura)
            db.commit()
        except Exception as e:
            db.rollback()
            report.lote_fallido = number
            report.ids_fallidos = batch_ids[number - 1]
            report.ids_pendientes = [fid for later in batch_ids[number:] for fid in later]
            report.error = str(e)
            logger.error(f"Backfill: lote {number} falló ({len(batch)} facturas): {e}")
            raise BackfillError(report) from e

        report.actualizadas += len(batch)
        report.lotes_completados += 1
        logger.info(f"Backfill: lote {number}/{len(batches)} guardado ({report.actualizadas} actualizadas)")

    return report


def verify_backfill(db: Session, sample: int = 10) -> BackfillStatusOut:
    """Contar las facturas que siguen sin valor_real_a_pagar."""
    total = db.scalar(select(func.count(Factura.id))) or 0
    pendientes = db.scalar(
        select(func.count(Factura.id)).where(Factura.valor_real_a_pagar.is_(None))
    ) or 0
    numeros = db.execute(
        select(Factura.numero_factura)
        .where(Factura.valor_real_a_pagar.is_(None))
        .order_by(Factura.created_at)
        .limit(sample)
    ).scalars().all()

    return BackfillStatusOut(
        total_facturas=total,
        sin_valor_real=pendientes,
        numeros_pendientes=list(numeros),
    )
