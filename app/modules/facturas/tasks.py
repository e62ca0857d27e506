"""
Background tasks for facturas
"""
from app.core.celery import celery_app
from app.database.database import SessionLocal
from app.modules.facturas.backfill import BackfillError, run_backfill
import logging

logger = logging.getLogger(__name__)


@celery_app.task(bind=True)
def backfill_valor_real(self, batch_size: int = None):
    """
    Persistir valor_real_a_pagar en las facturas que no lo tienen.
    Retorna el reporte del backfill (también cuando un lote falla).
    """
    db = SessionLocal()
    try:
        logger.info(f"Starting valor_real_a_pagar backfill (task {self.request.id})")
        report = run_backfill(db, batch_size)
        logger.info(f"Backfill completed: {report.actualizadas}/{report.total_encontradas} facturas updated")
        return report.to_schema().model_dump(mode="json")

    except BackfillError as e:
        logger.error(f"Backfill stopped at batch {e.report.lote_fallido}: {e.report.error}")
        return e.report.to_schema().model_dump(mode="json")

    finally:
        db.close()
