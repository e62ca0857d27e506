"""
Celery configuration for background tasks
"""
from celery import Celery
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

# Create Celery instance
celery_app = Celery(
    "facturas360",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.modules.facturas.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Result backend settings
    result_expires=3600,  # 1 hour

    task_routes={
        "app.modules.facturas.tasks.*": {"queue": "facturas"},
    },

    # Facturas ingresadas sin valor_real_a_pagar (p. ej. por SQL directo)
    beat_schedule={
        "backfill-valor-real": {
            "task": "app.modules.facturas.tasks.backfill_valor_real",
            "schedule": 86400.0,  # Run daily
        },
    }
)

if __name__ == "__main__":
    celery_app.start()
