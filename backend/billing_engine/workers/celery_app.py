"""
Celery application factory.

Configura broker, backend, serializacao, limites e beat schedule.
"""
from celery import Celery
from celery.schedules import crontab

from billing_engine.core.config import settings

celery_app = Celery("billing_engine")

celery_app.conf.update(
    # Broker / Backend
    broker_url=settings.CELERY_BROKER_URL,
    result_backend=settings.CELERY_RESULT_BACKEND,
    # Serializacao
    accept_content=["json"],
    task_serializer="json",
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Reliability
    broker_connection_retry_on_startup=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # Limites
    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    # Resultados
    result_expires=3600,
    # Beat schedule file path (writeable in containers)
    beat_schedule_filename="/tmp/celerybeat-schedule",
)

# Registrar modulos de tasks explicitamente
celery_app.conf.include = [
    "billing_engine.workers.tasks.billing_tasks",
]

# Garantir que todos os models SQLAlchemy sao importados antes de qualquer task
# rodar, evitando falha de mapper initialization.
import billing_engine.models  # noqa: F401, E402

# Registrar signal handlers para logging de task events
import billing_engine.workers.signals  # noqa: F401, E402

# Beat schedule — ciclo diario de cobranca + limpeza de runs travados
celery_app.conf.beat_schedule = {
    "run-billing-cycle": {
        "task": "billing_engine.workers.tasks.billing_tasks.run_billing_cycle",
        "schedule": crontab(hour=settings.BILLING_RUN_HOUR_UTC, minute=settings.BILLING_RUN_MINUTE_UTC),
    },
    "mark-stale-billing-runs": {
        "task": "billing_engine.workers.tasks.billing_tasks.mark_stale_billing_runs",
        "schedule": 15 * 60,  # a cada 15 minutos
    },
}
