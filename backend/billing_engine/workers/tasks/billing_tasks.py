"""
Tarefas periodicas de billing (Celery Beat).

- run_billing_cycle: executa as quatro fases do ciclo de cobranca
- retry_subscription_payment: nova tentativa manual (ex: apos troca de cartao)
- mark_stale_billing_runs: marca runs travados (worker morto) como aborted
"""
from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select

from billing_engine.core.clock import utcnow
from billing_engine.core.config import settings
from billing_engine.models.billing_run import RUN_ABORTED, RUN_RUNNING, BillingRun
from billing_engine.services.billing_errors import ConfigurationError
from billing_engine.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="billing_engine.workers.tasks.billing_tasks.run_billing_cycle")
def run_billing_cycle() -> dict:
    """
    Ciclo diario: trial -> grace -> cancelamento -> cobranca recorrente.

    Falhas por assinatura sao contadas no resultado; apenas erro de
    configuracao (gateway sem chave, catalogo vazio) aborta o run.
    """
    from billing_engine.services.billing_lifecycle_service import BillingLifecycleService

    try:
        service = BillingLifecycleService.from_settings()
    except ConfigurationError as exc:
        logger.error("run_billing_cycle: gateway nao configurado, pulando. (%s)", exc.detail)
        return {"status": "skipped", "reason": exc.code}

    result = service.run_billing_cycle(trigger="celery")
    summary = result.as_dict()
    logger.info("run_billing_cycle: %s", summary)
    return summary


@celery_app.task(name="billing_engine.workers.tasks.billing_tasks.retry_subscription_payment")
def retry_subscription_payment(subscription_id: str) -> dict:
    """Uma tentativa de cobranca fora do ciclo para assinatura com pagamento pendente."""
    from billing_engine.services.billing_lifecycle_service import BillingLifecycleService

    service = BillingLifecycleService.from_settings()
    charged = service.retry_payment(UUID(subscription_id))
    logger.info("retry_subscription_payment: subscription=%s charged=%s", subscription_id, charged)
    return {"subscription_id": subscription_id, "charged": charged}


@celery_app.task(name="billing_engine.workers.tasks.billing_tasks.mark_stale_billing_runs")
def mark_stale_billing_runs() -> dict:
    """
    Marca BillingRun com status running ha mais que o lease como aborted.

    Cobre cenarios onde o worker foi morto no meio do ciclo; os fences das
    assinaturas expiram sozinhos pelo mesmo lease.
    """
    from billing_engine.core.database_sync import get_sync_db

    now = utcnow()
    cutoff = now - timedelta(minutes=settings.BILLING_LEASE_MINUTES)
    marked = 0

    with get_sync_db() as db:
        stmt = select(BillingRun).where(
            BillingRun.status == RUN_RUNNING,
            BillingRun.started_at < cutoff,
        )
        for run in db.execute(stmt).scalars().all():
            run.status = RUN_ABORTED
            run.finished_at = now
            run.error_message = "Run marcado como aborted: sem finalizacao apos o lease"
            marked += 1

    logger.info("mark_stale_billing_runs: %d runs marcados como aborted", marked)
    return {"marked": marked}
