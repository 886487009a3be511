"""
Run Billing Cycle — executa o ciclo de cobranca uma vez, fora do Celery Beat.

Uso:
    cd backend
    python -m scripts.run_billing_cycle
    python -m scripts.run_billing_cycle --max-workers 1 --now 2024-03-01T01:00:00
    python -m scripts.run_billing_cycle --retry <subscription_id>

Exit code 0 quando o run completa, 1 quando aborta (configuracao/catalogo).
Falhas de assinaturas individuais nao mudam o exit code; ver o resumo.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from uuid import UUID

from billing_engine.core.clock import utcnow
from billing_engine.core.logging_config import setup_logging
from billing_engine.services.billing_errors import BillingError, ConfigurationError
from billing_engine.services.billing_lifecycle_service import BillingLifecycleService

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Executa o ciclo de cobranca de assinaturas.")
    parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Paralelismo por fase (default: BILLING_MAX_WORKERS)",
    )
    parser.add_argument(
        "--now",
        type=datetime.fromisoformat,
        default=None,
        help="Relogio fixo em UTC naive (ISO 8601), para reprocessar um dia",
    )
    parser.add_argument(
        "--retry",
        type=UUID,
        default=None,
        metavar="SUBSCRIPTION_ID",
        help="Apenas tenta cobrar novamente uma assinatura com pagamento pendente",
    )
    return parser.parse_args(argv)


def build_service(args: argparse.Namespace) -> BillingLifecycleService:
    from billing_engine.core.database_sync import SyncSessionLocal
    from billing_engine.services.payment_executor import PaymentExecutor
    from billing_engine.services.payment_gateway import TossPaymentsGateway

    clock = (lambda: args.now) if args.now is not None else utcnow
    return BillingLifecycleService(
        SyncSessionLocal,
        PaymentExecutor(TossPaymentsGateway.from_settings()),
        clock=clock,
        max_workers=args.max_workers,
    )


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    args = parse_args(argv)

    try:
        service = build_service(args)
        if args.retry is not None:
            charged = service.retry_payment(args.retry)
            print(json.dumps({"subscription_id": str(args.retry), "charged": charged}))
            return 0 if charged else 1
        result = service.run_billing_cycle(trigger="cli")
    except ConfigurationError as exc:
        logger.error("Run abortado: %s (code=%s)", exc.detail, exc.code)
        return 1
    except BillingError as exc:
        logger.error("Falha: %s (code=%s)", exc.detail, exc.code)
        return 1

    print(json.dumps(result.as_dict(), indent=2))
    return 0 if result.completed else 1


if __name__ == "__main__":
    sys.exit(main())
