"""
Payment execution — uniform charge result over the gateway.

Zero-amount charges (free promotion periods) never reach the gateway, which
does not accept them; a local reference is synthesized instead.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol
from uuid import UUID

from billing_engine.models.payment_method import PaymentMethod
from billing_engine.services.billing_errors import GatewayError

logger = logging.getLogger(__name__)

FREE_REFERENCE_PREFIX = "FREE_"


class ChargeGateway(Protocol):
    def charge(
        self,
        billing_key: str,
        amount: int,
        order_id: str,
        order_name: str,
        customer_key: str,
    ) -> dict: ...


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    amount: int
    is_free: bool = False
    gateway_reference: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None


def build_order_id(prefix: str, owner_id: UUID, now: datetime) -> str:
    """``<prefix>_<owner hex>_<epoch ms>``; the full owner id keeps a run's attempts distinct."""
    epoch_ms = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return f"{prefix}_{owner_id.hex}_{epoch_ms}"


class PaymentExecutor:
    """Wraps the gateway; never lets a gateway error escape."""

    def __init__(self, gateway: ChargeGateway) -> None:
        self._gateway = gateway

    def charge(
        self,
        payment_method: Optional[PaymentMethod],
        amount: int,
        order_id: str,
        description: str,
        customer_key: str,
    ) -> ChargeResult:
        if amount < 0:
            raise ValueError("amount must not be negative")

        if payment_method is None and amount > 0:
            raise ValueError("payment_method is required for non-zero charges")

        if amount == 0:
            logger.info("charge_skipped_free: order_id=%s", order_id)
            return ChargeResult(
                success=True,
                amount=0,
                is_free=True,
                gateway_reference=f"{FREE_REFERENCE_PREFIX}{order_id}",
            )

        try:
            payment = self._gateway.charge(
                payment_method.billing_key,
                amount,
                order_id,
                description,
                customer_key,
            )
        except GatewayError as exc:
            logger.warning(
                "charge_failed: order_id=%s amount=%d kind=%s code=%s",
                order_id, amount, exc.kind, exc.code,
            )
            return ChargeResult(
                success=False,
                amount=amount,
                error_code=exc.code,
                error_message=exc.detail,
                error_kind=exc.kind,
            )

        logger.info("charge_succeeded: order_id=%s amount=%d", order_id, amount)
        return ChargeResult(
            success=True,
            amount=amount,
            gateway_reference=payment.get("paymentKey"),
        )
