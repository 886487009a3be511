"""
Promotion resolution — computes the amount due for a charge.

The discount is derived at charge time from the subscription's promotion
reference; nothing is cached or written back here. Callers persist any
derived effect (e.g. clearing a consumed promotion).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from billing_engine.core.config import settings
from billing_engine.models.plan import Plan
from billing_engine.models.promotion import (
    DISCOUNT_AMOUNT,
    DISCOUNT_FREE,
    DISCOUNT_PERCENT,
    Promotion,
)
from billing_engine.models.subscription import Subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricingDecision:
    """Valor a cobrar e descricao do pedido para uma cobranca."""

    amount_due: int
    order_name: str
    is_free: bool
    promotion_id: Optional[UUID] = None
    discount_type: Optional[str] = None


def discounted_amount(price: int, discount_type: str, discount_value: int) -> int:
    """Apply a discount to ``price``. Never returns a negative amount."""
    if discount_type == DISCOUNT_FREE:
        return 0
    if discount_type == DISCOUNT_PERCENT:
        rate = Decimal(min(max(discount_value, 0), 100))
        value = Decimal(price) * (Decimal(1) - rate / Decimal(100))
        return max(0, int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))
    if discount_type == DISCOUNT_AMOUNT:
        return max(0, price - discount_value)
    raise ValueError(f"Unknown discount type: {discount_type!r}")


class PromotionResolver:
    """Resolve o valor devido considerando a promocao vigente da assinatura."""

    def __init__(self, order_name_prefix: Optional[str] = None) -> None:
        self._prefix = order_name_prefix or settings.ORDER_NAME_PREFIX

    def resolve(
        self,
        db: Session,
        subscription: Subscription,
        plan: Plan,
        now: datetime,
        *,
        include_free: bool = True,
    ) -> PricingDecision:
        """
        Compute the amount due for ``plan`` at ``now``.

        Args:
            include_free: When False a ``free`` promotion counts as already
                consumed (the trial it granted has just ended).
        """
        price = int(plan.monthly_price)
        base_name = f"{self._prefix} {plan.plan_name} plan (recurring)"
        full_price = PricingDecision(amount_due=price, order_name=base_name, is_free=price == 0)

        if subscription.promotion_id is None:
            return full_price
        if subscription.promotion_expires_at is not None and now >= subscription.promotion_expires_at:
            return full_price

        promotion = db.get(Promotion, subscription.promotion_id)
        if promotion is None or not promotion.is_active:
            logger.info(
                "promotion_ignored: subscription=%s promotion=%s reason=%s",
                subscription.id,
                subscription.promotion_id,
                "missing" if promotion is None else "inactive",
            )
            return full_price

        if promotion.discount_type == DISCOUNT_FREE and not include_free:
            return full_price

        amount = discounted_amount(price, promotion.discount_type, int(promotion.discount_value or 0))
        return PricingDecision(
            amount_due=amount,
            order_name=f"{base_name} - {promotion.promotion_name}",
            is_free=amount == 0,
            promotion_id=promotion.id,
            discount_type=promotion.discount_type,
        )
