"""
Usage-based plan selection — picks the cheapest plan that covers a period's usage.
"""
from __future__ import annotations

from typing import Optional, Protocol, Sequence

from billing_engine.core.config import settings
from billing_engine.services.billing_errors import EmptyCatalogError


class PricedPlan(Protocol):
    monthly_price: int
    daily_rx_limit: Optional[int]


def is_unlimited(plan: PricedPlan, unlimited_threshold: Optional[int] = None) -> bool:
    """NULL limit, or a limit at/above the sentinel, means unlimited."""
    threshold = unlimited_threshold if unlimited_threshold is not None else settings.BILLING_UNLIMITED_DAILY_LIMIT
    return plan.daily_rx_limit is None or plan.daily_rx_limit >= threshold


def select_plan(
    total_usage: int,
    plans_by_price_asc: Sequence[PricedPlan],
    *,
    days_per_month: Optional[int] = None,
    unlimited_threshold: Optional[int] = None,
) -> PricedPlan:
    """
    Return the first plan (ascending price) whose monthly quota covers
    ``total_usage``; ``daily_rx_limit * days_per_month`` is the quota. When no
    plan covers it the cheapest plan is the default.

    Raises:
        EmptyCatalogError: If the catalog snapshot is empty.
    """
    if not plans_by_price_asc:
        raise EmptyCatalogError()

    days = days_per_month if days_per_month is not None else settings.BILLING_USAGE_DAYS_PER_MONTH
    for plan in plans_by_price_asc:
        if is_unlimited(plan, unlimited_threshold) or plan.daily_rx_limit * days >= total_usage:
            return plan
    # Nenhum plano cobre o uso: volta para o mais barato
    return plans_by_price_asc[0]
