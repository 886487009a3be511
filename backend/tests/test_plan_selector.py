"""
Unit tests for usage-based plan selection.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import pytest

from billing_engine.services.billing_errors import ConfigurationError, EmptyCatalogError
from billing_engine.services.plan_selector import is_unlimited, select_plan


@dataclass
class _Plan:
    plan_name: str
    monthly_price: int
    daily_rx_limit: Optional[int]


CATALOG = [
    _Plan("small", 10, 10),
    _Plan("medium", 30, 20),
    _Plan("unlimited", 50, None),
]


def test_selects_cheapest_plan_covering_usage() -> None:
    # 20/day * 30 days = 600 >= 450; the unlimited tier must not be picked
    plan = select_plan(450, CATALOG, days_per_month=30)

    assert plan.monthly_price == 30


@pytest.mark.parametrize(
    ("usage", "expected_price"),
    [(0, 10), (300, 10), (301, 30), (600, 30), (601, 50), (10**6, 50)],
)
def test_quota_boundaries(usage: int, expected_price: int) -> None:
    assert select_plan(usage, CATALOG, days_per_month=30).monthly_price == expected_price


def test_sentinel_limit_counts_as_unlimited() -> None:
    plan = _Plan("legacy-unlimited", 70, 999999)

    assert is_unlimited(plan, unlimited_threshold=999999)
    assert select_plan(10**9, [_Plan("small", 10, 10), plan], days_per_month=30, unlimited_threshold=999999) is plan


def test_defaults_to_cheapest_when_nothing_covers_usage() -> None:
    limited = [_Plan("small", 10, 10), _Plan("medium", 30, 20)]

    plan = select_plan(1000, limited, days_per_month=30)

    assert plan.plan_name == "small"
    assert plan.monthly_price == 10


def test_zero_threshold_is_honoured_not_replaced_by_default() -> None:
    # Every finite limit is >= 0, so a zero sentinel makes every plan unlimited
    plan = _Plan("small", 10, 10)

    assert is_unlimited(plan, unlimited_threshold=0)
    assert not is_unlimited(plan, unlimited_threshold=999999)


def test_selection_never_gets_cheaper_with_more_usage() -> None:
    prices = [select_plan(usage, CATALOG, days_per_month=30).monthly_price for usage in range(0, 1000, 25)]

    assert prices == sorted(prices)


def test_empty_catalog_is_a_configuration_error() -> None:
    with pytest.raises(EmptyCatalogError) as exc_info:
        select_plan(10, [])

    assert isinstance(exc_info.value, ConfigurationError)
    assert exc_info.value.code == "empty_catalog"
