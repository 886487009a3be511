"""
Billing lifecycle tests: the four scheduler phases end to end on SQLite.

Covers: trial expiration, recurring usage-based charges, payment failure and
grace, restriction/suspension, cancel at period end, the per-subscription
fence, batch isolation, inconsistent writes and manual retry.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from billing_engine.models.billing_payment import BillingPayment
from billing_engine.models.billing_run import BillingIncident, BillingRun
from billing_engine.models.payment_method import PaymentMethod
from billing_engine.models.promotion import DISCOUNT_FREE, DISCOUNT_PERCENT
from billing_engine.models.subscription import Subscription
from billing_engine.services.billing_errors import (
    EmptyCatalogError,
    GatewayRejection,
    SubscriptionActionError,
)
from billing_engine.services.billing_lifecycle_service import (
    NO_PAYMENT_METHOD,
    PHASE_CANCELLATION,
    PHASE_GRACE,
    PHASE_RECURRING,
    PHASE_TRIAL,
    BillingLifecycleService,
    _RunContext,
)
from billing_engine.services.payment_executor import PaymentExecutor
from billing_engine.services.promotion_resolver import PromotionResolver

# FIXED_NOW in conftest is 2024-03-15 01:00; the last fully elapsed day is 03-14.
ELAPSED_START = datetime(2024, 2, 14)
ELAPSED_END = datetime(2024, 3, 14, 23, 59, 59, 999000)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _paid_subscription(factory, plan, **overrides):
    """Active subscription whose current period ended yesterday."""
    values = {
        "current_period_start": ELAPSED_START,
        "current_period_end": ELAPSED_END,
        "next_billing_at": datetime(2024, 3, 15),
        "is_first_billing": False,
    }
    values.update(overrides)
    return factory.subscription(plan, **values)


def _payments(factory, subscription_id):
    return [p for p in factory.all(BillingPayment) if p.subscription_id == subscription_id]


def _billing_key(factory, subscription):
    return factory.get(PaymentMethod, subscription.payment_method_id).billing_key


# ---------------------------------------------------------------------------
# Trial expiration
# ---------------------------------------------------------------------------

def test_trial_end_charges_plan_price_despite_free_promotion(factory, catalog, gateway, make_service, now) -> None:
    """A free promotion covered the trial; the first paid charge is the full plan price."""
    promotion = factory.promotion(DISCOUNT_FREE, duration_months=1)
    subscription = factory.subscription(
        catalog[0],
        next_billing_at=now - timedelta(days=1),
        promotion_id=promotion.id,
        promotion_applied_at=now - timedelta(days=20),
        promotion_expires_at=now + timedelta(days=10),
    )

    result = make_service().run_billing_cycle()

    assert result.completed
    assert result.phases[PHASE_TRIAL].success == 1
    assert [charge["amount"] for charge in gateway.charges] == [10000]

    stored = factory.get(Subscription, subscription.id)
    assert stored.status == "active"
    assert stored.is_first_billing is False
    assert stored.current_period_start == datetime(2024, 3, 15)
    assert stored.current_period_end == datetime(2024, 4, 14, 23, 59, 59, 999000)
    assert stored.next_billing_at == datetime(2024, 4, 15)
    assert stored.promotion_id is None
    assert stored.processing_run_id is None
    assert stored.last_billing_run_id == result.run_id

    (payment,) = _payments(factory, subscription.id)
    assert payment.status == "success"
    assert payment.amount == 10000
    assert payment.order_id.startswith("TRL_")
    assert payment.payment_key == f"pay_{payment.order_id}"


def test_trial_not_yet_due_is_left_alone(factory, catalog, gateway, make_service, now) -> None:
    factory.subscription(catalog[0], next_billing_at=now + timedelta(days=2))

    result = make_service().run_billing_cycle()

    assert result.phases[PHASE_TRIAL].success == 0
    assert gateway.charges == []


def test_trial_period_can_anchor_to_scheduled_billing_date(factory, catalog, make_service, now) -> None:
    subscription = factory.subscription(catalog[0], next_billing_at=datetime(2024, 3, 10))

    make_service(anchor_trial_to_next_billing_at=True).run_billing_cycle()

    stored = factory.get(Subscription, subscription.id)
    assert stored.current_period_start == datetime(2024, 3, 10)
    assert stored.next_billing_at == datetime(2024, 4, 10)


def test_failed_trial_charge_enters_grace_without_period(factory, catalog, gateway, make_service, now) -> None:
    gateway.failures["*"] = GatewayRejection("한도초과", code="EXCEED_MAX_AMOUNT", status_code=400)
    subscription = factory.subscription(catalog[0], next_billing_at=now - timedelta(hours=1))

    result = make_service().run_billing_cycle()

    assert result.phases[PHASE_TRIAL].failed == 1
    stored = factory.get(Subscription, subscription.id)
    assert stored.status == "payment_failed"
    assert stored.current_period_start is None
    assert stored.grace_until == datetime(2024, 3, 22, 23, 59, 59, 999000)


# ---------------------------------------------------------------------------
# Recurring charge
# ---------------------------------------------------------------------------

def test_recurring_charge_rolls_into_leap_february(factory, catalog, make_service) -> None:
    subscription = factory.subscription(
        catalog[0],
        current_period_start=datetime(2024, 1, 1),
        current_period_end=datetime(2024, 1, 31, 23, 59, 59, 999000),
        next_billing_at=datetime(2024, 2, 1),
        is_first_billing=False,
    )

    result = make_service(now=datetime(2024, 2, 1, 1, 0)).run_billing_cycle()

    assert result.phases[PHASE_RECURRING].success == 1
    stored = factory.get(Subscription, subscription.id)
    assert stored.current_period_start == datetime(2024, 2, 1)
    assert stored.current_period_end == datetime(2024, 2, 29, 23, 59, 59, 999000)
    assert stored.next_billing_at == datetime(2024, 3, 1)


def test_recurring_charge_uses_plan_matching_elapsed_usage(factory, catalog, gateway, make_service) -> None:
    user = factory.user()
    subscription = _paid_subscription(factory, catalog[0], user=user)
    factory.daily_usage(user, date(2024, 2, 20), 200)
    factory.daily_usage(user, date(2024, 3, 1), 250)
    factory.daily_usage(user, date(2024, 3, 15), 999)  # today, belongs to the next period

    make_service().run_billing_cycle()

    assert [charge["amount"] for charge in gateway.charges] == [30000]
    assert "Standard" in gateway.charges[0]["order_name"]
    stored = factory.get(Subscription, subscription.id)
    assert stored.billing_plan_id == catalog[1].id
    assert stored.entry_plan_id == catalog[0].id
    assert stored.current_period_start == datetime(2024, 3, 15)


def test_percent_promotion_discounts_recurring_charge(factory, catalog, gateway, make_service, now) -> None:
    promotion = factory.promotion(DISCOUNT_PERCENT, 50, duration_months=3)
    subscription = _paid_subscription(
        factory,
        catalog[0],
        promotion_id=promotion.id,
        promotion_expires_at=now + timedelta(days=40),
    )

    make_service().run_billing_cycle()

    assert gateway.charges[0]["amount"] == 5000
    assert factory.get(Subscription, subscription.id).promotion_id == promotion.id


def test_free_promotion_period_is_recorded_without_gateway_call(factory, catalog, gateway, make_service, now) -> None:
    promotion = factory.promotion(DISCOUNT_FREE, duration_months=2)
    subscription = _paid_subscription(
        factory,
        catalog[0],
        promotion_id=promotion.id,
        promotion_expires_at=now + timedelta(days=20),
    )

    result = make_service().run_billing_cycle()

    assert result.phases[PHASE_RECURRING].success == 1
    assert gateway.charges == []
    (payment,) = _payments(factory, subscription.id)
    assert payment.amount == 0
    assert payment.is_free is True
    assert payment.payment_key == f"FREE_{payment.order_id}"
    assert factory.get(Subscription, subscription.id).next_billing_at == datetime(2024, 4, 15)


def test_missing_payment_method_is_a_failed_charge(factory, catalog, gateway, make_service) -> None:
    subscription = _paid_subscription(factory, catalog[0], with_card=False)

    result = make_service().run_billing_cycle()

    assert result.phases[PHASE_RECURRING].failed == 1
    assert gateway.charges == []
    (payment,) = _payments(factory, subscription.id)
    assert payment.status == "failed"
    assert payment.fail_code == NO_PAYMENT_METHOD
    assert payment.amount == 10000
    assert factory.get(Subscription, subscription.id).status == "payment_failed"


def test_deleted_user_is_not_charged(factory, catalog, gateway, make_service, now) -> None:
    user = factory.user(deleted_at=now - timedelta(days=2))
    _paid_subscription(factory, catalog[0], user=user)

    result = make_service().run_billing_cycle()

    assert result.phases[PHASE_RECURRING].success == 0
    assert result.phases[PHASE_RECURRING].failed == 0
    assert gateway.charges == []


# ---------------------------------------------------------------------------
# Failure, grace, restriction, suspension
# ---------------------------------------------------------------------------

def test_failed_charge_grace_then_restriction(factory, catalog, gateway, make_service, now) -> None:
    gateway.failures["*"] = GatewayRejection("잔액이 부족합니다.", code="NOT_ENOUGH_BALANCE", status_code=400)
    subscription = _paid_subscription(factory, catalog[0])

    make_service().run_billing_cycle()

    stored = factory.get(Subscription, subscription.id)
    assert stored.status == "payment_failed"
    assert stored.failed_at == now
    assert stored.grace_until == datetime(2024, 3, 22, 23, 59, 59, 999000)
    assert stored.current_period_end == ELAPSED_END
    (payment,) = _payments(factory, subscription.id)
    assert payment.fail_code == "NOT_ENOUGH_BALANCE"
    assert payment.fail_reason == "잔액이 부족합니다."

    gateway.failures.clear()
    make_service(now=now + timedelta(days=3)).run_billing_cycle()
    assert factory.get(Subscription, subscription.id).status == "payment_failed"
    assert len(gateway.charges) == 1

    result = make_service(now=datetime(2024, 3, 23, 1, 0)).run_billing_cycle()
    assert result.phases[PHASE_GRACE].success == 1
    assert factory.get(Subscription, subscription.id).status == "restricted"
    assert len(gateway.charges) == 1


@pytest.mark.parametrize(
    ("days_since_grace", "expected_status"),
    [(15, "suspended"), (3, "restricted")],
)
def test_restricted_subscription_suspension(factory, catalog, make_service, now, days_since_grace, expected_status) -> None:
    subscription = _paid_subscription(
        factory,
        catalog[0],
        status="restricted",
        failed_at=now - timedelta(days=days_since_grace + 7),
        grace_until=now - timedelta(days=days_since_grace),
    )

    make_service().run_billing_cycle()

    stored = factory.get(Subscription, subscription.id)
    assert stored.status == expected_status
    if expected_status == "suspended":
        assert stored.grace_until is None
        assert stored.next_billing_at is None


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

def test_cancel_at_period_end_cancels_without_charging(factory, catalog, gateway, make_service, now) -> None:
    ending = _paid_subscription(factory, catalog[0], cancel_at_period_end=True)
    running = _paid_subscription(
        factory,
        catalog[0],
        cancel_at_period_end=True,
        current_period_start=datetime(2024, 3, 1),
        current_period_end=datetime(2024, 3, 31, 23, 59, 59, 999000),
        next_billing_at=datetime(2024, 4, 1),
    )

    result = make_service().run_billing_cycle()

    assert result.phases[PHASE_CANCELLATION].success == 1
    assert gateway.charges == []
    cancelled = factory.get(Subscription, ending.id)
    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_at == now
    assert cancelled.next_billing_at is None
    assert factory.get(Subscription, running.id).status == "active"


# ---------------------------------------------------------------------------
# Fence, isolation, consistency
# ---------------------------------------------------------------------------

def test_subscription_held_by_another_run_is_skipped(factory, catalog, gateway, make_service, now) -> None:
    other_run = uuid4()
    subscription = _paid_subscription(
        factory,
        catalog[0],
        processing_run_id=other_run,
        processing_started_at=now - timedelta(minutes=5),
    )

    result = make_service().run_billing_cycle()

    assert result.phases[PHASE_RECURRING].skipped == 1
    assert gateway.charges == []
    assert factory.get(Subscription, subscription.id).processing_run_id == other_run


def test_expired_lease_is_taken_over(factory, catalog, gateway, make_service, now) -> None:
    subscription = _paid_subscription(
        factory,
        catalog[0],
        processing_run_id=uuid4(),
        processing_started_at=now - timedelta(hours=2),
    )

    result = make_service().run_billing_cycle()

    assert result.phases[PHASE_RECURRING].success == 1
    assert len(gateway.charges) == 1
    assert factory.get(Subscription, subscription.id).processing_run_id is None


def test_lease_is_stamped_when_the_item_is_claimed(factory, catalog, gateway, make_service, now) -> None:
    """A run older than the lease still holds items it claimed recently."""
    subscription = _paid_subscription(factory, catalog[0])
    claimed_at = now + timedelta(minutes=31)
    long_run = make_service(clock=lambda: claimed_at)
    ctx = _RunContext(run_id=uuid4(), now=now, catalog=catalog)

    assert long_run._claim(subscription.id, ctx) is True
    assert factory.get(Subscription, subscription.id).processing_started_at == claimed_at

    overlapping = make_service(now=claimed_at).run_billing_cycle()

    assert overlapping.phases[PHASE_RECURRING].skipped == 1
    assert gateway.charges == []
    assert factory.get(Subscription, subscription.id).processing_run_id == ctx.run_id


def test_running_twice_never_charges_twice(factory, catalog, gateway, make_service) -> None:
    _paid_subscription(factory, catalog[0])

    make_service().run_billing_cycle()
    second = make_service().run_billing_cycle()

    assert len(gateway.charges) == 1
    assert second.phases[PHASE_RECURRING].success == 0


def test_one_failing_subscription_does_not_abort_batch(factory, catalog, gateway, make_service) -> None:
    broken = _paid_subscription(factory, catalog[0])
    healthy = _paid_subscription(factory, catalog[0])
    gateway.failures[_billing_key(factory, broken)] = RuntimeError("socket exploded")

    result = make_service().run_billing_cycle()

    assert result.completed
    assert result.phases[PHASE_RECURRING].success == 1
    assert result.phases[PHASE_RECURRING].failed == 1
    assert factory.get(Subscription, healthy.id).current_period_start == datetime(2024, 3, 15)
    stored = factory.get(Subscription, broken.id)
    assert stored.status == "active"
    assert stored.processing_run_id is None

    (incident,) = factory.all(BillingIncident)
    assert incident.subscription_id == broken.id
    assert incident.kind == "unexpected"
    assert incident.phase == PHASE_RECURRING


def test_write_failure_after_successful_charge_flags_reconciliation(
    factory, catalog, gateway, make_service, now,
) -> None:
    subscription = _paid_subscription(factory, catalog[0])
    service = make_service()

    def failing_commit(db, sub, run_id):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    service._commit = failing_commit

    result = service.run_billing_cycle()

    assert result.completed
    assert result.phases[PHASE_RECURRING].failed == 1
    assert result.failures[0].kind == "inconsistent_write"
    assert len(gateway.charges) == 1
    assert _payments(factory, subscription.id) == []

    stored = factory.get(Subscription, subscription.id)
    assert stored.reconciliation_required is True
    assert stored.processing_run_id == result.run_id

    (incident,) = factory.all(BillingIncident)
    assert incident.kind == "inconsistent_write"
    assert incident.order_id == gateway.charges[0]["order_id"]
    assert incident.amount == 10000

    make_service(now=now + timedelta(days=1)).run_billing_cycle()
    assert len(gateway.charges) == 1


def test_empty_catalog_aborts_run(factory, gateway, make_service, now) -> None:
    retired = factory.plan("Retired", 10000, 10, is_active=False)
    _paid_subscription(factory, retired)

    with pytest.raises(EmptyCatalogError):
        make_service().run_billing_cycle()

    assert gateway.charges == []
    (run,) = factory.all(BillingRun)
    assert run.status == "aborted"
    assert run.error_message


def test_completed_run_is_persisted_with_summary(factory, catalog, make_service) -> None:
    _paid_subscription(factory, catalog[0])

    result = make_service().run_billing_cycle(trigger="cli")

    run = factory.get(BillingRun, result.run_id)
    assert run.status == "completed"
    assert run.trigger == "cli"
    assert run.finished_at is not None
    assert run.summary[PHASE_RECURRING] == {"success": 1, "failed": 0, "skipped": 0}
    assert result.as_dict()["run_id"] == str(result.run_id)


# ---------------------------------------------------------------------------
# Manual retry
# ---------------------------------------------------------------------------

def test_retry_payment_reactivates_subscription(factory, catalog, gateway, make_service, now) -> None:
    subscription = _paid_subscription(
        factory,
        catalog[0],
        status="payment_failed",
        failed_at=now - timedelta(days=1),
        grace_until=now + timedelta(days=6),
    )

    charged = make_service().retry_payment(subscription.id)

    assert charged is True
    stored = factory.get(Subscription, subscription.id)
    assert stored.status == "active"
    assert stored.grace_until is None
    assert stored.failed_at is None
    assert stored.current_period_start == datetime(2024, 3, 15)
    assert gateway.charges[0]["order_id"].startswith("RTY_")


def test_failed_retry_keeps_original_grace_deadline(factory, catalog, gateway, make_service, now) -> None:
    grace_until = now + timedelta(days=6)
    subscription = _paid_subscription(
        factory,
        catalog[0],
        status="restricted",
        failed_at=now - timedelta(days=1),
        grace_until=grace_until,
    )
    gateway.failures["*"] = GatewayRejection("카드 정지", code="INVALID_CARD", status_code=400)

    charged = make_service().retry_payment(subscription.id)

    assert charged is False
    stored = factory.get(Subscription, subscription.id)
    assert stored.status == "restricted"
    assert stored.grace_until == grace_until
    assert stored.failed_at == now
    assert stored.processing_run_id is None


def test_retry_payment_rejects_active_subscription(factory, catalog, make_service) -> None:
    subscription = _paid_subscription(factory, catalog[0])

    with pytest.raises(SubscriptionActionError) as exc_info:
        make_service().retry_payment(subscription.id)

    assert exc_info.value.code == "retry_not_allowed"


def test_retry_after_failed_trial_follows_trial_anchor(factory, catalog, gateway, make_service, now) -> None:
    subscription = factory.subscription(
        catalog[0],
        status="payment_failed",
        next_billing_at=datetime(2024, 3, 10),
        failed_at=datetime(2024, 3, 10, 1, 0),
        grace_until=datetime(2024, 3, 17, 23, 59, 59, 999000),
    )

    charged = make_service(anchor_trial_to_next_billing_at=True).retry_payment(subscription.id)

    assert charged is True
    stored = factory.get(Subscription, subscription.id)
    assert stored.current_period_start == datetime(2024, 3, 10)
    assert stored.next_billing_at == datetime(2024, 4, 10)
    assert gateway.charges[0]["amount"] == 10000


# ---------------------------------------------------------------------------
# Worker threads
# ---------------------------------------------------------------------------

def test_worker_pool_charges_each_subscription_exactly_once(
    threaded_factory, threaded_session_factory, gateway, now,
) -> None:
    plan = threaded_factory.plan("Unlimited", 50000, None)
    paid = [_paid_subscription(threaded_factory, plan) for _ in range(8)]
    trials = [threaded_factory.subscription(plan, next_billing_at=now - timedelta(hours=1)) for _ in range(3)]
    declined = _paid_subscription(threaded_factory, plan)
    gateway.failures[_billing_key(threaded_factory, declined)] = GatewayRejection(
        "잔액이 부족합니다.", code="NOT_ENOUGH_BALANCE", status_code=400,
    )
    service = BillingLifecycleService(
        threaded_session_factory,
        PaymentExecutor(gateway),
        clock=lambda: now,
        resolver=PromotionResolver(order_name_prefix="PharmChecker"),
        max_workers=4,
        grace_days=7,
        suspend_after_days=7,
        lease_minutes=30,
        anchor_trial_to_next_billing_at=False,
    )

    result = service.run_billing_cycle()

    assert result.completed
    assert result.phases[PHASE_TRIAL].success == 3
    assert result.phases[PHASE_RECURRING].success == 8
    assert result.phases[PHASE_RECURRING].failed == 1
    assert result.phases[PHASE_RECURRING].skipped == 0

    expected_keys = {_billing_key(threaded_factory, sub) for sub in [*paid, *trials, declined]}
    charged_keys = [charge["billing_key"] for charge in gateway.charges]
    assert len(charged_keys) == 12
    assert set(charged_keys) == expected_keys
    assert len({charge["order_id"] for charge in gateway.charges}) == 12

    for sub in [*paid, *trials]:
        stored = threaded_factory.get(Subscription, sub.id)
        assert stored.processing_run_id is None
        assert stored.next_billing_at == datetime(2024, 4, 15)
        assert len(_payments(threaded_factory, sub.id)) == 1
    assert threaded_factory.get(Subscription, declined.id).status == "payment_failed"
