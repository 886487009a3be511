"""
Pytest fixtures for billing engine tests.

Everything runs against an in-memory SQLite database sharing one connection
(StaticPool), so sessions must be used sequentially: create data through the
``factory`` fixture first, then open a session or call the service.
"""
from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import billing_engine.models  # noqa: F401
from billing_engine.core.database import Base
from billing_engine.models.payment_method import PaymentMethod
from billing_engine.models.plan import Plan
from billing_engine.models.promotion import PendingPromotion, Promotion
from billing_engine.models.subscription import STATUS_ACTIVE, Subscription
from billing_engine.models.usage_stat import UsageDailyStat
from billing_engine.models.user import User
from billing_engine.services.billing_lifecycle_service import BillingLifecycleService
from billing_engine.services.payment_executor import PaymentExecutor
from billing_engine.services.payment_gateway import BillingKeyResult
from billing_engine.services.promotion_resolver import PromotionResolver

FIXED_NOW = datetime(2024, 3, 15, 1, 0, 0)


class FakeGateway:
    """
    In-memory stand-in for TossPaymentsGateway.

    ``failures`` maps a billing key (or ``"*"`` for every key) to the
    exception the next charge should raise.
    """

    def __init__(self) -> None:
        self.charges: list[dict[str, Any]] = []
        self.issued: list[dict[str, str]] = []
        self.failures: dict[str, Exception] = {}

    def charge(
        self,
        billing_key: str,
        amount: int,
        order_id: str,
        order_name: str,
        customer_key: str,
    ) -> dict[str, Any]:
        self.charges.append(
            {
                "billing_key": billing_key,
                "amount": amount,
                "order_id": order_id,
                "order_name": order_name,
                "customer_key": customer_key,
            }
        )
        error = self.failures.get(billing_key) or self.failures.get("*")
        if error is not None:
            raise error
        return {"paymentKey": f"pay_{order_id}", "status": "DONE", "totalAmount": amount}

    def issue_billing_key(self, auth_key: str, customer_key: str) -> BillingKeyResult:
        self.issued.append({"auth_key": auth_key, "customer_key": customer_key})
        return BillingKeyResult(
            billing_key=f"bk_{auth_key}",
            card_company="Shinhan",
            card_last4="4242",
            raw={"billingKey": f"bk_{auth_key}"},
        )


class BillingFactory:
    """Creates rows in short-lived sessions and returns detached instances."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def _save(self, *instances: Any) -> None:
        with self._session_factory() as db:
            db.add_all(instances)
            db.commit()

    def get(self, model: type, ident: Any) -> Any:
        with self._session_factory() as db:
            return db.get(model, ident)

    def all(self, model: type) -> list[Any]:
        with self._session_factory() as db:
            return list(db.query(model).all())

    def plan(
        self,
        name: str,
        price: int,
        daily_limit: Optional[int],
        *,
        sort_order: int = 0,
        is_active: bool = True,
    ) -> Plan:
        plan = Plan(
            id=uuid4(),
            plan_name=name,
            monthly_price=price,
            daily_rx_limit=daily_limit,
            sort_order=sort_order,
            is_active=is_active,
        )
        self._save(plan)
        return plan

    def user(self, *, deleted_at: Optional[datetime] = None) -> User:
        user = User(id=uuid4(), email=f"{uuid4().hex[:10]}@pharm.example", deleted_at=deleted_at)
        self._save(user)
        return user

    def payment_method(self, user: User, *, disabled_at: Optional[datetime] = None) -> PaymentMethod:
        payment_method = PaymentMethod(
            id=uuid4(),
            user_id=user.id,
            billing_key=f"bk_{uuid4().hex[:12]}",
            card_company="Hyundai",
            card_last4="1234",
            is_default=True,
            disabled_at=disabled_at,
        )
        self._save(payment_method)
        return payment_method

    def promotion(
        self,
        discount_type: str,
        discount_value: int = 0,
        *,
        duration_months: int = 1,
        is_active: bool = True,
    ) -> Promotion:
        promotion = Promotion(
            id=uuid4(),
            promotion_code=f"PROMO{uuid4().hex[:6].upper()}",
            promotion_name=f"{discount_type} promo",
            discount_type=discount_type,
            discount_value=discount_value,
            duration_months=duration_months,
            is_active=is_active,
        )
        self._save(promotion)
        return promotion

    def pending_promotion(self, user: User, promotion: Promotion, granted_at: datetime) -> PendingPromotion:
        grant = PendingPromotion(id=uuid4(), user_id=user.id, promotion_id=promotion.id, granted_at=granted_at)
        self._save(grant)
        return grant

    def subscription(
        self,
        plan: Plan,
        *,
        user: Optional[User] = None,
        with_card: bool = True,
        **overrides: Any,
    ) -> Subscription:
        """Trial subscription by default; pass period fields for a paid one."""
        user = user or self.user()
        payment_method = self.payment_method(user) if with_card else None
        values: dict[str, Any] = {
            "id": uuid4(),
            "user_id": user.id,
            "entry_plan_id": plan.id,
            "billing_plan_id": plan.id,
            "status": STATUS_ACTIVE,
            "customer_key": f"cust_{user.id.hex[:12]}",
            "payment_method_id": payment_method.id if payment_method else None,
            "is_first_billing": True,
            "cancel_at_period_end": False,
            "reconciliation_required": False,
        }
        values.update(overrides)
        subscription = Subscription(**values)
        self._save(subscription)
        return subscription

    def daily_usage(self, user: User, usage_date: date, rx_count: int) -> UsageDailyStat:
        stat = UsageDailyStat(id=uuid4(), user_id=user.id, usage_date=usage_date, rx_count=rx_count)
        self._save(stat)
        return stat


def _sqlite_engine(url: str, begin_statement: str = "BEGIN", **kwargs: Any) -> Engine:
    """
    SQLite with working SAVEPOINTs (pysqlite needs the driver's own
    transaction handling disabled for ``begin_nested``).
    """
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql(begin_statement)

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory database on a single shared connection."""
    engine = _sqlite_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def threaded_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """
    File database with a connection pool, for the worker-thread path.

    ``BEGIN IMMEDIATE`` takes the write lock up front so concurrent sessions
    wait on the busy timeout instead of failing on lock upgrade.
    """
    engine = _sqlite_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        begin_statement="BEGIN IMMEDIATE",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def factory(session_factory: sessionmaker) -> BillingFactory:
    return BillingFactory(session_factory)


@pytest.fixture
def threaded_session_factory(threaded_engine: Engine) -> sessionmaker:
    return sessionmaker(bind=threaded_engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def threaded_factory(threaded_session_factory: sessionmaker) -> BillingFactory:
    return BillingFactory(threaded_session_factory)


@pytest.fixture
def catalog(factory: BillingFactory) -> list[Plan]:
    """Three tiers: 10/day, 20/day and unlimited."""
    return [
        factory.plan("Basic", 10000, 10, sort_order=1),
        factory.plan("Standard", 30000, 20, sort_order=2),
        factory.plan("Unlimited", 50000, None, sort_order=3),
    ]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def make_service(
    session_factory: sessionmaker,
    gateway: FakeGateway,
) -> Callable[..., BillingLifecycleService]:
    """Build a lifecycle service with a fixed clock (``FIXED_NOW`` by default)."""

    def _make(now: datetime = FIXED_NOW, **overrides: Any) -> BillingLifecycleService:
        options: dict[str, Any] = {
            "clock": lambda: now,
            "resolver": PromotionResolver(order_name_prefix="PharmChecker"),
            "max_workers": 1,
            "grace_days": 7,
            "suspend_after_days": 7,
            "lease_minutes": 30,
            "anchor_trial_to_next_billing_at": False,
        }
        options.update(overrides)
        return BillingLifecycleService(session_factory, PaymentExecutor(gateway), **options)

    return _make
