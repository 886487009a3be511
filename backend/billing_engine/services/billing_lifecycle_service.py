"""
Billing lifecycle service — the scheduler's state machine driver.

Every run executes four phases in a fixed order:

1. trial expiration      -> first paid charge
2. grace expiration      -> restricted / suspended
3. cancel at period end  -> cancelled
4. recurring charge      -> next period (or payment_failed + grace)

Each subscription is handled in its own session behind a per-subscription
fence (``processing_run_id``) so overlapping runs never charge twice. One
item's failure is counted and recorded, never aborts the batch; only a
ConfigurationError (e.g. empty plan catalog) aborts the run.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.core.clock import Clock, utcnow
from billing_engine.core.config import settings
from billing_engine.models.billing_payment import PAYMENT_FAILED, PAYMENT_SUCCESS, BillingPayment
from billing_engine.models.billing_run import (
    RUN_ABORTED,
    RUN_COMPLETED,
    RUN_RUNNING,
    BillingIncident,
    BillingRun,
)
from billing_engine.models.payment_method import PaymentMethod
from billing_engine.models.plan import Plan
from billing_engine.models.subscription import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PAYMENT_FAILED,
    STATUS_RESTRICTED,
    STATUS_SUSPENDED,
    Subscription,
)
from billing_engine.models.user import User
from billing_engine.services.billing_errors import (
    BillingError,
    DataStoreError,
    EmptyCatalogError,
    InconsistentWriteError,
    SubscriptionActionError,
)
from billing_engine.services.payment_executor import ChargeResult, PaymentExecutor, build_order_id
from billing_engine.services.period_calculator import (
    BillingPeriod,
    grace_deadline,
    next_period,
    period_starting,
    yesterday_end_of_day,
)
from billing_engine.services.plan_selector import select_plan
from billing_engine.services.promotion_resolver import PricingDecision, PromotionResolver
from billing_engine.services.usage_aggregator import UsageAggregator

logger = logging.getLogger(__name__)

PHASE_TRIAL = "trial_expiration"
PHASE_GRACE = "grace_expiration"
PHASE_CANCELLATION = "cancellation"
PHASE_RECURRING = "recurring_charge"
PHASE_RETRY = "manual_retry"
PHASES = (PHASE_TRIAL, PHASE_GRACE, PHASE_CANCELLATION, PHASE_RECURRING)

SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"

NO_PAYMENT_METHOD = "NO_PAYMENT_METHOD"


@dataclass
class PhaseCounts:
    success: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class ItemFailure:
    """Registro estruturado de uma falha por assinatura."""

    phase: str
    subscription_id: UUID
    kind: str
    detail: str


@dataclass
class BillingRunResult:
    run_id: UUID
    started_at: datetime
    status: str = RUN_RUNNING
    finished_at: Optional[datetime] = None
    phases: dict[str, PhaseCounts] = field(
        default_factory=lambda: {phase: PhaseCounts() for phase in PHASES}
    )
    failures: list[ItemFailure] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status == RUN_COMPLETED

    def summary(self) -> dict[str, dict[str, int]]:
        return {phase: asdict(counts) for phase, counts in self.phases.items()}

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "status": self.status,
            **self.summary(),
            "failures": len(self.failures),
        }


@dataclass(frozen=True)
class _RunContext:
    run_id: UUID
    now: datetime
    catalog: Sequence[Plan]


@dataclass(frozen=True)
class _ItemResult:
    outcome: str
    failure: Optional[ItemFailure] = None


Criteria = list[Any]
Handler = Callable[[Session, Subscription, _RunContext], _ItemResult]


class BillingLifecycleService:
    """
    Orchestrates the four billing phases.

    Collaborators (session factory, payment executor, clock) are injected so
    tests can use SQLite, a fake gateway and a fixed clock. Use
    ``from_settings`` in workers.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        executor: PaymentExecutor,
        *,
        clock: Clock = utcnow,
        resolver: Optional[PromotionResolver] = None,
        max_workers: Optional[int] = None,
        grace_days: Optional[int] = None,
        suspend_after_days: Optional[int] = None,
        lease_minutes: Optional[int] = None,
        anchor_trial_to_next_billing_at: Optional[bool] = None,
    ) -> None:
        self._session_factory = session_factory
        self._executor = executor
        self._clock = clock
        self._resolver = resolver or PromotionResolver()
        self._max_workers = max_workers if max_workers is not None else settings.BILLING_MAX_WORKERS
        self._grace_days = grace_days if grace_days is not None else settings.BILLING_GRACE_DAYS
        self._suspend_after_days = (
            suspend_after_days if suspend_after_days is not None else settings.BILLING_SUSPEND_AFTER_DAYS
        )
        self._lease = timedelta(
            minutes=lease_minutes if lease_minutes is not None else settings.BILLING_LEASE_MINUTES
        )
        self._anchor_trial = (
            anchor_trial_to_next_billing_at
            if anchor_trial_to_next_billing_at is not None
            else settings.BILLING_ANCHOR_TRIAL_TO_NEXT_BILLING_AT
        )

    @classmethod
    def from_settings(cls) -> BillingLifecycleService:
        """
        Factory — Postgres sync session + Toss gateway from environment.

        Raises:
            ConfigurationError: Se o gateway nao estiver configurado.
        """
        from billing_engine.core.database_sync import SyncSessionLocal
        from billing_engine.services.payment_gateway import TossPaymentsGateway

        return cls(SyncSessionLocal, PaymentExecutor(TossPaymentsGateway.from_settings()))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_billing_cycle(self, trigger: str = "manual") -> BillingRunResult:
        """
        Run the four phases once.

        Raises:
            ConfigurationError: Catalog/configuration problem; run is aborted.
        """
        now = self._clock()
        result = BillingRunResult(run_id=uuid4(), started_at=now)
        self._record_run_start(result, trigger)
        logger.info("billing_run_start: run=%s trigger=%s now=%s", result.run_id, trigger, now.isoformat())

        touched: set[UUID] = set()
        try:
            ctx = _RunContext(run_id=result.run_id, now=now, catalog=self._load_catalog())

            self._run_phase(result, PHASE_TRIAL, self._trial_criteria(now), self._process_trial, ctx, touched)
            self._run_phase(result, PHASE_GRACE, self._restrict_criteria(now), self._process_restrict, ctx, touched)
            self._run_phase(result, PHASE_GRACE, self._suspend_criteria(now), self._process_suspend, ctx, touched)
            self._run_phase(
                result, PHASE_CANCELLATION, self._cancellation_criteria(now), self._process_cancellation, ctx, touched,
            )
            self._run_phase(
                result, PHASE_RECURRING, self._recurring_criteria(now), self._process_recurring, ctx, touched,
            )
        except Exception as exc:
            result.status = RUN_ABORTED
            result.finished_at = self._clock()
            logger.error("billing_run_aborted: run=%s error=%s", result.run_id, exc)
            self._record_run_finish(result, error_message=str(exc)[:2000])
            raise

        result.status = RUN_COMPLETED
        result.finished_at = self._clock()
        self._record_run_finish(result)
        logger.info("billing_run_finished: %s", result.as_dict())
        return result

    def retry_payment(self, subscription_id: UUID) -> bool:
        """
        Charge a ``payment_failed``/``restricted`` subscription once, outside
        the scheduled run (e.g. right after the customer replaced the card).

        Success reactivates the subscription; failure is recorded but keeps the
        original grace deadline.

        Raises:
            SubscriptionActionError: Not eligible or currently being processed.
        """
        now = self._clock()
        ctx = _RunContext(run_id=uuid4(), now=now, catalog=self._load_catalog())
        criteria = [
            Subscription.status.in_([STATUS_PAYMENT_FAILED, STATUS_RESTRICTED]),
            Subscription.reconciliation_required.is_(False),
        ]
        with self._session_factory() as db:
            eligible = db.execute(
                select(Subscription.id).where(Subscription.id == subscription_id, *criteria)
            ).scalar_one_or_none()
        if eligible is None:
            raise SubscriptionActionError(
                "Assinatura nao esta aguardando pagamento.", code="retry_not_allowed",
            )

        item = self._process_item(PHASE_RETRY, subscription_id, criteria, self._process_retry, ctx)
        if item.outcome == SKIPPED:
            raise SubscriptionActionError(
                "Assinatura em processamento, tente novamente mais tarde.", code="subscription_busy",
            )
        return item.outcome == SUCCESS

    # ------------------------------------------------------------------
    # Phase criteria
    # ------------------------------------------------------------------

    @staticmethod
    def _trial_criteria(now: datetime) -> Criteria:
        return [
            Subscription.status == STATUS_ACTIVE,
            Subscription.current_period_start.is_(None),
            Subscription.next_billing_at.isnot(None),
            Subscription.next_billing_at <= now,
            Subscription.cancel_at_period_end.is_(False),
            Subscription.reconciliation_required.is_(False),
        ]

    @staticmethod
    def _restrict_criteria(now: datetime) -> Criteria:
        return [
            Subscription.status == STATUS_PAYMENT_FAILED,
            Subscription.grace_until.isnot(None),
            Subscription.grace_until < now,
            Subscription.reconciliation_required.is_(False),
        ]

    def _suspend_criteria(self, now: datetime) -> Criteria:
        return [
            Subscription.status == STATUS_RESTRICTED,
            Subscription.grace_until.isnot(None),
            Subscription.grace_until < now - timedelta(days=self._suspend_after_days),
            Subscription.reconciliation_required.is_(False),
        ]

    @staticmethod
    def _cancellation_criteria(now: datetime) -> Criteria:
        return [
            Subscription.status == STATUS_ACTIVE,
            Subscription.cancel_at_period_end.is_(True),
            Subscription.current_period_end.isnot(None),
            Subscription.current_period_end <= yesterday_end_of_day(now),
            Subscription.reconciliation_required.is_(False),
        ]

    @staticmethod
    def _recurring_criteria(now: datetime) -> Criteria:
        return [
            Subscription.status == STATUS_ACTIVE,
            Subscription.cancel_at_period_end.is_(False),
            Subscription.current_period_start.isnot(None),
            Subscription.current_period_end <= yesterday_end_of_day(now),
            Subscription.user.has(User.deleted_at.is_(None)),
            Subscription.reconciliation_required.is_(False),
        ]

    # ------------------------------------------------------------------
    # Batch driver
    # ------------------------------------------------------------------

    def _run_phase(
        self,
        result: BillingRunResult,
        phase: str,
        criteria: Criteria,
        handler: Handler,
        ctx: _RunContext,
        touched: set[UUID],
    ) -> None:
        with self._session_factory() as db:
            stmt = select(Subscription.id).where(*criteria).order_by(Subscription.created_at)
            candidates = [sub_id for sub_id in db.execute(stmt).scalars() if sub_id not in touched]
        touched.update(candidates)

        logger.info("billing_phase_start: run=%s phase=%s candidates=%d", ctx.run_id, phase, len(candidates))
        counts = result.phases[phase]
        for item in self._map(lambda sub_id: self._process_item(phase, sub_id, criteria, handler, ctx), candidates):
            if item.outcome == SUCCESS:
                counts.success += 1
            elif item.outcome == SKIPPED:
                counts.skipped += 1
            else:
                counts.failed += 1
            if item.failure is not None:
                result.failures.append(item.failure)

    def _map(self, fn: Callable[[UUID], _ItemResult], ids: Sequence[UUID]) -> Iterator[_ItemResult]:
        if self._max_workers <= 1 or len(ids) <= 1:
            return (fn(sub_id) for sub_id in ids)
        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="billing") as pool:
            return iter(list(pool.map(fn, ids)))

    def _process_item(
        self,
        phase: str,
        sub_id: UUID,
        criteria: Criteria,
        handler: Handler,
        ctx: _RunContext,
    ) -> _ItemResult:
        """Claim -> reload -> handle -> single commit. Never raises."""
        try:
            claimed = self._claim(sub_id, ctx)
        except SQLAlchemyError as exc:
            logger.error("billing_claim_failed: phase=%s subscription=%s error=%s", phase, sub_id, exc)
            failure = ItemFailure(phase, sub_id, DataStoreError.kind, str(exc)[:500])
            return _ItemResult(FAILED, failure)
        if not claimed:
            logger.info("billing_item_locked: phase=%s subscription=%s", phase, sub_id)
            return _ItemResult(SKIPPED)

        try:
            with self._session_factory() as db:
                stmt = select(Subscription).where(Subscription.id == sub_id, *criteria)
                subscription = db.execute(stmt).scalar_one_or_none()
                if subscription is None:
                    # Estado mudou desde a consulta de candidatos
                    self._release_fence(sub_id, ctx.run_id, db)
                    return _ItemResult(SKIPPED)
                return handler(db, subscription, ctx)

        except InconsistentWriteError as exc:
            logger.critical(
                "billing_inconsistent_write: phase=%s subscription=%s order_id=%s payment_key=%s amount=%d "
                "error=%s (cobrado sem atualizar a assinatura; conciliar manualmente)",
                phase, sub_id, exc.order_id, exc.payment_key, exc.amount, exc.detail,
            )
            self._flag_reconciliation(sub_id)
            self._record_incident(ctx.run_id, sub_id, phase, exc.kind, exc.detail, exc)
            return _ItemResult(FAILED, ItemFailure(phase, sub_id, exc.kind, exc.detail))

        except BillingError as exc:
            logger.error("billing_item_failed: phase=%s subscription=%s kind=%s error=%s", phase, sub_id, exc.kind, exc)
            self._release_fence(sub_id, ctx.run_id)
            self._record_incident(ctx.run_id, sub_id, phase, exc.kind, exc.detail)
            return _ItemResult(FAILED, ItemFailure(phase, sub_id, exc.kind, exc.detail))

        except SQLAlchemyError as exc:
            logger.error("billing_item_failed: phase=%s subscription=%s kind=data_store error=%s", phase, sub_id, exc)
            self._release_fence(sub_id, ctx.run_id)
            self._record_incident(ctx.run_id, sub_id, phase, DataStoreError.kind, str(exc))
            return _ItemResult(FAILED, ItemFailure(phase, sub_id, DataStoreError.kind, str(exc)[:500]))

        except Exception as exc:
            logger.exception("billing_item_error: phase=%s subscription=%s", phase, sub_id)
            self._release_fence(sub_id, ctx.run_id)
            self._record_incident(ctx.run_id, sub_id, phase, "unexpected", repr(exc))
            return _ItemResult(FAILED, ItemFailure(phase, sub_id, "unexpected", repr(exc)[:500]))

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    def _process_trial(self, db: Session, subscription: Subscription, ctx: _RunContext) -> _ItemResult:
        """Trial ended: charge the billing plan; a free promotion was the trial itself."""
        plan = subscription.billing_plan
        pricing = self._resolver.resolve(db, subscription, plan, ctx.now, include_free=False)
        return self._charge_and_settle(
            db,
            subscription,
            plan,
            pricing,
            ctx,
            phase=PHASE_TRIAL,
            order_prefix="TRL",
            new_period=self._first_paid_period(subscription, ctx.now),
            clear_promotion=True,
        )

    def _process_restrict(self, db: Session, subscription: Subscription, ctx: _RunContext) -> _ItemResult:
        subscription.status = STATUS_RESTRICTED
        self._commit(db, subscription, ctx.run_id)
        logger.info(
            "subscription_restricted: subscription=%s grace_until=%s",
            subscription.id, subscription.grace_until,
        )
        return _ItemResult(SUCCESS)

    def _process_suspend(self, db: Session, subscription: Subscription, ctx: _RunContext) -> _ItemResult:
        subscription.status = STATUS_SUSPENDED
        subscription.grace_until = None
        subscription.next_billing_at = None
        self._commit(db, subscription, ctx.run_id)
        logger.info("subscription_suspended: subscription=%s failed_at=%s", subscription.id, subscription.failed_at)
        return _ItemResult(SUCCESS)

    def _process_cancellation(self, db: Session, subscription: Subscription, ctx: _RunContext) -> _ItemResult:
        subscription.status = STATUS_CANCELLED
        subscription.cancel_at_period_end = False
        subscription.cancelled_at = ctx.now
        subscription.next_billing_at = None
        self._commit(db, subscription, ctx.run_id)
        logger.info(
            "subscription_cancelled: subscription=%s period_end=%s",
            subscription.id, subscription.current_period_end,
        )
        return _ItemResult(SUCCESS)

    def _process_recurring(self, db: Session, subscription: Subscription, ctx: _RunContext) -> _ItemResult:
        plan, pricing = self._price_elapsed_period(db, subscription, ctx)
        return self._charge_and_settle(
            db,
            subscription,
            plan,
            pricing,
            ctx,
            phase=PHASE_RECURRING,
            order_prefix="REC",
            new_period=next_period(subscription.current_period_end),
            clear_promotion=False,
        )

    def _process_retry(self, db: Session, subscription: Subscription, ctx: _RunContext) -> _ItemResult:
        if subscription.current_period_start is None:
            plan = subscription.billing_plan
            pricing = self._resolver.resolve(db, subscription, plan, ctx.now, include_free=False)
            new_period = self._first_paid_period(subscription, ctx.now)
            clear_promotion = True
        else:
            plan, pricing = self._price_elapsed_period(db, subscription, ctx)
            new_period = next_period(subscription.current_period_end)
            clear_promotion = False
        return self._charge_and_settle(
            db,
            subscription,
            plan,
            pricing,
            ctx,
            phase=PHASE_RETRY,
            order_prefix="RTY",
            new_period=new_period,
            clear_promotion=clear_promotion,
            keep_grace_on_failure=True,
        )

    # ------------------------------------------------------------------
    # Charge + settle
    # ------------------------------------------------------------------

    def _first_paid_period(self, subscription: Subscription, now: datetime) -> BillingPeriod:
        """Period that follows the trial: starts today, or on the scheduled billing date."""
        anchor = now
        if self._anchor_trial and subscription.next_billing_at is not None:
            anchor = subscription.next_billing_at
        return period_starting(anchor)

    def _price_elapsed_period(
        self, db: Session, subscription: Subscription, ctx: _RunContext,
    ) -> tuple[Plan, PricingDecision]:
        usage = UsageAggregator.aggregate(
            db,
            subscription.id,
            subscription.user_id,
            subscription.current_period_start,
            subscription.current_period_end,
        )
        if usage.failed:
            logger.warning(
                "usage_degraded_to_lowest_tier: subscription=%s error=%s",
                subscription.id, usage.error,
            )
        plan = select_plan(usage.total, ctx.catalog)
        logger.info(
            "plan_selected: subscription=%s usage=%d plan=%s price=%d",
            subscription.id, usage.total, plan.plan_name, plan.monthly_price,
        )
        return plan, self._resolver.resolve(db, subscription, plan, ctx.now)

    def _charge_and_settle(
        self,
        db: Session,
        subscription: Subscription,
        plan: Plan,
        pricing: PricingDecision,
        ctx: _RunContext,
        *,
        phase: str,
        order_prefix: str,
        new_period: BillingPeriod,
        clear_promotion: bool,
        keep_grace_on_failure: bool = False,
    ) -> _ItemResult:
        """
        Charge once, then write the payment record and the subscription state
        in one commit (which also releases the fence).
        """
        payment_method = self._usable_payment_method(db, subscription)
        order_id = build_order_id(order_prefix, subscription.id, ctx.now)

        if payment_method is None and pricing.amount_due > 0:
            charge = ChargeResult(
                success=False,
                amount=pricing.amount_due,
                error_code=NO_PAYMENT_METHOD,
                error_message="Nenhum meio de pagamento ativo.",
                error_kind="no_payment_method",
            )
        else:
            charge = self._executor.charge(
                payment_method,
                pricing.amount_due,
                order_id,
                pricing.order_name,
                subscription.customer_key,
            )

        db.add(
            BillingPayment(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                plan_id=plan.id,
                payment_method_id=payment_method.id if payment_method else None,
                billing_run_id=ctx.run_id,
                order_id=order_id,
                payment_key=charge.gateway_reference,
                billing_key=payment_method.billing_key if payment_method else None,
                amount=charge.amount,
                is_free=charge.is_free,
                status=PAYMENT_SUCCESS if charge.success else PAYMENT_FAILED,
                fail_code=charge.error_code,
                fail_reason=charge.error_message,
                requested_at=ctx.now,
                approved_at=ctx.now if charge.success else None,
            )
        )

        if charge.success:
            self._apply_paid_period(subscription, plan, new_period, clear_promotion)
        elif keep_grace_on_failure:
            subscription.failed_at = ctx.now
        else:
            self._apply_payment_failure(subscription, ctx.now)

        try:
            self._commit(db, subscription, ctx.run_id)
        except SQLAlchemyError as exc:
            db.rollback()
            if charge.success and not charge.is_free:
                raise InconsistentWriteError(
                    f"Falha ao gravar cobranca aprovada: {exc}",
                    order_id=order_id,
                    payment_key=charge.gateway_reference,
                    amount=charge.amount,
                ) from exc
            raise DataStoreError(f"Falha ao gravar resultado da cobranca: {exc}") from exc

        if charge.success:
            logger.info(
                "billing_charged: phase=%s subscription=%s plan=%s amount=%d free=%s next_billing_at=%s",
                phase, subscription.id, plan.plan_name, charge.amount, charge.is_free,
                new_period.next_billing_at.isoformat(),
            )
            return _ItemResult(SUCCESS)

        logger.warning(
            "billing_charge_failed: phase=%s subscription=%s amount=%d code=%s grace_until=%s",
            phase, subscription.id, charge.amount, charge.error_code, subscription.grace_until,
        )
        return _ItemResult(
            FAILED,
            ItemFailure(phase, subscription.id, charge.error_kind or "gateway", charge.error_message or ""),
        )

    @staticmethod
    def _apply_paid_period(
        subscription: Subscription,
        plan: Plan,
        period: BillingPeriod,
        clear_promotion: bool,
    ) -> None:
        subscription.status = STATUS_ACTIVE
        subscription.billing_plan_id = plan.id
        subscription.current_period_start = period.start
        subscription.current_period_end = period.end
        subscription.next_billing_at = period.next_billing_at
        subscription.is_first_billing = False
        subscription.failed_at = None
        subscription.grace_until = None
        if clear_promotion:
            subscription.promotion_id = None
            subscription.promotion_applied_at = None
            subscription.promotion_expires_at = None

    def _apply_payment_failure(self, subscription: Subscription, now: datetime) -> None:
        subscription.status = STATUS_PAYMENT_FAILED
        subscription.failed_at = now
        subscription.grace_until = grace_deadline(now, self._grace_days)

    @staticmethod
    def _usable_payment_method(db: Session, subscription: Subscription) -> Optional[PaymentMethod]:
        if subscription.payment_method_id is None:
            return None
        stmt = select(PaymentMethod).where(
            PaymentMethod.id == subscription.payment_method_id,
            PaymentMethod.disabled_at.is_(None),
        )
        return db.execute(stmt).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Fence
    # ------------------------------------------------------------------

    def _claim(self, sub_id: UUID, ctx: _RunContext) -> bool:
        """Atomically mark the subscription as owned by this run (or an expired lease)."""
        claimed_at = self._clock()
        stmt = (
            update(Subscription)
            .where(
                Subscription.id == sub_id,
                or_(
                    Subscription.processing_run_id.is_(None),
                    Subscription.processing_started_at < claimed_at - self._lease,
                ),
            )
            .values(processing_run_id=ctx.run_id, processing_started_at=claimed_at)
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as db:
            claimed = db.execute(stmt).rowcount == 1
            db.commit()
        return claimed

    @staticmethod
    def _commit(db: Session, subscription: Subscription, run_id: UUID) -> None:
        subscription.processing_run_id = None
        subscription.processing_started_at = None
        subscription.last_billing_run_id = run_id
        db.commit()

    def _release_fence(self, sub_id: UUID, run_id: UUID, db: Optional[Session] = None) -> None:
        stmt = (
            update(Subscription)
            .where(Subscription.id == sub_id, Subscription.processing_run_id == run_id)
            .values(processing_run_id=None, processing_started_at=None)
            .execution_options(synchronize_session=False)
        )
        try:
            if db is not None:
                db.execute(stmt)
                db.commit()
                return
            with self._session_factory() as fresh:
                fresh.execute(stmt)
                fresh.commit()
        except SQLAlchemyError:
            logger.exception("billing_fence_release_failed: subscription=%s run=%s", sub_id, run_id)

    def _flag_reconciliation(self, sub_id: UUID) -> None:
        """Keep the fence and exclude the subscription from every phase until reconciled."""
        stmt = (
            update(Subscription)
            .where(Subscription.id == sub_id)
            .values(reconciliation_required=True)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory() as db:
                db.execute(stmt)
                db.commit()
        except SQLAlchemyError:
            logger.critical(
                "billing_reconciliation_flag_failed: subscription=%s (fence mantido ate expirar o lease)",
                sub_id,
            )

    # ------------------------------------------------------------------
    # Catalog / run log
    # ------------------------------------------------------------------

    def _load_catalog(self) -> list[Plan]:
        with self._session_factory() as db:
            stmt = (
                select(Plan)
                .where(Plan.is_active.is_(True))
                .order_by(Plan.monthly_price.asc(), Plan.sort_order.asc())
            )
            plans = list(db.execute(stmt).scalars().all())
        if not plans:
            raise EmptyCatalogError()
        return plans

    def _record_run_start(self, result: BillingRunResult, trigger: str) -> None:
        try:
            with self._session_factory() as db:
                db.add(
                    BillingRun(
                        id=result.run_id,
                        trigger=trigger,
                        status=RUN_RUNNING,
                        started_at=result.started_at,
                    )
                )
                db.commit()
        except SQLAlchemyError:
            logger.exception("Falha ao persistir BillingRun (run=%s)", result.run_id)

    def _record_run_finish(self, result: BillingRunResult, error_message: Optional[str] = None) -> None:
        try:
            with self._session_factory() as db:
                run = db.get(BillingRun, result.run_id)
                if run is None:
                    return
                run.status = result.status
                run.finished_at = result.finished_at
                run.summary = {**result.summary(), "failures": len(result.failures)}
                run.error_message = error_message
                db.commit()
        except SQLAlchemyError:
            logger.exception("Falha ao finalizar BillingRun (run=%s)", result.run_id)

    def _record_incident(
        self,
        run_id: UUID,
        sub_id: UUID,
        phase: str,
        kind: str,
        detail: str,
        exc: Optional[InconsistentWriteError] = None,
    ) -> None:
        """Persist a BillingIncident for support / reconciliation (best effort)."""
        try:
            with self._session_factory() as db:
                db.add(
                    BillingIncident(
                        billing_run_id=run_id,
                        subscription_id=sub_id,
                        phase=phase,
                        kind=kind,
                        order_id=exc.order_id if exc else None,
                        payment_key=exc.payment_key if exc else None,
                        amount=exc.amount if exc else None,
                        detail=(detail or "")[:2000],
                        created_at=self._clock(),
                    )
                )
                db.commit()
        except SQLAlchemyError:
            logger.exception("Falha ao persistir BillingIncident (subscription=%s kind=%s)", sub_id, kind)
