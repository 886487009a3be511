"""
Subscription service — user/operator actions around the billing lifecycle.

Signup (billing key issuance + trial), cancel / reactivate, card replacement,
promotion grants and the status read path. Methods flush but never commit;
the caller owns the transaction (``get_sync_db``).
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engine.models.payment_method import PaymentMethod
from billing_engine.models.plan import Plan
from billing_engine.models.promotion import APPLIED, PENDING, PendingPromotion, Promotion
from billing_engine.models.subscription import (
    LIVE_STATUSES,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PAYMENT_FAILED,
    STATUS_RESTRICTED,
    STATUS_SUSPENDED,
    Subscription,
)
from billing_engine.models.user import User
from billing_engine.services.billing_errors import SubscriptionActionError
from billing_engine.services.payment_gateway import TossPaymentsGateway
from billing_engine.services.period_calculator import add_months, start_of_day

logger = logging.getLogger(__name__)

ACCESS_FULL = "full"
ACCESS_GRACE = "grace"
ACCESS_LIMITED = "limited"
ACCESS_BLOCKED = "blocked"
ACCESS_NONE = "none"


class SubscriptionService:
    """Static methods for user-triggered subscription changes."""

    # ------------------------------------------------------------------
    # Signup
    # ------------------------------------------------------------------

    @staticmethod
    def start_subscription(
        db: Session,
        gateway: TossPaymentsGateway,
        *,
        user: User,
        plan: Plan,
        auth_key: str,
        customer_key: str,
        trial_days: int,
        now: datetime,
    ) -> Subscription:
        """
        Issue a billing key and open a subscription in its free trial.

        The first charge happens when the scheduler sees ``next_billing_at``.

        Raises:
            SubscriptionActionError: User already has a live subscription or
                the plan is inactive.
            GatewayError: Billing key could not be issued.
        """
        if SubscriptionService.get_live_subscription(db, user.id) is not None:
            raise SubscriptionActionError(
                "Usuario ja possui uma assinatura ativa.", code="already_subscribed",
            )
        if not plan.is_active:
            raise SubscriptionActionError("Plano inativo.", code="plan_inactive")

        issued = gateway.issue_billing_key(auth_key, customer_key)
        payment_method = PaymentMethod(
            user_id=user.id,
            billing_key=issued.billing_key,
            card_company=issued.card_company,
            card_last4=issued.card_last4,
            is_default=True,
            created_at=now,
        )
        db.add(payment_method)
        db.flush()

        subscription = Subscription(
            user_id=user.id,
            entry_plan_id=plan.id,
            billing_plan_id=plan.id,
            status=STATUS_ACTIVE,
            payment_method_id=payment_method.id,
            customer_key=customer_key,
            current_period_start=None,
            current_period_end=None,
            next_billing_at=start_of_day(now + timedelta(days=trial_days)),
            is_first_billing=True,
            cancel_at_period_end=False,
            reconciliation_required=False,
        )
        db.add(subscription)
        db.flush()

        SubscriptionService.apply_pending_promotions(db, subscription, now)
        logger.info(
            "subscription_started: user=%s subscription=%s plan=%s next_billing_at=%s",
            user.id, subscription.id, plan.plan_name, subscription.next_billing_at,
        )
        return subscription

    # ------------------------------------------------------------------
    # Cancel / reactivate
    # ------------------------------------------------------------------

    @staticmethod
    def cancel(db: Session, user_id: UUID, now: datetime) -> Subscription:
        """
        Cancel the user's subscription.

        During the trial nothing has been paid, so it ends immediately. A paid
        subscription keeps access until the end of the current period.
        """
        subscription = SubscriptionService._require_live(db, user_id)
        if subscription.status != STATUS_ACTIVE:
            raise SubscriptionActionError(
                "Assinatura com pagamento pendente nao pode ser cancelada ao fim do periodo.",
                code="cancel_not_allowed",
            )

        if subscription.current_period_start is None:
            subscription.status = STATUS_CANCELLED
            subscription.cancelled_at = now
            subscription.next_billing_at = None
            subscription.cancel_at_period_end = False
        else:
            subscription.cancel_at_period_end = True

        db.flush()
        logger.info(
            "subscription_cancel_requested: subscription=%s immediate=%s",
            subscription.id, subscription.status == STATUS_CANCELLED,
        )
        return subscription

    @staticmethod
    def reactivate(db: Session, user_id: UUID, now: datetime) -> Subscription:
        """Undo a pending cancel-at-period-end while the period is still running."""
        subscription = SubscriptionService._require_live(db, user_id)
        if not subscription.cancel_at_period_end:
            raise SubscriptionActionError("Assinatura nao esta em cancelamento.", code="not_cancelling")
        if subscription.current_period_end is not None and subscription.current_period_end < now:
            raise SubscriptionActionError("Periodo ja encerrado.", code="period_ended")

        subscription.cancel_at_period_end = False
        db.flush()
        logger.info("subscription_reactivated: subscription=%s", subscription.id)
        return subscription

    # ------------------------------------------------------------------
    # Payment method
    # ------------------------------------------------------------------

    @staticmethod
    def replace_payment_method(
        db: Session,
        gateway: TossPaymentsGateway,
        subscription: Subscription,
        auth_key: str,
        now: datetime,
    ) -> PaymentMethod:
        """Issue a new billing key and disable (never delete) the previous card."""
        issued = gateway.issue_billing_key(auth_key, subscription.customer_key)

        if subscription.payment_method_id is not None:
            previous = db.get(PaymentMethod, subscription.payment_method_id)
            if previous is not None and previous.disabled_at is None:
                previous.disabled_at = now
                previous.is_default = False

        payment_method = PaymentMethod(
            user_id=subscription.user_id,
            billing_key=issued.billing_key,
            card_company=issued.card_company,
            card_last4=issued.card_last4,
            is_default=True,
            created_at=now,
        )
        db.add(payment_method)
        db.flush()
        subscription.payment_method_id = payment_method.id
        db.flush()
        logger.info(
            "payment_method_replaced: subscription=%s last4=%s",
            subscription.id, payment_method.card_last4,
        )
        return payment_method

    # ------------------------------------------------------------------
    # Promotions
    # ------------------------------------------------------------------

    @staticmethod
    def grant_promotion(db: Session, user_id: UUID, promotion_code: str, now: datetime) -> PendingPromotion:
        """Operator grant: queue a promotion for the user's next subscription/period."""
        promotion = db.execute(
            select(Promotion).where(Promotion.promotion_code == promotion_code)
        ).scalar_one_or_none()
        if promotion is None or not promotion.is_active:
            raise SubscriptionActionError("Promocao nao encontrada ou inativa.", code="promotion_not_found")

        grant = PendingPromotion(user_id=user_id, promotion_id=promotion.id, status=PENDING, granted_at=now)
        db.add(grant)
        db.flush()

        subscription = SubscriptionService.get_live_subscription(db, user_id)
        if subscription is not None:
            SubscriptionService.apply_pending_promotions(db, subscription, now)
        return grant

    @staticmethod
    def apply_pending_promotions(db: Session, subscription: Subscription, now: datetime) -> Optional[Promotion]:
        """
        Attach the oldest pending grant if the subscription has no running
        promotion. Only one promotion is active at a time.
        """
        if subscription.promotion_id is not None and (
            subscription.promotion_expires_at is None or subscription.promotion_expires_at > now
        ):
            return None

        grant = db.execute(
            select(PendingPromotion)
            .where(PendingPromotion.user_id == subscription.user_id, PendingPromotion.status == PENDING)
            .order_by(PendingPromotion.granted_at.asc())
            .limit(1)
        ).scalar_one_or_none()
        if grant is None:
            return None

        promotion = grant.promotion
        subscription.promotion_id = promotion.id
        subscription.promotion_applied_at = now
        subscription.promotion_expires_at = add_months(now, promotion.duration_months or 1)
        grant.status = APPLIED
        grant.applied_at = now
        grant.subscription_id = subscription.id
        db.flush()

        logger.info(
            "promotion_applied: subscription=%s promotion=%s expires_at=%s",
            subscription.id, promotion.promotion_code, subscription.promotion_expires_at,
        )
        return promotion

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    @staticmethod
    def get_status(db: Session, user_id: UUID, now: datetime) -> dict[str, Any]:
        """
        Subscription summary for the app; ``access_level`` is how the rest of
        the product reacts to billing failures.
        """
        subscription = db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if subscription is None:
            return {"has_subscription": False, "access_level": ACCESS_NONE}

        access = {
            STATUS_ACTIVE: ACCESS_FULL,
            STATUS_PAYMENT_FAILED: ACCESS_GRACE,
            STATUS_RESTRICTED: ACCESS_LIMITED,
            STATUS_SUSPENDED: ACCESS_BLOCKED,
            STATUS_CANCELLED: ACCESS_BLOCKED,
        }.get(subscription.status, ACCESS_BLOCKED)

        return {
            "has_subscription": True,
            "subscription_id": subscription.id,
            "status": subscription.status,
            "access_level": access,
            "is_trial": subscription.is_in_trial,
            "entry_plan_id": subscription.entry_plan_id,
            "billing_plan_id": subscription.billing_plan_id,
            "current_period_start": subscription.current_period_start,
            "current_period_end": subscription.current_period_end,
            "next_billing_at": subscription.next_billing_at,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "grace_until": subscription.grace_until,
            "promotion_active": bool(
                subscription.promotion_id
                and (subscription.promotion_expires_at is None or subscription.promotion_expires_at > now)
            ),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def get_live_subscription(db: Session, user_id: UUID) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status.in_(LIVE_STATUSES))
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return db.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _require_live(db: Session, user_id: UUID) -> Subscription:
        subscription = SubscriptionService.get_live_subscription(db, user_id)
        if subscription is None:
            raise SubscriptionActionError(
                "Nenhuma assinatura ativa encontrada.", code="no_active_subscription",
            )
        return subscription
