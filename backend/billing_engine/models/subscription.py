"""
Subscription model — one billing relationship per user, advanced by the scheduler.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import relationship

from billing_engine.core.database import Base

STATUS_ACTIVE = "active"
STATUS_PAYMENT_FAILED = "payment_failed"
STATUS_RESTRICTED = "restricted"
STATUS_SUSPENDED = "suspended"
STATUS_CANCELLED = "cancelled"

LIVE_STATUSES = (STATUS_ACTIVE, STATUS_PAYMENT_FAILED, STATUS_RESTRICTED)
TERMINAL_STATUSES = (STATUS_SUSPENDED, STATUS_CANCELLED)


class Subscription(Base):
    """
    Tracks the current billing period, promotion and failure state of a user.

    ``current_period_start IS NULL`` means the subscription is still in its
    free trial and has never been charged by the scheduler.
    """

    __tablename__ = "user_subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    user_id = Column(
        Uuid,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    entry_plan_id = Column(
        Uuid,
        ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Plano escolhido no cadastro (nunca muda)",
    )
    billing_plan_id = Column(
        Uuid,
        ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Plano cobrado atualmente (muda conforme o uso)",
    )

    # Status
    status = Column(
        String(20),
        nullable=False,
        default=STATUS_ACTIVE,
        index=True,
        comment="active|payment_failed|restricted|suspended|cancelled",
    )

    # Billing period
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True, index=True)
    next_billing_at = Column(DateTime, nullable=True, index=True)
    is_first_billing = Column(Boolean, default=True, nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)

    # Promotion
    promotion_id = Column(
        Uuid,
        ForeignKey("subscription_promotions.id", ondelete="SET NULL"),
        nullable=True,
    )
    promotion_applied_at = Column(DateTime, nullable=True)
    promotion_expires_at = Column(DateTime, nullable=True)

    # Failure / grace
    failed_at = Column(DateTime, nullable=True)
    grace_until = Column(DateTime, nullable=True, index=True)

    # Payment
    payment_method_id = Column(
        Uuid,
        ForeignKey("payment_methods.id", ondelete="SET NULL"),
        nullable=True,
    )
    customer_key = Column(String(255), nullable=False, comment="Toss customerKey")

    # Scheduler fence
    processing_run_id = Column(Uuid, nullable=True, comment="BillingRun que esta processando")
    processing_started_at = Column(DateTime, nullable=True)
    last_billing_run_id = Column(Uuid, nullable=True)
    reconciliation_required = Column(
        Boolean,
        default=False,
        nullable=False,
        comment="True = cobrado mas estado nao gravado; exige conciliacao manual",
    )

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    user = relationship("User", back_populates="subscriptions")
    entry_plan = relationship("Plan", foreign_keys=[entry_plan_id])
    billing_plan = relationship("Plan", foreign_keys=[billing_plan_id])
    promotion = relationship("Promotion")
    payment_method = relationship("PaymentMethod")

    @property
    def is_in_trial(self) -> bool:
        return self.status == STATUS_ACTIVE and self.current_period_start is None

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"status='{self.status}')>"
        )
