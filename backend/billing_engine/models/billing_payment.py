"""
BillingPayment model — registro imutavel de cada tentativa de cobranca.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, Uuid

from billing_engine.core.database import Base

PAYMENT_SUCCESS = "success"
PAYMENT_FAILED = "failed"


class BillingPayment(Base):
    """
    One row per attempted charge, successful or not (free periods included).

    Append-only: rows are never updated after insert.
    """

    __tablename__ = "billing_payments"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    subscription_id = Column(
        Uuid,
        ForeignKey("user_subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    plan_id = Column(Uuid, ForeignKey("subscription_plans.id", ondelete="SET NULL"), nullable=True)
    payment_method_id = Column(
        Uuid,
        ForeignKey("payment_methods.id", ondelete="SET NULL"),
        nullable=True,
    )
    billing_run_id = Column(Uuid, nullable=True, index=True)

    order_id = Column(String(100), nullable=False, index=True)
    payment_key = Column(String(255), nullable=True, comment="Toss paymentKey ou FREE_<orderId>")
    billing_key = Column(String(255), nullable=True)

    amount = Column(Integer, nullable=False, default=0, comment="KRW; 0 para periodos gratuitos")
    is_free = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), nullable=False, index=True, comment="success|failed")
    fail_code = Column(String(100), nullable=True)
    fail_reason = Column(Text, nullable=True, comment="Mensagem do gateway, verbatim")

    requested_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    approved_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<BillingPayment(id={self.id}, order_id='{self.order_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )
