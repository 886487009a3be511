"""
Promotion models — reusable discount definitions and per-user grants.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import relationship

from billing_engine.core.database import Base

DISCOUNT_FREE = "free"
DISCOUNT_PERCENT = "percent"
DISCOUNT_AMOUNT = "amount"
DISCOUNT_TYPES = (DISCOUNT_FREE, DISCOUNT_PERCENT, DISCOUNT_AMOUNT)

PENDING = "pending"
APPLIED = "applied"
REVOKED = "revoked"


class Promotion(Base):
    """
    Discount rule. The effect is computed at charge time and never cached
    on the subscription.
    """

    __tablename__ = "subscription_promotions"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    promotion_code = Column(String(50), unique=True, nullable=False, index=True)
    promotion_name = Column(String(100), nullable=False)
    discount_type = Column(String(20), nullable=False, comment="free|percent|amount")
    discount_value = Column(Integer, nullable=False, default=0, comment="% (percent) ou KRW (amount)")
    duration_months = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<Promotion(code='{self.promotion_code}', type='{self.discount_type}', "
            f"value={self.discount_value})>"
        )


class PendingPromotion(Base):
    """
    Promotion granted to a user, waiting to be attached to a subscription.
    """

    __tablename__ = "pending_user_promotions"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    promotion_id = Column(
        Uuid,
        ForeignKey("subscription_promotions.id", ondelete="CASCADE"),
        nullable=False,
    )
    subscription_id = Column(
        Uuid,
        ForeignKey("user_subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    status = Column(String(20), nullable=False, default=PENDING, index=True, comment="pending|applied|revoked")
    granted_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    applied_at = Column(DateTime, nullable=True)

    promotion = relationship("Promotion")

    def __repr__(self) -> str:
        return f"<PendingPromotion(user_id={self.user_id}, status='{self.status}')>"
