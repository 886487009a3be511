"""
Plan model — usage tiers priced per month.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Uuid
from sqlalchemy.orm import relationship

from billing_engine.core.database import Base


class Plan(Base):
    """
    Subscription plan definition with monthly price and daily prescription limit.
    """

    __tablename__ = "subscription_plans"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    plan_name = Column(String(100), unique=True, nullable=False)

    # Pricing
    monthly_price = Column(Integer, nullable=False, default=0, comment="Price in KRW")

    # Usage limits
    daily_rx_limit = Column(
        Integer,
        nullable=True,
        comment="Prescriptions per day; NULL (or >= 999999) = unlimited",
    )

    # Status / ordering
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, name='{self.plan_name}', price={self.monthly_price})>"
