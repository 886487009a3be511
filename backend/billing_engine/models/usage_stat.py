"""
Usage models — daily prescription counters and per-billing-period totals.
"""
from datetime import date, datetime
from uuid import uuid4

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, UniqueConstraint, Uuid

from billing_engine.core.database import Base


class UsageDailyStat(Base):
    """
    Daily usage counter per user. One row per (user, day).
    """

    __tablename__ = "usage_daily_stats"
    __table_args__ = (
        UniqueConstraint("user_id", "usage_date", name="uq_usage_daily_user_date"),
    )

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    usage_date = Column(Date, nullable=False, default=date.today, index=True)
    rx_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<UsageDailyStat(user={self.user_id}, date={self.usage_date}, rx={self.rx_count})>"


class UsagePeriodStat(Base):
    """
    Aggregated usage of one billing period. Upserted by (subscription, period_start)
    so re-running aggregation overwrites instead of accumulating.
    """

    __tablename__ = "usage_billing_period_stats"
    __table_args__ = (
        UniqueConstraint("subscription_id", "period_start", name="uq_usage_period_subscription_start"),
    )

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    subscription_id = Column(
        Uuid,
        ForeignKey("user_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    total_rx_count = Column(Integer, nullable=False, default=0)
    aggregated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:
        return (
            f"<UsagePeriodStat(subscription={self.subscription_id}, "
            f"start={self.period_start}, total={self.total_rx_count})>"
        )
