"""
Usage aggregation — sums daily prescription counters into a billing-period total.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.core.clock import utcnow
from billing_engine.models.usage_stat import UsageDailyStat, UsagePeriodStat
from billing_engine.services.billing_errors import DataStoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageAggregate:
    total: int
    failed: bool = False
    error: Optional[str] = None


class UsageAggregator:
    """
    Aggregates usage per billing period via upsert (INSERT ON CONFLICT UPDATE).

    A failed read degrades to ``total=0`` (lowest plan tier) instead of
    blocking the charge; the failure is reported in the returned aggregate.
    """

    @staticmethod
    def aggregate(
        db: Session,
        subscription_id: UUID,
        user_id: UUID,
        period_start: datetime,
        period_end: datetime,
    ) -> UsageAggregate:
        """Sum usage for ``[period_start, period_end]`` (dates, inclusive) and store it."""
        try:
            with db.begin_nested():
                total = UsageAggregator._sum_daily_usage(
                    db, user_id, period_start.date(), period_end.date(),
                )
        except SQLAlchemyError as exc:
            logger.warning(
                "usage_read_failed: subscription=%s period_start=%s error=%s",
                subscription_id, period_start, exc,
            )
            return UsageAggregate(total=0, failed=True, error=str(exc)[:500])

        try:
            UsageAggregator._upsert_period_stat(
                db, subscription_id, user_id, period_start, period_end, total,
            )
        except SQLAlchemyError as exc:
            raise DataStoreError(f"Falha ao gravar uso do periodo: {exc}") from exc

        logger.debug(
            "usage_aggregated: subscription=%s period=%s..%s total=%d",
            subscription_id, period_start, period_end, total,
        )
        return UsageAggregate(total=total)

    @staticmethod
    def _sum_daily_usage(db: Session, user_id: UUID, start: date, end: date) -> int:
        stmt = select(func.coalesce(func.sum(UsageDailyStat.rx_count), 0)).where(
            UsageDailyStat.user_id == user_id,
            UsageDailyStat.usage_date >= start,
            UsageDailyStat.usage_date <= end,
        )
        return int(db.execute(stmt).scalar_one())

    @staticmethod
    def _upsert_period_stat(
        db: Session,
        subscription_id: UUID,
        user_id: UUID,
        period_start: datetime,
        period_end: datetime,
        total: int,
    ) -> None:
        """
        Idempotent overwrite keyed by (subscription_id, period_start).
        Uses the dialect's INSERT ... ON CONFLICT DO UPDATE.
        """
        dialect = db.get_bind().dialect.name
        insert = sqlite_insert if dialect == "sqlite" else pg_insert
        now = utcnow()

        stmt = insert(UsagePeriodStat).values(
            subscription_id=subscription_id,
            user_id=user_id,
            period_start=period_start,
            period_end=period_end,
            total_rx_count=total,
            aggregated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UsagePeriodStat.subscription_id, UsagePeriodStat.period_start],
            set_={
                "period_end": period_end,
                "total_rx_count": total,
                "aggregated_at": now,
            },
        )
        db.execute(stmt)
        db.flush()

    @staticmethod
    def get_period_stat(
        db: Session, subscription_id: UUID, period_start: datetime,
    ) -> Optional[UsagePeriodStat]:
        """Return the stored aggregate for a period, or None."""
        stmt = select(UsagePeriodStat).where(
            UsagePeriodStat.subscription_id == subscription_id,
            UsagePeriodStat.period_start == period_start,
        )
        return db.execute(stmt).scalar_one_or_none()
