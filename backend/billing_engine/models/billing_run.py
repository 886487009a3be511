"""
BillingRun / BillingIncident — persistent log of scheduler runs and per-item failures.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, Uuid

from billing_engine.core.database import Base

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_ABORTED = "aborted"


class BillingRun(Base):
    """
    One row per scheduler invocation. The id doubles as the processing fence
    written to ``user_subscriptions.processing_run_id``.
    """

    __tablename__ = "billing_runs"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    trigger = Column(String(20), nullable=False, default="celery", comment="celery|cli|manual")
    status = Column(String(20), nullable=False, index=True, comment="running|completed|aborted")
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    finished_at = Column(DateTime, nullable=True)
    summary = Column(JSON, nullable=True, comment="Contadores success/failed/skipped por fase")
    error_message = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<BillingRun(id={self.id}, status='{self.status}')>"


class BillingIncident(Base):
    """
    Structured failure record for support and manual reconciliation.
    """

    __tablename__ = "billing_incidents"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    billing_run_id = Column(Uuid, nullable=True, index=True)
    subscription_id = Column(Uuid, nullable=True, index=True)
    phase = Column(String(30), nullable=False)
    kind = Column(
        String(30),
        nullable=False,
        index=True,
        comment="gateway_rejection|transient_gateway|data_store|inconsistent_write|unexpected",
    )
    order_id = Column(String(100), nullable=True)
    payment_key = Column(String(255), nullable=True)
    amount = Column(Integer, nullable=True)
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<BillingIncident(id={self.id}, kind='{self.kind}', "
            f"subscription_id={self.subscription_id})>"
        )
