"""
PaymentMethod model — Toss billing key bound to a user.

Rows are disabled when superseded, never deleted, so billing history keeps
pointing at the card that was actually charged.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import relationship

from billing_engine.core.database import Base


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    user_id = Column(
        Uuid,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    billing_key = Column(String(255), nullable=False)
    card_company = Column(String(50), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    disabled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="payment_methods")

    @property
    def is_usable(self) -> bool:
        return self.disabled_at is None

    def __repr__(self) -> str:
        return f"<PaymentMethod(id={self.id}, user_id={self.user_id}, last4={self.card_last4})>"
