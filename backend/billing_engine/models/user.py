"""
User model — minimal owner record consumed by the billing engine.

Registration and authentication live outside this service; only the fields
the scheduler needs (soft-delete flag) are mapped here.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, Uuid
from sqlalchemy.orm import relationship

from billing_engine.core.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=True)
    deleted_at = Column(DateTime, nullable=True, comment="Soft delete; NULL = conta ativa")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="user")
    payment_methods = relationship("PaymentMethod", back_populates="user")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"
