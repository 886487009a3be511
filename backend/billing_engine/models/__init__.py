"""
Database Models Package
SQLAlchemy ORM models for the billing schema.
"""

from billing_engine.models.user import User
from billing_engine.models.plan import Plan
from billing_engine.models.promotion import PendingPromotion, Promotion
from billing_engine.models.payment_method import PaymentMethod
from billing_engine.models.subscription import Subscription
from billing_engine.models.billing_payment import BillingPayment
from billing_engine.models.usage_stat import UsageDailyStat, UsagePeriodStat
from billing_engine.models.billing_run import BillingIncident, BillingRun

__all__ = [
    "User",
    "Plan",
    "Promotion",
    "PendingPromotion",
    "PaymentMethod",
    "Subscription",
    "BillingPayment",
    "UsageDailyStat",
    "UsagePeriodStat",
    "BillingRun",
    "BillingIncident",
]
