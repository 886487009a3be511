"""
Billing error taxonomy.

Per-subscription errors are caught at the item boundary by the lifecycle
service and turned into counters + BillingIncident rows. Only
ConfigurationError escalates and aborts a run.
"""
from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Domain error for billing operations."""

    kind = "unexpected"

    def __init__(self, detail: str, code: str = "billing_error") -> None:
        self.detail = detail
        self.code = code
        super().__init__(detail)


class GatewayError(BillingError):
    """Base for errors raised by the payment gateway client."""

    kind = "gateway"


class TransientGatewayError(GatewayError):
    """Network failure, timeout or 5xx. Safe to retry on a later run."""

    kind = "transient_gateway"

    def __init__(self, detail: str, code: str = "gateway_unavailable") -> None:
        super().__init__(detail, code=code)


class GatewayRejection(GatewayError):
    """Card or business-rule rejection; ``detail`` is the gateway message verbatim."""

    kind = "gateway_rejection"

    def __init__(self, detail: str, code: str = "gateway_rejected", status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(detail, code=code)


class DataStoreError(BillingError):
    """Read or write failure against the relational store."""

    kind = "data_store"

    def __init__(self, detail: str, code: str = "data_store_error") -> None:
        super().__init__(detail, code=code)


class InconsistentWriteError(BillingError):
    """
    Charge succeeded but the subscription/payment write failed.

    The customer has been charged for a period the database does not know
    about; this must be reconciled by hand.
    """

    kind = "inconsistent_write"

    def __init__(
        self,
        detail: str,
        *,
        order_id: str,
        payment_key: Optional[str],
        amount: int,
    ) -> None:
        self.order_id = order_id
        self.payment_key = payment_key
        self.amount = amount
        super().__init__(detail, code="inconsistent_write")


class ConfigurationError(BillingError):
    """Run-level misconfiguration: no subscription can be safely priced."""

    kind = "configuration"

    def __init__(self, detail: str, code: str = "configuration_error") -> None:
        super().__init__(detail, code=code)


class EmptyCatalogError(ConfigurationError):
    """Nenhum plano ativo no catalogo."""

    def __init__(self, detail: str = "Nenhum plano ativo encontrado no catalogo.") -> None:
        super().__init__(detail, code="empty_catalog")


class SubscriptionActionError(BillingError):
    """User-triggered action (cancel, reactivate, retry...) not allowed."""

    kind = "action"
