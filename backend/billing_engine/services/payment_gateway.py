"""
Toss Payments billing-key client.

Only the two operations the engine needs are wrapped:
- POST /v1/billing/authorizations/issue  (authKey -> billingKey, used at signup)
- POST /v1/billing/{billingKey}          (charge a saved card)

Errors are mapped onto the billing error taxonomy; callers never see httpx
exceptions.
"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from billing_engine.core.config import settings
from billing_engine.services.billing_errors import (
    ConfigurationError,
    GatewayRejection,
    TransientGatewayError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingKeyResult:
    billing_key: str
    card_company: Optional[str]
    card_last4: Optional[str]
    raw: dict[str, Any]


class TossPaymentsGateway:
    """
    Thin synchronous client over the Toss billing API.

    Usa factory ``from_settings`` para carregar a secret key do ambiente.
    An ``httpx.Client`` may be injected (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        *,
        secret_key: str,
        base_url: str = "https://api.tosspayments.com",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not secret_key:
            raise ConfigurationError(
                "Toss secret key nao configurada.", code="gateway_not_configured",
            )
        token = base64.b64encode(f"{secret_key}:".encode()).decode()
        self._client = client or httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )
        self._headers = {
            "Authorization": f"Basic {token}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_settings(cls) -> TossPaymentsGateway:
        """
        Factory — carrega credenciais das variaveis de ambiente.

        Raises:
            ConfigurationError: Se TOSS_SECRET_KEY nao estiver definido.
        """
        return cls(
            secret_key=settings.TOSS_SECRET_KEY,
            base_url=settings.TOSS_API_BASE_URL,
            timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
        )

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def issue_billing_key(self, auth_key: str, customer_key: str) -> BillingKeyResult:
        """Exchange a one-time ``authKey`` for a reusable billing key."""
        body = self._post(
            "/v1/billing/authorizations/issue",
            {"authKey": auth_key, "customerKey": customer_key},
            operation="issue_billing_key",
        )
        card = body.get("card") or {}
        card_number = body.get("cardNumber") or card.get("number") or ""
        return BillingKeyResult(
            billing_key=body["billingKey"],
            card_company=body.get("cardCompany") or card.get("company") or card.get("issuerCode"),
            card_last4=card_number[-4:] or None,
            raw=body,
        )

    def charge(
        self,
        billing_key: str,
        amount: int,
        order_id: str,
        order_name: str,
        customer_key: str,
    ) -> dict[str, Any]:
        """
        Charge a saved card. The gateway rejects duplicate ``order_id`` values,
        which protects against double submission.

        Returns:
            Gateway payment object (``paymentKey``, ``status``, ...).
        """
        if amount <= 0:
            raise ValueError("Toss nao aceita cobranca de valor zero.")
        return self._post(
            f"/v1/billing/{billing_key}",
            {
                "customerKey": customer_key,
                "amount": amount,
                "orderId": order_id,
                "orderName": order_name,
            },
            operation="charge",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _post(self, path: str, payload: dict[str, Any], operation: str) -> dict[str, Any]:
        try:
            response = self._client.post(path, json=payload, headers=self._headers)
        except httpx.TimeoutException as exc:
            raise TransientGatewayError(f"Timeout no gateway: {exc}", code="gateway_timeout") from exc
        except httpx.TransportError as exc:
            raise TransientGatewayError(f"Falha de rede no gateway: {exc}") from exc

        if response.status_code >= 400:
            code, message = self._parse_error(response)
            logger.warning(
                "gateway_error: operation=%s status=%d code=%s message=%s",
                operation,
                response.status_code,
                code,
                message,
            )
            if response.status_code >= 500:
                raise TransientGatewayError(message, code=code)
            raise GatewayRejection(message, code=code, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as exc:
            raise TransientGatewayError("Resposta invalida do gateway.", code="gateway_bad_response") from exc

    @staticmethod
    def _parse_error(response: httpx.Response) -> tuple[str, str]:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP_{response.status_code}", response.text[:500] or "Erro desconhecido"
        return (
            str(body.get("code") or f"HTTP_{response.status_code}"),
            str(body.get("message") or "Erro desconhecido"),
        )
