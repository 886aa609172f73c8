"""PayPal REST gateway client.

Implements the three calls the deposit flow needs:
- OAuth2 client-credentials token (``/v1/oauth2/token``)
- Order creation with CAPTURE intent (``/v2/checkout/orders``)
- Order capture (``/v2/checkout/orders/{id}/capture``)

The client never retries. A timeout is reported as GatewayError because the
outcome at the gateway is unknown; callers must not treat it as "not paid".
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncGenerator

import httpx

from payment_reconciler.config import GatewayConfig
from payment_reconciler.errors import ConfigurationError, GatewayAuthError, GatewayError
from payment_reconciler.gateway.base import (
    AccessToken,
    CaptureResult,
    GatewayOrder,
    ReturnUrls,
)

logger = logging.getLogger(__name__)


class PayPalGateway:
    """PayPal Orders v2 client.

    Args:
        config: Explicit gateway configuration.
        client: Optional shared ``httpx.AsyncClient``. When omitted a client
            is opened per call. The caller owns a shared client's lifecycle.
    """

    provider_name = "paypal"

    def __init__(self, config: GatewayConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    @asynccontextmanager
    async def _http(self) -> AsyncGenerator[httpx.AsyncClient, None]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
            yield client

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.config.base_url}{path}"
        kwargs.setdefault("timeout", self.config.timeout_seconds)
        try:
            async with self._http() as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayError(f"Gateway request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Gateway transport error: {method} {path}: {e}") from e

    def _require_credentials(self) -> None:
        if not self.config.is_configured:
            raise ConfigurationError("PayPal not configured")

    async def get_access_token(self) -> AccessToken:
        """Obtain a client-credentials access token."""
        self._require_credentials()

        response = await self._send(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.config.client_id, self.config.client_secret),
            headers={"Accept": "application/json"},
        )
        if response.status_code >= 300:
            logger.error("PayPal auth error: %s %s", response.status_code, response.text)
            raise GatewayAuthError(
                "PayPal authentication failed",
                provider_status=response.status_code,
                response_body=response.text,
            )

        data = _json(response)
        token = data.get("access_token")
        if not token:
            raise GatewayAuthError(
                "PayPal token response missing access_token",
                provider_status=response.status_code,
                response_body=response.text,
            )
        return AccessToken(
            value=token,
            token_type=data.get("token_type", "Bearer"),
            expires_in=data.get("expires_in"),
            obtained_at=datetime.now(timezone.utc),
        )

    async def create_order(
        self,
        reference_id: str,
        amount: Decimal,
        currency: str,
        return_urls: ReturnUrls,
        description: str | None = None,
    ) -> GatewayOrder:
        """Create a CAPTURE-intent order for ``reference_id``."""
        token = await self.get_access_token()

        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference_id,
                    "description": description or "Account Deposit",
                    "amount": {
                        "currency_code": currency,
                        "value": f"{amount:.2f}",
                    },
                }
            ],
            "application_context": {
                "brand_name": self.config.brand_name,
                "landing_page": "LOGIN",
                "user_action": "PAY_NOW",
                "return_url": return_urls.return_url,
                "cancel_url": return_urls.cancel_url,
            },
        }

        response = await self._send(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers=_bearer(token),
        )
        if response.status_code >= 300:
            logger.error("PayPal order creation error: %s %s", response.status_code, response.text)
            raise GatewayError(
                "Failed to create PayPal order",
                provider_status=response.status_code,
                response_body=response.text,
            )

        data = _json(response)
        approval_url = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        return GatewayOrder(
            order_id=data["id"],
            status=data.get("status", "CREATED"),
            approval_url=approval_url,
            raw=data,
        )

    async def capture_order(self, gateway_order_id: str) -> CaptureResult:
        """Capture an approved order."""
        token = await self.get_access_token()

        response = await self._send(
            "POST",
            f"/v2/checkout/orders/{gateway_order_id}/capture",
            headers={**_bearer(token), "Content-Type": "application/json"},
        )
        if response.status_code >= 300:
            logger.error("PayPal capture error: %s %s", response.status_code, response.text)
            raise GatewayError(
                "Failed to capture PayPal order",
                provider_status=response.status_code,
                response_body=response.text,
            )

        data = _json(response)
        capture = _first_capture(data)
        amount_info = capture.get("amount") or {}
        return CaptureResult(
            order_id=data.get("id", gateway_order_id),
            status=data.get("status", "UNKNOWN"),
            capture_id=capture.get("id"),
            amount=_decimal_or_none(amount_info.get("value")),
            currency=amount_info.get("currency_code"),
            payer_email=(data.get("payer") or {}).get("email_address"),
            raw=data,
        )


def _bearer(token: AccessToken) -> dict[str, str]:
    return {"Authorization": f"{token.token_type} {token.value}"}


def _json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise GatewayError(
            "Gateway returned a non-JSON body",
            provider_status=response.status_code,
            response_body=response.text,
        ) from e
    if not isinstance(data, dict):
        raise GatewayError(
            "Gateway returned an unexpected body",
            provider_status=response.status_code,
            response_body=response.text,
        )
    return data


def _first_capture(data: dict[str, Any]) -> dict[str, Any]:
    """Return the first capture of the first purchase unit, or {}."""
    for unit in data.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return {}


def _decimal_or_none(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
