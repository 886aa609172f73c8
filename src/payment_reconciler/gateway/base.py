"""Base protocol and types for payment gateway clients.

The reconciliation core talks to the gateway only for actions it initiates
itself (deposit order creation and capture). Inbound webhooks never call it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol


@dataclass(frozen=True)
class AccessToken:
    """Short-lived OAuth access token."""

    value: str
    token_type: str = "Bearer"
    expires_in: int | None = None
    obtained_at: datetime | None = None


@dataclass(frozen=True)
class ReturnUrls:
    """Where the gateway sends the payer after approval or cancellation."""

    return_url: str
    cancel_url: str


@dataclass(frozen=True)
class GatewayOrder:
    """Result of creating an order at the gateway."""

    order_id: str
    status: str
    approval_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CaptureResult:
    """Result of capturing an approved order."""

    order_id: str
    status: str  # COMPLETED, PENDING, DECLINED, ...
    capture_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    payer_email: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """Protocol for gateway clients.

    Clients are stateless and never retry. Transport, timeout and non-2xx
    failures surface as GatewayError; missing credentials as
    ConfigurationError.
    """

    provider_name: str

    @property
    def is_configured(self) -> bool:
        """Whether credentials are present."""
        ...

    async def get_access_token(self) -> AccessToken:
        """Obtain a client-credentials access token."""
        ...

    async def create_order(
        self,
        reference_id: str,
        amount: Decimal,
        currency: str,
        return_urls: ReturnUrls,
        description: str | None = None,
    ) -> GatewayOrder:
        """Create a capture-intent order for ``reference_id``.

        Args:
            reference_id: Internal id echoed back by the gateway
            amount: Positive amount, validated by the caller
            currency: Currency code, validated by the caller
            return_urls: Approval/cancel redirect targets
            description: Optional purchase description

        Returns:
            GatewayOrder with the gateway order id and approval URL.
        """
        ...

    async def capture_order(self, gateway_order_id: str) -> CaptureResult:
        """Capture a previously approved order."""
        ...
