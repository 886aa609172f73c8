"""Payment gateway clients."""

from payment_reconciler.gateway.base import (
    AccessToken,
    CaptureResult,
    GatewayOrder,
    PaymentGateway,
    ReturnUrls,
)
from payment_reconciler.gateway.paypal import PayPalGateway

__all__ = [
    "AccessToken",
    "CaptureResult",
    "GatewayOrder",
    "PaymentGateway",
    "ReturnUrls",
    "PayPalGateway",
]
