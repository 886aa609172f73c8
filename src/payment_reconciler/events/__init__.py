"""Inbound event classification."""

from payment_reconciler.events.classifier import (
    COMPLETED_EVENT_TYPES,
    DENIED_EVENT_TYPES,
    LEGACY_SALE_EVENT_TYPE,
    REFUNDED_EVENT_TYPE,
    classify,
)
from payment_reconciler.events.types import (
    EVENT_TYPES,
    CaptureDeposit,
    CaptureRefunded,
    CheckoutCompleted,
    CheckoutDeniedOrCancelled,
    ClassifiedEvent,
    CreateDeposit,
    EventSource,
    GatewayEvent,
    LegacySaleCompleted,
    Unhandled,
    WebhookEvent,
)

__all__ = [
    "classify",
    "COMPLETED_EVENT_TYPES",
    "DENIED_EVENT_TYPES",
    "REFUNDED_EVENT_TYPE",
    "LEGACY_SALE_EVENT_TYPE",
    "EVENT_TYPES",
    "EventSource",
    "GatewayEvent",
    "WebhookEvent",
    "ClassifiedEvent",
    "CreateDeposit",
    "CaptureDeposit",
    "CheckoutCompleted",
    "CheckoutDeniedOrCancelled",
    "CaptureRefunded",
    "LegacySaleCompleted",
    "Unhandled",
]
