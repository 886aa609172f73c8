"""Classified inbound gateway events.

Every inbound request is turned into exactly one of these variants before any
record is touched. Events are:
- Immutable (frozen dataclasses)
- Tagged by ``kind`` for logging and the audit trail
- Carrying the raw payload for the audit blob
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Union


class EventSource(str, Enum):
    """Where an event came from. Drives the not-found response policy."""

    DIRECT_ACTION = "direct_action"  # user-facing request/response flow
    WEBHOOK = "webhook"  # asynchronous gateway notification


@dataclass(frozen=True)
class GatewayEvent:
    """Base class for classified events."""

    kind: ClassVar[str] = "event"
    source: ClassVar[EventSource] = EventSource.WEBHOOK

    @property
    def gateway_event_type(self) -> str | None:
        return None


@dataclass(frozen=True)
class CreateDeposit(GatewayEvent):
    """Open a gateway order for a pending deposit."""

    kind: ClassVar[str] = "create_deposit"
    source: ClassVar[EventSource] = EventSource.DIRECT_ACTION

    deposit_id: str
    amount: Decimal
    description: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class CaptureDeposit(GatewayEvent):
    """Capture the gateway order of an approved deposit."""

    kind: ClassVar[str] = "capture_deposit"
    source: ClassVar[EventSource] = EventSource.DIRECT_ACTION

    deposit_id: str
    gateway_order_id: str
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class WebhookEvent(GatewayEvent):
    """Base for events delivered through the asynchronous webhook envelope."""

    event_type: str
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def gateway_event_type(self) -> str | None:
        return self.event_type


@dataclass(frozen=True)
class CheckoutCompleted(WebhookEvent):
    """Checkout order approved or its capture completed."""

    kind: ClassVar[str] = "checkout_completed"

    gateway_order_id: str = ""
    amount: Decimal | None = None
    currency: str | None = None
    capture_id: str | None = None
    capture_status: str | None = None
    payer_email: str | None = None


@dataclass(frozen=True)
class CheckoutDeniedOrCancelled(WebhookEvent):
    """Capture denied or checkout order cancelled."""

    kind: ClassVar[str] = "checkout_denied"

    gateway_order_id: str = ""
    reason: str = ""


@dataclass(frozen=True)
class CaptureRefunded(WebhookEvent):
    """A completed capture was refunded at the gateway."""

    kind: ClassVar[str] = "capture_refunded"

    capture_id: str = ""
    refund_amount: Decimal | None = None
    refund_currency: str | None = None


@dataclass(frozen=True)
class LegacySaleCompleted(WebhookEvent):
    """Legacy sale notification correlated by invoice number."""

    kind: ClassVar[str] = "legacy_sale_completed"

    sale_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    invoice_number: str | None = None


@dataclass(frozen=True)
class Unhandled(WebhookEvent):
    """Any event type this service does not act on."""

    kind: ClassVar[str] = "unhandled"


ClassifiedEvent = Union[
    CreateDeposit,
    CaptureDeposit,
    CheckoutCompleted,
    CheckoutDeniedOrCancelled,
    CaptureRefunded,
    LegacySaleCompleted,
    Unhandled,
]

EVENT_TYPES: tuple[type[GatewayEvent], ...] = (
    CreateDeposit,
    CaptureDeposit,
    CheckoutCompleted,
    CheckoutDeniedOrCancelled,
    CaptureRefunded,
    LegacySaleCompleted,
    Unhandled,
)
