"""Event classifier.

Inspects an inbound payload and returns one ClassifiedEvent variant.

Rules:
    1. An explicit ``action`` field wins (synchronous direct-action flow).
    2. Otherwise classify by the webhook envelope's ``event_type``.
    3. Unknown event types become ``Unhandled`` and never raise; the gateway
       retries on non-2xx, so anything we do not act on is acknowledged.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from payment_reconciler.errors import MalformedEventError
from payment_reconciler.events.types import (
    CaptureDeposit,
    CaptureRefunded,
    CheckoutCompleted,
    CheckoutDeniedOrCancelled,
    ClassifiedEvent,
    CreateDeposit,
    LegacySaleCompleted,
    Unhandled,
)

COMPLETED_EVENT_TYPES = frozenset({"PAYMENT.CAPTURE.COMPLETED", "CHECKOUT.ORDER.APPROVED"})
DENIED_EVENT_TYPES = frozenset({"PAYMENT.CAPTURE.DENIED", "CHECKOUT.ORDER.CANCELLED"})
REFUNDED_EVENT_TYPE = "PAYMENT.CAPTURE.REFUNDED"
LEGACY_SALE_EVENT_TYPE = "PAYMENT.SALE.COMPLETED"


class CreateDepositAction(BaseModel):
    """Direct-action body for ``create_deposit``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    deposit_id: str = Field(alias="depositId", min_length=1)
    amount: Decimal = Field(gt=0)
    description: str | None = None


class CaptureDepositAction(BaseModel):
    """Direct-action body for ``capture_deposit``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    deposit_id: str = Field(alias="depositId", min_length=1)
    gateway_order_id: str = Field(alias="paypalOrderId", min_length=1)


def classify(payload: Any) -> ClassifiedEvent:
    """Classify an inbound payload.

    Raises:
        MalformedEventError: payload is not an object, names an unknown action,
            or lacks a field the classified intent requires.
    """
    if not isinstance(payload, dict):
        raise MalformedEventError("Payload must be a JSON object")

    action = payload.get("action")
    if action is not None:
        return _classify_action(action, payload)

    event_type = payload.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("Missing event_type")

    resource = payload.get("resource")
    if not isinstance(resource, dict):
        resource = {}

    if event_type in COMPLETED_EVENT_TYPES:
        return _checkout_completed(event_type, resource, payload)
    if event_type in DENIED_EVENT_TYPES:
        return _checkout_denied(event_type, resource, payload)
    if event_type == REFUNDED_EVENT_TYPE:
        return _capture_refunded(event_type, resource, payload)
    if event_type == LEGACY_SALE_EVENT_TYPE:
        return _legacy_sale(event_type, resource, payload)
    return Unhandled(event_type=event_type, raw=payload)


def _classify_action(action: Any, payload: dict[str, Any]) -> ClassifiedEvent:
    try:
        if action == "create_deposit":
            body = CreateDepositAction.model_validate(payload)
            return CreateDeposit(
                deposit_id=body.deposit_id,
                amount=body.amount,
                description=body.description,
                raw=payload,
            )
        if action == "capture_deposit":
            capture = CaptureDepositAction.model_validate(payload)
            return CaptureDeposit(
                deposit_id=capture.deposit_id,
                gateway_order_id=capture.gateway_order_id,
                raw=payload,
            )
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise MalformedEventError(f"Invalid {action} request: {fields}") from e

    raise MalformedEventError(f"Unknown action: {action}")


def _mapping(container: dict[str, Any], key: str) -> dict[str, Any]:
    """Nested object at ``key``; absent or null reads as empty."""
    value = container.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedEventError(f"Field {key} must be an object")
    return value


def _sequence(container: dict[str, Any], key: str) -> list[Any]:
    value = container.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedEventError(f"Field {key} must be an array")
    return value


def _text(container: dict[str, Any], key: str) -> str | None:
    value = container.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise MalformedEventError(f"Field {key} must be a string")
    return str(value)


def _order_id(resource: dict[str, Any]) -> str | None:
    related = _mapping(_mapping(resource, "supplementary_data"), "related_ids")
    return _text(related, "order_id") or _text(resource, "id")


def _amount(resource: dict[str, Any]) -> tuple[Decimal | None, str | None]:
    """Amount from ``resource.amount`` or the first purchase unit."""
    amount = _mapping(resource, "amount")
    if not amount:
        units = _sequence(resource, "purchase_units")
        if units:
            if not isinstance(units[0], dict):
                raise MalformedEventError("Field purchase_units must hold objects")
            amount = _mapping(units[0], "amount")
    if not amount:
        return None, None
    value = amount.get("value", amount.get("total"))
    currency = _text(amount, "currency_code") or _text(amount, "currency")
    return _decimal(value), currency


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float, Decimal)):
        raise MalformedEventError(f"Invalid amount: {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise MalformedEventError(f"Invalid amount: {value!r}") from e


def _checkout_completed(
    event_type: str, resource: dict[str, Any], payload: dict[str, Any]
) -> CheckoutCompleted:
    order_id = _order_id(resource)
    if not order_id:
        raise MalformedEventError("Missing order ID")
    amount, currency = _amount(resource)

    # Capture events carry the capture as the resource; order approvals do not.
    is_capture = event_type == "PAYMENT.CAPTURE.COMPLETED"
    return CheckoutCompleted(
        event_type=event_type,
        raw=payload,
        gateway_order_id=order_id,
        amount=amount,
        currency=currency,
        capture_id=_text(resource, "id") if is_capture else None,
        capture_status=_text(resource, "status"),
        payer_email=_text(_mapping(resource, "payer"), "email_address"),
    )


def _checkout_denied(
    event_type: str, resource: dict[str, Any], payload: dict[str, Any]
) -> CheckoutDeniedOrCancelled:
    order_id = _order_id(resource)
    if not order_id:
        raise MalformedEventError("Missing order ID")
    return CheckoutDeniedOrCancelled(
        event_type=event_type,
        raw=payload,
        gateway_order_id=order_id,
        reason=event_type,
    )


def _up_link_capture_id(resource: dict[str, Any]) -> str | None:
    for link in _sequence(resource, "links"):
        if not isinstance(link, dict):
            raise MalformedEventError("Field links must hold objects")
        href = _text(link, "href")
        if link.get("rel") == "up" and href:
            return href.rstrip("/").rsplit("/", 1)[-1]
    return None


def _capture_refunded(
    event_type: str, resource: dict[str, Any], payload: dict[str, Any]
) -> CaptureRefunded:
    # Refund resources reference the refunded capture through an "up" link;
    # older payloads put the capture id directly on the resource.
    capture_id = _up_link_capture_id(resource) or _text(resource, "id")
    if not capture_id:
        raise MalformedEventError("Missing capture ID")
    amount, currency = _amount(resource)
    return CaptureRefunded(
        event_type=event_type,
        raw=payload,
        capture_id=capture_id,
        refund_amount=amount,
        refund_currency=currency,
    )


def _legacy_sale(
    event_type: str, resource: dict[str, Any], payload: dict[str, Any]
) -> LegacySaleCompleted:
    amount, currency = _amount(resource)
    return LegacySaleCompleted(
        event_type=event_type,
        raw=payload,
        sale_id=_text(resource, "id"),
        amount=amount,
        currency=currency,
        invoice_number=_text(resource, "invoice_number"),
    )
