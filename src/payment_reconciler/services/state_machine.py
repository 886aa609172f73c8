"""Payment and deposit state machines with transition validation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from payment_reconciler.errors import InvalidTransitionError
from payment_reconciler.events.types import (
    CaptureRefunded,
    CheckoutCompleted,
    CheckoutDeniedOrCancelled,
    GatewayEvent,
    LegacySaleCompleted,
)


class PaymentStatus(str, Enum):
    """Checkout payment status values."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class DepositStatus(str, Enum):
    """Deposit status values. Failures are reported, not persisted."""

    PENDING = "pending"
    COMPLETED = "completed"


class OrderStatus(str, Enum):
    """Order status values written by reconciliation."""

    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class Verdict(str, Enum):
    """What the reconciliation should do with an event."""

    APPLY = "apply"
    ALREADY_PROCESSED = "already_processed"
    DECLINED = "declined"  # gateway did not complete the capture


@dataclass(frozen=True)
class Transition:
    """A decided transition. Only APPLY verdicts mutate anything."""

    from_status: str
    to_status: str
    verdict: Verdict
    order_status: str | None = None

    @property
    def should_apply(self) -> bool:
        return self.verdict == Verdict.APPLY


class PaymentStateMachine:
    """State machine for checkout payment transitions.

    Allowed transitions:
    - pending → completed (order becomes PAID)
    - pending → failed (order untouched)
    - completed → refunded (order becomes REFUNDED)
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PaymentStatus.PENDING: [PaymentStatus.COMPLETED, PaymentStatus.FAILED],
        PaymentStatus.COMPLETED: [PaymentStatus.REFUNDED],
        PaymentStatus.FAILED: [],
        PaymentStatus.REFUNDED: [],
    }

    # Status each payment event drives the record towards
    EVENT_TARGETS: dict[type[GatewayEvent], PaymentStatus] = {
        CheckoutCompleted: PaymentStatus.COMPLETED,
        LegacySaleCompleted: PaymentStatus.COMPLETED,
        CheckoutDeniedOrCancelled: PaymentStatus.FAILED,
        CaptureRefunded: PaymentStatus.REFUNDED,
    }

    # Order status written in the same atomic unit as the payment status
    ORDER_STATUS_FOR: dict[str, OrderStatus] = {
        PaymentStatus.COMPLETED: OrderStatus.PAID,
        PaymentStatus.REFUNDED: OrderStatus.REFUNDED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def target_for(cls, event: GatewayEvent) -> PaymentStatus:
        """Status the event drives a payment towards."""
        try:
            return cls.EVENT_TARGETS[type(event)]
        except KeyError:
            raise InvalidTransitionError(
                "*", "*", reason=f"{event.kind} does not apply to payments"
            ) from None

    @classmethod
    def decide(cls, current_status: str, event: GatewayEvent) -> Transition:
        """Decide the transition for ``event`` given the current status.

        Reaching the target status again is an idempotent replay, not an
        error.

        Raises:
            InvalidTransitionError: the event's transition is not allowed
                from ``current_status``.
        """
        target = cls.target_for(event).value
        if current_status == target:
            return Transition(current_status, target, Verdict.ALREADY_PROCESSED)

        cls.validate_transition(current_status, target)
        order_status = cls.ORDER_STATUS_FOR.get(target)
        return Transition(
            current_status,
            target,
            Verdict.APPLY,
            order_status=order_status.value if order_status else None,
        )


class DepositStateMachine:
    """State machine for wallet deposits.

    The only transition is pending → completed, driven by a capture the
    gateway reports as COMPLETED.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        DepositStatus.PENDING: [DepositStatus.COMPLETED],
        DepositStatus.COMPLETED: [],
    }

    GATEWAY_COMPLETED = "COMPLETED"

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def is_completed(cls, status: str) -> bool:
        return status == DepositStatus.COMPLETED

    @classmethod
    def decide_capture(cls, current_status: str, gateway_status: str) -> Transition:
        """Decide what a capture result means for a deposit.

        Raises:
            InvalidTransitionError: deposit is in an unknown status.
        """
        if current_status == DepositStatus.COMPLETED:
            return Transition(current_status, current_status, Verdict.ALREADY_PROCESSED)
        if not cls.can_transition(current_status, DepositStatus.COMPLETED):
            raise InvalidTransitionError(current_status, DepositStatus.COMPLETED.value)
        if gateway_status != cls.GATEWAY_COMPLETED:
            return Transition(current_status, current_status, Verdict.DECLINED)
        return Transition(current_status, DepositStatus.COMPLETED.value, Verdict.APPLY)
