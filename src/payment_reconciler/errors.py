"""Exception types raised by the reconciliation core.

Every exception carries the HTTP status it maps to at the handler boundary.
A replayed event is not an error; it is reported as
``Outcome.ALREADY_PROCESSED``.
"""

from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for reconciliation failures."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(ReconcilerError):
    """Gateway credentials are absent. Not retryable without operator action."""

    status_code = 400


class MalformedEventError(ReconcilerError):
    """Inbound payload is missing required fields or carries invalid values."""

    status_code = 400


class AmountMismatchError(ReconcilerError):
    """The gateway reported an amount that differs from the stored record."""

    status_code = 400

    def __init__(self, record_id: str, expected: object, received: object):
        self.record_id = record_id
        self.expected = expected
        self.received = received
        super().__init__(
            f"Amount mismatch for {record_id}: expected {expected}, received {received}"
        )


class GatewayError(ReconcilerError):
    """Non-2xx or transport failure from the gateway. Outcome is ambiguous."""

    status_code = 500

    def __init__(
        self,
        message: str,
        provider_status: int | None = None,
        response_body: str | None = None,
    ):
        self.provider_status = provider_status
        self.response_body = response_body
        super().__init__(message)


class GatewayAuthError(GatewayError):
    """The gateway rejected the client-credentials token request."""


class ResolutionError(ReconcilerError):
    """No internal record matches the event's correlating identifiers."""

    status_code = 404

    def __init__(self, record_type: str, key: str):
        self.record_type = record_type
        self.key = key
        super().__init__(f"{record_type} not found: {key}")


class InvalidTransitionError(ReconcilerError):
    """Raised when a status transition is not in the transition table."""

    status_code = 200

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class StoreError(ReconcilerError):
    """The atomic store operation failed and was rolled back."""

    status_code = 500
