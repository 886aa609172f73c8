"""Payment reconciliation service.

Pipeline per inbound request:

    classify → resolve → decide → atomic write (commit) → notify → respond

Each request gets its own session; nothing is shared between requests, so
correctness under concurrent or replayed delivery rests on the conditional
writes in LedgerService. Notifications run only after the write committed.

Every failure is converted into a ReconciliationResult here. Webhook callers
(the gateway) only see 5xx for store or gateway failures, which are safe to
retry because nothing was committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciler.errors import (
    AmountMismatchError,
    ConfigurationError,
    InvalidTransitionError,
    MalformedEventError,
    ReconcilerError,
    ResolutionError,
    StoreError,
)
from payment_reconciler.events import (
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
    classify,
)
from payment_reconciler.gateway import PaymentGateway, ReturnUrls
from payment_reconciler.services import notifications
from payment_reconciler.services.ledger_service import LedgerService
from payment_reconciler.services.notifications import (
    DispatchReport,
    Notification,
    NotificationDispatcher,
)
from payment_reconciler.services.resolver import PaymentSnapshot, TransactionResolver
from payment_reconciler.services.state_machine import (
    DepositStateMachine,
    PaymentStateMachine,
    Verdict,
)

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """How an inbound event was resolved."""

    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    NO_OP = "no_op"
    INVALID_TRANSITION = "invalid_transition"
    DECLINED = "declined"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class ReconciliationResult:
    """Outcome plus the HTTP response contract for it."""

    outcome: Outcome
    status_code: int
    body: dict[str, Any]
    record_type: str | None = None
    record_id: str | None = None
    notification: Notification | None = field(default=None, repr=False)
    dispatch_report: DispatchReport | None = None

    @property
    def success(self) -> bool:
        return bool(self.body.get("success"))


@dataclass
class _Context:
    session: AsyncSession
    resolver: TransactionResolver
    ledger: LedgerService


Handler = Callable[[_Context, Any], Awaitable[ReconciliationResult]]


def _ok(outcome: Outcome, record_type: str | None = None, record_id: str | None = None, **body: Any) -> ReconciliationResult:
    return ReconciliationResult(
        outcome=outcome,
        status_code=200,
        body={"success": True, **body},
        record_type=record_type,
        record_id=record_id,
    )


def _failure(outcome: Outcome, status_code: int, error: str, **body: Any) -> ReconciliationResult:
    return ReconciliationResult(
        outcome=outcome,
        status_code=status_code,
        body={"success": False, "error": error, **body},
    )


class ReconciliationService:
    """Turns gateway notifications and deposit actions into state transitions.

    Args:
        session_factory: Opens one session per request.
        gateway: Client used only for deposit create/capture actions.
        dispatcher: Best-effort notification fan-out.
        currency: Currency for deposit orders.
        site_url: Storefront URL for approval redirects.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        dispatcher: NotificationDispatcher,
        *,
        currency: str = "USD",
        site_url: str = "https://example.com",
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.currency = currency
        self.site_url = site_url.rstrip("/")

        self._handlers: dict[type[GatewayEvent], Handler] = {
            CreateDeposit: self._create_deposit,
            CaptureDeposit: self._capture_deposit,
            CheckoutCompleted: self._checkout_completed,
            CheckoutDeniedOrCancelled: self._checkout_denied,
            CaptureRefunded: self._capture_refunded,
            LegacySaleCompleted: self._legacy_sale,
            Unhandled: self._unhandled,
        }
        missing = [t.__name__ for t in EVENT_TYPES if t not in self._handlers]
        if missing:
            raise TypeError(f"No reconciliation handler for: {', '.join(missing)}")

    async def handle(self, payload: Any) -> ReconciliationResult:
        """Reconcile one inbound payload. Never raises."""
        try:
            event = classify(payload)
        except MalformedEventError as e:
            logger.warning("Rejected malformed payload: %s", e)
            return _failure(Outcome.REJECTED, e.status_code, e.message)

        logger.info("Received %s event (%s)", event.kind, event.gateway_event_type or "action")

        async with self.session_factory() as session:
            ctx = _Context(
                session=session,
                resolver=TransactionResolver(session, self.gateway.provider_name),
                ledger=LedgerService(session),
            )
            result = await self._run(ctx, event)
            await self._audit(ctx.ledger, event, result)

        if result.notification is not None:
            result.dispatch_report = await self.dispatcher.dispatch(result.notification)

        logger.info(
            "Reconciled %s: %s (%s %s)",
            event.kind,
            result.outcome.value,
            result.record_type or "-",
            result.record_id or "-",
        )
        return result

    async def _run(self, ctx: _Context, event: ClassifiedEvent) -> ReconciliationResult:
        handler = self._handlers[type(event)]
        try:
            return await handler(ctx, event)
        except ResolutionError as e:
            if event.source == EventSource.DIRECT_ACTION:
                logger.warning("%s: %s", event.kind, e)
                return _failure(Outcome.NO_OP, e.status_code, e.message)
            logger.warning("Webhook %s matched no record: %s", event.kind, e)
            return _ok(Outcome.NO_OP, message="No matching record", detail=e.message)
        except InvalidTransitionError as e:
            logger.warning("Ignored %s: %s", event.kind, e)
            return _ok(Outcome.INVALID_TRANSITION, message="Transition ignored", detail=e.message)
        except StoreError as e:
            return _failure(Outcome.FAILED, e.status_code, e.message)
        except ReconcilerError as e:
            logger.warning("%s failed: %s", event.kind, e)
            return _failure(Outcome.REJECTED if e.status_code < 500 else Outcome.FAILED, e.status_code, e.message)
        except Exception:
            logger.exception("Unexpected error reconciling %s", event.kind)
            await ctx.session.rollback()
            return _failure(Outcome.FAILED, 500, "Internal error")

    async def _audit(self, ledger: LedgerService, event: ClassifiedEvent, result: ReconciliationResult) -> None:
        try:
            await ledger.record_event(
                event_kind=event.kind,
                gateway_event_type=event.gateway_event_type,
                outcome=result.outcome.value,
                payload=event.raw,
                record_type=result.record_type,
                record_id=result.record_id,
            )
        except StoreError:
            logger.exception("Could not append audit event for %s", event.kind)

    def _require_gateway(self) -> None:
        if not self.gateway.is_configured:
            raise ConfigurationError("PayPal not configured")

    # Deposits

    async def _create_deposit(self, ctx: _Context, event: CreateDeposit) -> ReconciliationResult:
        self._require_gateway()
        deposit = await ctx.resolver.deposit(event.deposit_id)

        if DepositStateMachine.is_completed(deposit.status):
            return _ok(
                Outcome.ALREADY_PROCESSED, "deposit", deposit.id,
                status="completed", message="Already processed",
            )
        if event.amount != deposit.amount:
            raise AmountMismatchError(deposit.id, deposit.amount, event.amount)

        urls = ReturnUrls(
            return_url=f"{self.site_url}/profile?deposit_success=true&depositId={deposit.id}",
            cancel_url=f"{self.site_url}/profile?deposit_cancelled=true&depositId={deposit.id}",
        )
        order = await self.gateway.create_order(
            deposit.id, deposit.amount, self.currency, urls, event.description
        )

        attached = await ctx.ledger.attach_gateway_order(
            deposit_id=deposit.id,
            gateway_order_id=order.order_id,
            payment_url=order.approval_url,
            metadata={"paypal_order": order.raw},
            prior_data=deposit.payment_data,
        )
        if not attached:
            logger.warning("Deposit %s completed while order %s was created", deposit.id, order.order_id)
            return _ok(
                Outcome.ALREADY_PROCESSED, "deposit", deposit.id,
                status="completed", message="Already processed",
            )

        logger.info("Gateway order %s created for deposit %s", order.order_id, deposit.id)
        return _ok(
            Outcome.APPLIED, "deposit", deposit.id,
            orderId=order.order_id, approvalUrl=order.approval_url,
        )

    async def _capture_deposit(self, ctx: _Context, event: CaptureDeposit) -> ReconciliationResult:
        self._require_gateway()
        deposit = await ctx.resolver.deposit(event.deposit_id)

        if DepositStateMachine.is_completed(deposit.status):
            return _ok(
                Outcome.ALREADY_PROCESSED, "deposit", deposit.id,
                status="completed", message="Already processed",
            )
        if deposit.payment_id and deposit.payment_id != event.gateway_order_id:
            raise MalformedEventError("Gateway order does not match deposit")

        capture = await self.gateway.capture_order(event.gateway_order_id)
        transition = DepositStateMachine.decide_capture(deposit.status, capture.status)

        if transition.verdict == Verdict.DECLINED:
            logger.info("Capture of %s for deposit %s returned %s", event.gateway_order_id, deposit.id, capture.status)
            result = _failure(Outcome.DECLINED, 400, "Payment not completed", status=capture.status)
            result.record_type, result.record_id = "deposit", deposit.id
            return result
        if transition.verdict == Verdict.ALREADY_PROCESSED:
            return _ok(
                Outcome.ALREADY_PROCESSED, "deposit", deposit.id,
                status="completed", message="Already processed",
            )

        if capture.amount is not None and capture.amount != deposit.amount:
            logger.error(
                "Amount mismatch for deposit %s: expected %s, captured %s",
                deposit.id, deposit.amount, capture.amount,
            )
            result = _failure(Outcome.REJECTED, 400, "Amount mismatch")
            result.record_type, result.record_id = "deposit", deposit.id
            result.notification = notifications.amount_mismatch_alert(
                deposit_id=deposit.id,
                expected=deposit.amount,
                received=capture.amount,
                gateway_order_id=event.gateway_order_id,
            )
            return result

        credit = await ctx.ledger.apply_credit(
            deposit_id=deposit.id,
            user_id=deposit.user_id,
            amount=deposit.amount,
            metadata={
                "paypal_capture": capture.raw,
                "paypal_order_id": event.gateway_order_id,
                "capture_id": capture.capture_id,
                "verified_at": datetime.now(timezone.utc).isoformat(),
            },
            prior_data=deposit.payment_data,
        )
        if credit.already_applied:
            return _ok(
                Outcome.ALREADY_PROCESSED, "deposit", deposit.id,
                status="completed", message="Already processed",
            )

        result = _ok(
            Outcome.APPLIED, "deposit", deposit.id,
            status="completed", message="Deposit completed",
            newBalance=str(credit.new_balance),
        )
        result.notification = notifications.deposit_completed(
            user_id=deposit.user_id,
            amount=deposit.amount,
            new_balance=credit.new_balance,
            email=credit.email,
            gateway_order_id=event.gateway_order_id,
        )
        return result

    # Checkout payments

    async def _transition_payment(
        self,
        ctx: _Context,
        payment: PaymentSnapshot,
        event: GatewayEvent,
        *,
        metadata: dict[str, Any],
        message: str,
        notification: Notification | None,
        capture_id: str | None = None,
    ) -> ReconciliationResult:
        transition = PaymentStateMachine.decide(payment.status, event)
        if transition.should_apply:
            written = await ctx.ledger.apply_payment_transition(
                payment_id=payment.id,
                from_status=transition.from_status,
                to_status=transition.to_status,
                order_id=payment.order_id,
                order_status=transition.order_status,
                metadata=metadata,
                prior_data=payment.payment_data,
                capture_id=capture_id,
            )
            if written.applied:
                result = _ok(Outcome.APPLIED, "payment", payment.id, message=message)
                result.notification = notification
                return result
            # Lost a race: decide again against what the winner left behind.
            if written.current_status != transition.to_status:
                raise InvalidTransitionError(
                    str(written.current_status),
                    transition.to_status,
                    reason="status changed concurrently",
                )

        # Approval and capture both complete a payment, in either order. Merge
        # the later event (its capture id) without a status change.
        logger.info("Payment %s already %s; merging event data", payment.id, transition.to_status)
        await ctx.ledger.merge_payment_audit(
            payment_id=payment.id,
            metadata=metadata,
            capture_id=capture_id,
        )
        return _ok(Outcome.ALREADY_PROCESSED, "payment", payment.id, message="Already processed")

    async def _checkout_completed(self, ctx: _Context, event: CheckoutCompleted) -> ReconciliationResult:
        payment = await ctx.resolver.payment_by_gateway_order(event.gateway_order_id)
        metadata: dict[str, Any] = {"webhook": event.raw, "payer_email": event.payer_email}
        if event.capture_id:
            metadata.update(capture_id=event.capture_id, capture_status=event.capture_status)
        return await self._transition_payment(
            ctx,
            payment,
            event,
            metadata=metadata,
            capture_id=event.capture_id,
            message="Payment completed",
            notification=notifications.checkout_completed(
                order_number=payment.order_number,
                amount=event.amount if event.amount is not None else payment.amount,
                currency=event.currency or payment.currency,
                gateway_order_id=event.gateway_order_id,
                customer_email=payment.customer_email,
            ),
        )

    async def _checkout_denied(self, ctx: _Context, event: CheckoutDeniedOrCancelled) -> ReconciliationResult:
        payment = await ctx.resolver.payment_by_gateway_order(event.gateway_order_id)
        return await self._transition_payment(
            ctx,
            payment,
            event,
            metadata={"webhook": event.raw, "failure_reason": event.reason},
            message="Payment failure recorded",
            notification=notifications.checkout_failed(
                gateway_order_id=event.gateway_order_id,
                reason=event.reason,
            ),
        )

    async def _capture_refunded(self, ctx: _Context, event: CaptureRefunded) -> ReconciliationResult:
        payment = await ctx.resolver.payment_by_capture(event.capture_id)
        return await self._transition_payment(
            ctx,
            payment,
            event,
            metadata={
                "refund_webhook": event.raw,
                "refund_amount": str(event.refund_amount) if event.refund_amount is not None else None,
                "refund_currency": event.refund_currency,
                "refunded_at": datetime.now(timezone.utc).isoformat(),
            },
            message="Refund recorded",
            notification=notifications.refund_recorded(
                order_number=payment.order_number,
                amount=event.refund_amount,
                currency=event.refund_currency,
                capture_id=event.capture_id,
            ),
        )

    async def _legacy_sale(self, ctx: _Context, event: LegacySaleCompleted) -> ReconciliationResult:
        payment = await ctx.resolver.payment_by_invoice(event.invoice_number)
        return await self._transition_payment(
            ctx,
            payment,
            event,
            metadata={"ipn_webhook": event.raw, "sale_id": event.sale_id},
            message="IPN sale processed",
            notification=notifications.checkout_completed(
                order_number=payment.order_number,
                amount=event.amount if event.amount is not None else payment.amount,
                currency=event.currency or payment.currency,
                gateway_order_id=event.sale_id or payment.payment_id or "N/A",
                customer_email=payment.customer_email,
            ),
        )

    async def _unhandled(self, ctx: _Context, event: Unhandled) -> ReconciliationResult:
        logger.info("Unhandled gateway event type: %s", event.event_type)
        return _ok(Outcome.NO_OP, message="Event received", event_type=event.event_type)
