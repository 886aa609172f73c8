"""Tests for atomic ledger writes against SQLite.

Covers:
- Exactly-once deposit credit (replay and concurrent delivery)
- Payment and order status written in one transaction
- Rollback on partial failure
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from payment_reconciler.errors import StoreError
from payment_reconciler.models import PaymentEvent
from payment_reconciler.services.ledger_service import LedgerService

pytestmark = pytest.mark.asyncio


class TestApplyCredit:
    """Deposit credits."""

    async def test_credit_completes_deposit_and_credits_wallet(self, db, store):
        await store.deposit("D1", amount=Decimal("100000"))
        await store.wallet("U1", balance=Decimal("250.50"))

        result = await LedgerService(db).apply_credit(
            deposit_id="D1",
            user_id="U1",
            amount=Decimal("100000"),
            metadata={"paypal_order_id": "GW-1"},
            prior_data={"created_by": "checkout"},
        )

        assert result.applied is True
        assert result.new_balance == Decimal("100250.50")
        assert result.email == "buyer@example.com"

        deposit = await store.get_deposit("D1")
        assert deposit.status == "completed"
        assert deposit.completed_at is not None
        assert deposit.payment_data == {"created_by": "checkout", "paypal_order_id": "GW-1"}
        assert await store.balance("U1") == Decimal("100250.50")
        assert await store.journal_count() == 1

    async def test_replay_does_not_double_credit(self, db, store):
        await store.deposit("D1", amount=Decimal("100000"))
        ledger = LedgerService(db)

        first = await ledger.apply_credit(deposit_id="D1", user_id="U1", amount=Decimal("100000"))
        second = await ledger.apply_credit(deposit_id="D1", user_id="U1", amount=Decimal("100000"))

        assert first.applied is True
        assert second.applied is False
        assert second.already_applied is True
        assert second.new_balance is None
        assert await store.balance("U1") == Decimal("100000")
        assert await store.journal_count() == 1

    async def test_credit_creates_missing_wallet(self, db, store):
        await store.deposit("D1", user_id="U2", amount=Decimal("15"))

        result = await LedgerService(db).apply_credit(deposit_id="D1", user_id="U2", amount=Decimal("15"))

        assert result.new_balance == Decimal("15")
        assert result.email is None

    async def test_concurrent_credits_apply_once(self, session_factory, store):
        await store.deposit("D1", amount=Decimal("100000"))
        await store.wallet("U1")

        async def credit():
            async with session_factory() as session:
                return await LedgerService(session).apply_credit(
                    deposit_id="D1", user_id="U1", amount=Decimal("100000")
                )

        results = await asyncio.gather(credit(), credit(), credit())

        assert sorted(r.applied for r in results) == [False, False, True]
        assert await store.balance("U1") == Decimal("100000")
        assert await store.journal_count() == 1

    async def test_unknown_deposit_is_not_applied(self, db, store):
        result = await LedgerService(db).apply_credit(deposit_id="missing", user_id="U1", amount=Decimal("1"))

        assert result.applied is False
        assert await store.balance("U1") is None

    async def test_non_positive_amount_rejected(self, db):
        with pytest.raises(ValueError):
            await LedgerService(db).apply_credit(deposit_id="D1", user_id="U1", amount=Decimal("0"))

    async def test_wallet_failure_rolls_back_deposit(self, db, store, monkeypatch):
        await store.deposit("D1", amount=Decimal("50"))

        async def fail(self, user_id, amount):
            raise OperationalError("UPDATE wallets", {}, Exception("disk I/O error"))

        monkeypatch.setattr(LedgerService, "_credit_wallet", fail)

        with pytest.raises(StoreError):
            await LedgerService(db).apply_credit(deposit_id="D1", user_id="U1", amount=Decimal("50"))

        assert (await store.get_deposit("D1")).status == "pending"
        assert await store.journal_count() == 0


class TestPaymentTransition:
    """Payment status plus order status."""

    async def test_completion_marks_order_paid(self, db, store):
        await store.checkout("P1", order_id="O1")

        result = await LedgerService(db).apply_payment_transition(
            payment_id="P1",
            from_status="pending",
            to_status="completed",
            order_id="O1",
            order_status="PAID",
            metadata={"capture_id": "CAP-1"},
            prior_data={"created_by": "checkout"},
            capture_id="CAP-1",
        )

        assert result.applied is True
        payment = await store.get_payment("P1")
        assert payment.status == "completed"
        assert payment.capture_id == "CAP-1"
        assert payment.updated_at is not None
        assert payment.payment_data == {"created_by": "checkout", "capture_id": "CAP-1"}
        assert (await store.get_order("O1")).status == "PAID"

    async def test_lost_race_reports_current_status(self, db, store):
        await store.checkout("P1", status="completed", order_status="PAID")

        result = await LedgerService(db).apply_payment_transition(
            payment_id="P1",
            from_status="pending",
            to_status="completed",
            order_id="O1",
            order_status="PAID",
        )

        assert result.applied is False
        assert result.current_status == "completed"

    async def test_audit_merge_keeps_status_and_fills_capture_id(self, db, store):
        await store.checkout("P1", status="completed", order_status="PAID")

        await LedgerService(db).merge_payment_audit(
            payment_id="P1",
            metadata={"capture_id": "CAP-9", "payer_email": None},
            capture_id="CAP-9",
        )

        payment = await store.get_payment("P1")
        assert payment.status == "completed"
        assert payment.capture_id == "CAP-9"
        assert payment.payment_data == {"created_by": "checkout", "capture_id": "CAP-9"}

    async def test_audit_merge_never_replaces_capture_id(self, db, store):
        await store.checkout("P1", status="completed", order_status="PAID", capture_id="CAP-1")

        await LedgerService(db).merge_payment_audit(
            payment_id="P1", metadata={"note": "late"}, capture_id="CAP-2"
        )

        payment = await store.get_payment("P1")
        assert payment.capture_id == "CAP-1"
        assert payment.payment_data["note"] == "late"

    async def test_order_failure_rolls_back_payment(self, db, store, monkeypatch):
        """Simulated partial failure: never payment completed with order unpaid."""
        await store.checkout("P1", order_id="O1")

        async def fail(self, order_id, status):
            raise StoreError(f"Order {order_id} could not be updated")

        monkeypatch.setattr(LedgerService, "mark_order", fail)

        with pytest.raises(StoreError):
            await LedgerService(db).apply_payment_transition(
                payment_id="P1",
                from_status="pending",
                to_status="completed",
                order_id="O1",
                order_status="PAID",
                metadata={"capture_id": "CAP-1"},
            )

        payment = await store.get_payment("P1")
        assert payment.status == "pending"
        assert payment.capture_id is None
        assert payment.payment_data == {"created_by": "checkout"}
        assert (await store.get_order("O1")).status == "PENDING_PAYMENT"

    async def test_driver_error_rolls_back_payment(self, db, store, monkeypatch):
        await store.checkout("P1", order_id="O1")

        async def fail(self, order_id, status):
            raise OperationalError("UPDATE orders", {}, Exception("database is locked"))

        monkeypatch.setattr(LedgerService, "mark_order", fail)

        with pytest.raises(StoreError):
            await LedgerService(db).apply_payment_transition(
                payment_id="P1",
                from_status="pending",
                to_status="completed",
                order_id="O1",
                order_status="PAID",
            )

        assert (await store.get_payment("P1")).status == "pending"

    async def test_failure_leaves_order_untouched(self, db, store):
        await store.checkout("P1", order_id="O1")

        result = await LedgerService(db).apply_payment_transition(
            payment_id="P1",
            from_status="pending",
            to_status="failed",
            order_id="O1",
            order_status=None,
        )

        assert result.applied is True
        assert (await store.get_payment("P1")).status == "failed"
        assert (await store.get_order("O1")).status == "PENDING_PAYMENT"

    async def test_missing_order_rolls_back(self, db, store):
        await store.checkout("P1", order_id="O1")

        with pytest.raises(StoreError):
            await LedgerService(db).apply_payment_transition(
                payment_id="P1",
                from_status="pending",
                to_status="completed",
                order_id="O-missing",
                order_status="PAID",
            )

        assert (await store.get_payment("P1")).status == "pending"


class TestDepositOrderAndAudit:
    """Gateway order attachment, audit trail and balance reads."""

    async def test_attach_gateway_order_to_pending_deposit(self, db, store):
        await store.deposit("D1")

        attached = await LedgerService(db).attach_gateway_order(
            deposit_id="D1",
            gateway_order_id="GW-1",
            payment_url="https://www.sandbox.paypal.com/checkoutnow?token=GW-1",
            metadata={"paypal_order": {"id": "GW-1"}},
        )

        assert attached is True
        deposit = await store.get_deposit("D1")
        assert deposit.payment_id == "GW-1"
        assert deposit.payment_url.endswith("token=GW-1")
        assert deposit.payment_data == {"paypal_order": {"id": "GW-1"}}

    async def test_attach_skips_completed_deposit(self, db, store):
        await store.deposit("D1", status="completed", payment_id="GW-OLD")

        attached = await LedgerService(db).attach_gateway_order(
            deposit_id="D1", gateway_order_id="GW-NEW", payment_url=None
        )

        assert attached is False
        assert (await store.get_deposit("D1")).payment_id == "GW-OLD"

    async def test_record_event_appends(self, db, store):
        ledger = LedgerService(db)
        await ledger.record_event(event_kind="unhandled", outcome="no_op", payload={"event_type": "X"})
        await ledger.record_event(
            event_kind="checkout_completed",
            outcome="applied",
            payload={},
            gateway_event_type="PAYMENT.CAPTURE.COMPLETED",
            record_type="payment",
            record_id="P1",
        )

        assert await store.count(PaymentEvent) == 2

    async def test_get_balance(self, db, store):
        await store.wallet("U1", balance=Decimal("12.34"))
        ledger = LedgerService(db)

        assert await ledger.get_balance("U1") == Decimal("12.34")
        assert await ledger.get_balance("nobody") == Decimal("0")
