"""Transaction resolver.

Maps the correlating identifiers of a classified event to exactly one internal
record. Resolution fails closed: no match raises ResolutionError and nothing is
created or guessed.

Records are returned as frozen snapshots. The snapshot's status is only a hint
for the state machine; the atomic write re-checks it in the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from payment_reconciler.errors import ResolutionError
from payment_reconciler.models import DepositRecord, Order, PaymentRecord


@dataclass(frozen=True)
class DepositSnapshot:
    """Deposit as read before the transition."""

    id: str
    user_id: str
    amount: Decimal
    status: str
    payment_id: str | None
    payment_url: str | None
    payment_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentSnapshot:
    """Checkout payment (and its order) as read before the transition."""

    id: str
    order_id: str
    payment_id: str | None
    provider: str
    amount: Decimal
    currency: str
    status: str
    capture_id: str | None
    order_number: str | None
    order_status: str | None
    customer_email: str | None
    payment_data: dict[str, Any] = field(default_factory=dict)


def _deposit_snapshot(record: DepositRecord) -> DepositSnapshot:
    return DepositSnapshot(
        id=record.id,
        user_id=record.user_id,
        amount=Decimal(str(record.amount)),
        status=record.status,
        payment_id=record.payment_id,
        payment_url=record.payment_url,
        payment_data=dict(record.payment_data or {}),
    )


def _payment_snapshot(record: PaymentRecord) -> PaymentSnapshot:
    order = record.order
    return PaymentSnapshot(
        id=record.id,
        order_id=record.order_id,
        payment_id=record.payment_id,
        provider=record.payment_provider,
        amount=Decimal(str(record.amount)),
        currency=record.currency,
        status=record.status,
        capture_id=record.capture_id,
        order_number=order.order_number if order else None,
        order_status=order.status if order else None,
        customer_email=order.customer_email if order else None,
        payment_data=dict(record.payment_data or {}),
    )


class TransactionResolver:
    """Resolves event identifiers to deposit or payment snapshots."""

    def __init__(self, db: AsyncSession, provider: str):
        self.db = db
        self.provider = provider

    async def deposit(self, deposit_id: str) -> DepositSnapshot:
        """Resolve a deposit by primary key."""
        record = await self.db.get(DepositRecord, deposit_id, populate_existing=True)
        if record is None:
            raise ResolutionError("Deposit", deposit_id)
        return _deposit_snapshot(record)

    async def payment_by_gateway_order(self, gateway_order_id: str) -> PaymentSnapshot:
        """Resolve via the unique (provider, external order id) pair."""
        result = await self.db.execute(
            select(PaymentRecord)
            .options(joinedload(PaymentRecord.order))
            .where(
                PaymentRecord.payment_provider == self.provider,
                PaymentRecord.payment_id == gateway_order_id,
            )
            .execution_options(populate_existing=True)
        )
        record = result.scalars().first()
        if record is None:
            raise ResolutionError("Payment", gateway_order_id)
        return _payment_snapshot(record)

    async def payment_by_capture(self, capture_id: str) -> PaymentSnapshot:
        """Resolve via the indexed capture id.

        Payments recorded before the capture id was known fall back to the
        external id column, which some integrations fill with the capture id.
        """
        result = await self.db.execute(
            select(PaymentRecord)
            .options(joinedload(PaymentRecord.order))
            .where(
                PaymentRecord.payment_provider == self.provider,
                or_(
                    PaymentRecord.capture_id == capture_id,
                    PaymentRecord.payment_id == capture_id,
                ),
            )
            .order_by(PaymentRecord.created_at)
            .execution_options(populate_existing=True)
        )
        record = result.scalars().first()
        if record is None:
            raise ResolutionError("Payment capture", capture_id)
        return _payment_snapshot(record)

    async def payment_by_invoice(self, invoice_number: str | None) -> PaymentSnapshot:
        """Resolve a legacy sale: invoice number → order → payment."""
        if not invoice_number:
            raise ResolutionError("Order", "<missing invoice number>")

        order_id = (
            await self.db.execute(select(Order.id).where(Order.order_number == invoice_number))
        ).scalar()
        if order_id is None:
            raise ResolutionError("Order", invoice_number)

        result = await self.db.execute(
            select(PaymentRecord)
            .options(joinedload(PaymentRecord.order))
            .where(
                PaymentRecord.order_id == order_id,
                PaymentRecord.payment_provider == self.provider,
            )
            .order_by(PaymentRecord.created_at.desc())
            .execution_options(populate_existing=True)
        )
        record = result.scalars().first()
        if record is None:
            raise ResolutionError("Payment for order", invoice_number)
        return _payment_snapshot(record)
