"""Atomic ledger updater.

Every balance- or status-affecting write goes through one of the methods here,
and each method is one transaction:

- The status change is a conditional UPDATE guarded by the expected current
  status. Its rowcount decides which concurrent delivery wins; the loser sees
  zero rows and reports "already applied" without touching anything else.
- Dependent writes (wallet credit + journal row, or order status) run in the
  same transaction after the guard. Any failure rolls back the whole unit.

There is no read-then-write anywhere in the money path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciler.errors import StoreError
from payment_reconciler.models import (
    DepositRecord,
    Order,
    PaymentEvent,
    PaymentRecord,
    Wallet,
    WalletTransaction,
)
from payment_reconciler.models.base import new_id
from payment_reconciler.services.state_machine import DepositStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditResult:
    """Result of a deposit credit.

    IMPORTANT: check ``applied`` before notifying. ``applied=False`` means the
    deposit was already credited (or is being credited by a concurrent
    delivery) and nothing was written.
    """

    deposit_id: str
    applied: bool
    new_balance: Decimal | None = None
    email: str | None = None

    @property
    def already_applied(self) -> bool:
        return not self.applied


@dataclass(frozen=True)
class TransitionResult:
    """Result of a conditional payment status write."""

    payment_id: str
    applied: bool
    current_status: str | None = None


class LedgerService:
    """Applies deposit credits and payment transitions atomically.

    Notes:
    - The session must not have pending writes of its own; each public
      method commits or rolls back before returning.
    - wallet_transactions.idempotency_key is unique; the deposit id is the key.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def apply_credit(
        self,
        *,
        deposit_id: str,
        user_id: str,
        amount: Decimal,
        metadata: dict[str, Any] | None = None,
        prior_data: dict[str, Any] | None = None,
    ) -> CreditResult:
        """Complete a pending deposit and credit its owner's wallet.

        Args:
            deposit_id: Deposit id, also the idempotency key
            user_id: Wallet owner
            amount: Positive amount to credit
            metadata: Gateway data merged into the deposit audit blob
            prior_data: Audit blob as read before the call

        Returns:
            CreditResult; ``applied`` is False when the deposit was not pending.

        Raises:
            StoreError: the transaction failed and was rolled back.
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        now = datetime.now(timezone.utc)
        merged = {**(prior_data or {}), **(metadata or {})}

        try:
            guarded = await self.db.execute(
                update(DepositRecord)
                .where(
                    DepositRecord.id == deposit_id,
                    DepositRecord.status == DepositStatus.PENDING.value,
                )
                .values(
                    status=DepositStatus.COMPLETED.value,
                    completed_at=now,
                    payment_data=merged,
                )
                .execution_options(synchronize_session=False)
            )
            if guarded.rowcount == 0:
                await self.db.commit()
                logger.info("Deposit %s already credited; skipping", deposit_id)
                return CreditResult(deposit_id=deposit_id, applied=False)

            new_balance, email = await self._credit_wallet(user_id, amount)

            await self.db.execute(
                insert(WalletTransaction).values(
                    id=new_id(),
                    user_id=user_id,
                    idempotency_key=f"deposit:{deposit_id}",
                    entry_type="deposit",
                    amount=amount,
                    balance_after=new_balance,
                    metadata_json={"deposit_id": deposit_id},
                )
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.exception("Deposit credit failed for %s", deposit_id)
            if isinstance(e, SQLAlchemyError):
                raise StoreError(f"Failed to complete deposit {deposit_id}") from e
            raise

        logger.info(
            "Deposit %s credited %s to user %s; new balance %s",
            deposit_id,
            amount,
            user_id,
            new_balance,
        )
        return CreditResult(
            deposit_id=deposit_id,
            applied=True,
            new_balance=new_balance,
            email=email,
        )

    async def _credit_wallet(self, user_id: str, amount: Decimal) -> tuple[Decimal, str | None]:
        """Upsert the wallet row, adding ``amount``. Returns (balance, email)."""
        dialect = self.db.bind.dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(Wallet)
        elif dialect == "sqlite":
            stmt = sqlite.insert(Wallet)
        else:
            raise StoreError(f"Unsupported database dialect: {dialect}")

        stmt = stmt.values(user_id=user_id, balance=amount)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Wallet.user_id],
            set_={"balance": Wallet.balance + stmt.excluded.balance},
        ).returning(Wallet.balance, Wallet.email)

        row = (await self.db.execute(stmt)).one()
        return Decimal(str(row[0])), row[1]

    async def apply_payment_transition(
        self,
        *,
        payment_id: str,
        from_status: str,
        to_status: str,
        order_id: str | None = None,
        order_status: str | None = None,
        metadata: dict[str, Any] | None = None,
        prior_data: dict[str, Any] | None = None,
        capture_id: str | None = None,
    ) -> TransitionResult:
        """Move a payment from ``from_status`` to ``to_status``.

        When ``order_status`` is given, the order is updated in the same
        transaction: both writes commit or neither does.

        Returns:
            TransitionResult; when not applied, ``current_status`` is the
            status found in the database.

        Raises:
            StoreError: the transaction failed and was rolled back.
        """
        values: dict[str, Any] = {
            "status": to_status,
            "payment_data": {**(prior_data or {}), **(metadata or {})},
            "updated_at": datetime.now(timezone.utc),
        }
        if capture_id:
            values["capture_id"] = capture_id

        try:
            guarded = await self.db.execute(
                update(PaymentRecord)
                .where(
                    PaymentRecord.id == payment_id,
                    PaymentRecord.status == from_status,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if guarded.rowcount == 0:
                current = (
                    await self.db.execute(
                        select(PaymentRecord.status).where(PaymentRecord.id == payment_id)
                    )
                ).scalar()
                await self.db.commit()
                return TransitionResult(payment_id=payment_id, applied=False, current_status=current)

            if order_status:
                if not order_id:
                    raise StoreError(f"Payment {payment_id} has no order to mark {order_status}")
                await self.mark_order(order_id, order_status)

            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.exception(
                "Payment transition %s -> %s failed for %s", from_status, to_status, payment_id
            )
            if isinstance(e, SQLAlchemyError):
                raise StoreError(f"Failed to update payment {payment_id}") from e
            raise

        logger.info("Payment %s moved %s -> %s", payment_id, from_status, to_status)
        return TransitionResult(payment_id=payment_id, applied=True, current_status=to_status)

    async def merge_payment_audit(
        self,
        *,
        payment_id: str,
        metadata: dict[str, Any],
        capture_id: str | None = None,
    ) -> None:
        """Merge an observed event into the payment without changing its status.

        The audit blob is read inside the same transaction, so data written by
        a concurrent transition is kept. Null values never overwrite recorded
        ones, and a stored capture id is kept.

        Raises:
            StoreError: the update failed and was rolled back.
        """
        observed = {key: value for key, value in metadata.items() if value is not None}

        try:
            current = (
                await self.db.execute(
                    select(PaymentRecord.payment_data).where(PaymentRecord.id == payment_id)
                )
            ).scalar()
            values: dict[str, Any] = {
                "payment_data": {**(current or {}), **observed},
                "updated_at": datetime.now(timezone.utc),
            }
            if capture_id:
                values["capture_id"] = func.coalesce(PaymentRecord.capture_id, capture_id)

            await self.db.execute(
                update(PaymentRecord)
                .where(PaymentRecord.id == payment_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.exception("Merging audit data failed for payment %s", payment_id)
            raise StoreError(f"Failed to update payment {payment_id}") from e

    async def mark_order(self, order_id: str, status: str) -> None:
        """Set the order status. Only called inside an open ledger transaction."""
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StoreError(f"Order {order_id} not found")

    async def attach_gateway_order(
        self,
        *,
        deposit_id: str,
        gateway_order_id: str,
        payment_url: str | None,
        metadata: dict[str, Any] | None = None,
        prior_data: dict[str, Any] | None = None,
    ) -> bool:
        """Record the gateway order on a still-pending deposit.

        Returns:
            True if the deposit was pending and updated.
        """
        try:
            result = await self.db.execute(
                update(DepositRecord)
                .where(
                    DepositRecord.id == deposit_id,
                    DepositRecord.status == DepositStatus.PENDING.value,
                )
                .values(
                    payment_id=gateway_order_id,
                    payment_url=payment_url,
                    payment_data={**(prior_data or {}), **(metadata or {})},
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.exception("Recording gateway order failed for deposit %s", deposit_id)
            raise StoreError(f"Failed to update deposit {deposit_id}") from e

        return result.rowcount > 0

    async def record_event(
        self,
        *,
        event_kind: str,
        outcome: str,
        payload: dict[str, Any],
        gateway_event_type: str | None = None,
        record_type: str | None = None,
        record_id: str | None = None,
    ) -> None:
        """Append an inbound event to the audit trail.

        Raises:
            StoreError: the insert failed and was rolled back.
        """
        try:
            await self.db.execute(
                insert(PaymentEvent).values(
                    id=new_id(),
                    event_kind=event_kind,
                    gateway_event_type=gateway_event_type,
                    record_type=record_type,
                    record_id=record_id,
                    outcome=outcome,
                    payload=payload,
                )
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError("Failed to record payment event") from e

    async def get_balance(self, user_id: str) -> Decimal:
        """Current wallet balance, zero for unknown users."""
        balance = (
            await self.db.execute(select(Wallet.balance).where(Wallet.user_id == user_id))
        ).scalar()
        return Decimal(str(balance)) if balance is not None else Decimal("0")
