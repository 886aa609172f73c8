"""Order, payment, deposit and wallet models.

The reconciliation core owns the decision of when ``payments`` and
``deposit_transactions`` change status. ``orders`` and ``wallets`` belong to
the wider marketplace and are mutated here only inside the atomic ledger
operations.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payment_reconciler.models.base import Base, TimestampMixin, new_id


class Order(Base, TimestampMixin):
    """Marketplace order. Only ``status`` is written by reconciliation."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_number: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING_PAYMENT")
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    payments: Mapped[list[PaymentRecord]] = relationship(back_populates="order")


class PaymentRecord(Base, TimestampMixin):
    """One checkout payment attempt against the gateway."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
    )
    payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_provider: Mapped[str] = mapped_column(String, nullable=False)
    capture_id: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    payment_data: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("payment_provider", "payment_id", name="payments_provider_external_id"),
        Index("payments_capture_id_idx", "payment_provider", "capture_id"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name="payments_status_check",
        ),
    )

    order: Mapped[Order] = relationship(back_populates="payments")


class DepositRecord(Base, TimestampMixin):
    """Wallet top-up request. Credits a user balance exactly once."""

    __tablename__ = "deposit_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    payment_method: Mapped[str] = mapped_column(String, nullable=False, default="paypal")
    payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_url: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    payment_data: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="deposit_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'completed')",
            name="deposit_status_check",
        ),
    )


class Wallet(Base, TimestampMixin):
    """User balance aggregate."""

    __tablename__ = "wallets"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    balance: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))


class WalletTransaction(Base, TimestampMixin):
    """Append-only credit journal. One row per idempotency key."""

    __tablename__ = "wallet_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    entry_type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
