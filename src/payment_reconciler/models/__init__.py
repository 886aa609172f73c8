"""SQLAlchemy ORM models."""

from payment_reconciler.models.base import Base, TimestampMixin
from payment_reconciler.models.payments import (
    DepositRecord,
    Order,
    PaymentRecord,
    Wallet,
    WalletTransaction,
)
from payment_reconciler.models.audit import Notification, PaymentEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "Order",
    "PaymentRecord",
    "DepositRecord",
    "Wallet",
    "WalletTransaction",
    "PaymentEvent",
    "Notification",
]
