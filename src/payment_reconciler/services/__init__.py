"""Reconciliation services."""

from payment_reconciler.services.state_machine import (
    DepositStateMachine,
    DepositStatus,
    OrderStatus,
    PaymentStateMachine,
    PaymentStatus,
    Transition,
    Verdict,
)
from payment_reconciler.services.resolver import (
    DepositSnapshot,
    PaymentSnapshot,
    TransactionResolver,
)
from payment_reconciler.services.ledger_service import (
    CreditResult,
    LedgerService,
    TransitionResult,
)
from payment_reconciler.services.notifications import (
    DispatchReport,
    Notification,
    NotificationDispatcher,
)
from payment_reconciler.services.reconciliation import (
    Outcome,
    ReconciliationResult,
    ReconciliationService,
)

__all__ = [
    "PaymentStatus",
    "DepositStatus",
    "OrderStatus",
    "Verdict",
    "Transition",
    "PaymentStateMachine",
    "DepositStateMachine",
    "DepositSnapshot",
    "PaymentSnapshot",
    "TransactionResolver",
    "CreditResult",
    "TransitionResult",
    "LedgerService",
    "Notification",
    "DispatchReport",
    "NotificationDispatcher",
    "Outcome",
    "ReconciliationResult",
    "ReconciliationService",
]
