"""
Status transition tables for transactions and payments

Each table maps ``(current_status, event)`` to the next status. Anything not
listed is rejected with ``InvalidStatusTransition``.
"""

from enum import Enum
from typing import Dict, Tuple

from models.payment import PaymentStatus
from models.transaction import TransactionStatus
from services.errors import InvalidStatusTransition


class TransactionEvent(str, Enum):
    PAYMENT_CREATED = "payment_created"
    PAYMENT_PAID = "payment_paid"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_EXPIRED = "payment_expired"
    PAYMENT_CANCELLED = "payment_cancelled"
    EXPIRE = "expire"
    CANCEL = "cancel"
    ACTIVATED = "activated"


_T = TransactionStatus
_E = TransactionEvent

TRANSACTION_TRANSITIONS: Dict[Tuple[TransactionStatus, TransactionEvent], TransactionStatus] = {
    (_T.CREATED, _E.PAYMENT_CREATED): _T.PENDING,
    (_T.PENDING, _E.PAYMENT_CREATED): _T.PENDING,
    (_T.PENDING, _E.PAYMENT_PAID): _T.IN_PROGRESS,
    (_T.PENDING, _E.PAYMENT_FAILED): _T.EXPIRED,
    (_T.PENDING, _E.PAYMENT_EXPIRED): _T.EXPIRED,
    (_T.PENDING, _E.PAYMENT_CANCELLED): _T.CANCELLED,
    (_T.CREATED, _E.EXPIRE): _T.EXPIRED,
    (_T.PENDING, _E.EXPIRE): _T.EXPIRED,
    (_T.CREATED, _E.CANCEL): _T.CANCELLED,
    (_T.PENDING, _E.CANCEL): _T.CANCELLED,
    (_T.IN_PROGRESS, _E.ACTIVATED): _T.SUCCESS,
}

# Payment events are the target statuses themselves
PAYMENT_TRANSITIONS: Dict[Tuple[PaymentStatus, PaymentStatus], PaymentStatus] = {
    (PaymentStatus.PENDING, PaymentStatus.PAID): PaymentStatus.PAID,
    (PaymentStatus.PENDING, PaymentStatus.FAILED): PaymentStatus.FAILED,
    (PaymentStatus.PENDING, PaymentStatus.CANCELLED): PaymentStatus.CANCELLED,
    (PaymentStatus.PENDING, PaymentStatus.EXPIRED): PaymentStatus.EXPIRED,
}

# Transaction event fired when a payment reaches a status
PAYMENT_STATUS_EVENTS: Dict[PaymentStatus, TransactionEvent] = {
    PaymentStatus.PAID: _E.PAYMENT_PAID,
    PaymentStatus.FAILED: _E.PAYMENT_FAILED,
    PaymentStatus.EXPIRED: _E.PAYMENT_EXPIRED,
    PaymentStatus.CANCELLED: _E.PAYMENT_CANCELLED,
}

PAYABLE_TRANSACTION_STATUSES = (_T.CREATED, _T.PENDING)


def next_transaction_status(current: str, event: TransactionEvent) -> TransactionStatus:
    try:
        return TRANSACTION_TRANSITIONS[(TransactionStatus(current), event)]
    except (KeyError, ValueError):
        raise InvalidStatusTransition(str(current), event.value, entity="transaction")


def next_payment_status(current: str, target: PaymentStatus) -> PaymentStatus:
    try:
        return PAYMENT_TRANSITIONS[(PaymentStatus(current), target)]
    except (KeyError, ValueError):
        raise InvalidStatusTransition(str(current), target.value, entity="payment")

