"""
Payment lifecycle

One payment per transaction. Creating a payment checks the amount against
the transaction total; confirming it runs the activation engine before the
caller gets an answer.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from database.models import Payment, ServiceFee, Transaction
from database.operations import unit_of_work
from models.payment import (
    ActivationOutcome,
    FeeType,
    PaymentRead,
    PaymentReceipt,
    PaymentStatus,
    PaymentUpdateResult,
)
from models.transaction import TransactionStatus, TransactionType
from services.activation import ActivationEngine
from services.errors import (
    ActivationFailure,
    AmountMismatch,
    InvalidStatusTransition,
    PaymentNotFound,
    TransactionNotFound,
    TransactionNotPayable,
)
from services.payment_gateway import get_payment_gateway
from services.state_machine import (
    PAYABLE_TRANSACTION_STATUSES,
    PAYMENT_STATUS_EVENTS,
    TransactionEvent,
    next_payment_status,
    next_transaction_status,
)
from services.transactions import fail_pending_children
from utils.dates import utcnow
from utils.money import ZERO, amounts_match, quantize, to_decimal

logger = logging.getLogger(__name__)


def calculate_service_fee(amount, fee: Optional[ServiceFee]) -> Decimal:
    """Fee for ``amount`` under a service fee row; no active row means no fee."""
    if fee is None or not fee.is_active:
        return ZERO

    amount = to_decimal(amount)
    if fee.type == FeeType.PERCENTAGE.value:
        value = amount * to_decimal(fee.value) / Decimal(100)
        if fee.min_fee is not None:
            value = max(value, to_decimal(fee.min_fee))
        if fee.max_fee is not None:
            value = min(value, to_decimal(fee.max_fee))
    else:
        value = to_decimal(fee.value)
    return quantize(value)


def _item_name(transaction: Transaction) -> str:
    names = []
    local = transaction.currency == "idr"
    if transaction.whatsapp_transaction is not None:
        line = transaction.whatsapp_transaction
        names.append(f"{line.whatsapp_package.name} ({line.duration})")
    for product in transaction.product_transactions:
        names.append(product.package.name_id if local else product.package.name_en)
    for addon in transaction.addon_transactions:
        names.append(addon.addon.name_id if local else addon.addon.name_en)
    return ", ".join(names) or "Order"


class PaymentService:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        activation: Optional[ActivationEngine] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.activation = activation or ActivationEngine(session_factory, self.settings)

    def create_with_expiration(
        self,
        transaction_id: str,
        amount,
        method: str,
        user_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PaymentReceipt:
        """
        Start (or re-point) the payment of a transaction

        Args:
            transaction_id: Transaction to pay
            amount: Amount the client believes it is paying
            method: Payment method (manual, test)
            user_id: When set, the transaction must belong to this user
            actor_id: Recorded on the status history entry

        Returns:
            PaymentReceipt with the payment id, totals, expiry and instructions
        """
        now = now or utcnow()
        gateway = get_payment_gateway(method, self.settings)

        with unit_of_work(self.session_factory) as repos:
            transaction = repos.transactions.get(transaction_id, lock=True)
            if transaction is None or (user_id and transaction.user_id != user_id):
                raise TransactionNotFound()

            if TransactionStatus(transaction.status) not in PAYABLE_TRANSACTION_STATUSES:
                raise TransactionNotPayable(
                    f"Transaction is {transaction.status} and cannot be paid"
                )
            if transaction.expires_at is not None and transaction.expires_at < now:
                raise TransactionNotPayable("Transaction has expired")

            if not amounts_match(
                transaction.final_amount, amount, self.settings.PAYMENT_AMOUNT_TOLERANCE
            ):
                logger.warning(
                    f"Amount mismatch for transaction {transaction_id}: "
                    f"expected={transaction.final_amount}, received={amount}"
                )
                raise AmountMismatch(
                    expected=str(transaction.final_amount), received=str(amount)
                )

            fee = calculate_service_fee(
                transaction.final_amount,
                repos.payments.active_fee(method, transaction.currency),
            )
            expires_at = now + timedelta(hours=self.settings.PAYMENT_EXPIRY_HOURS)
            if transaction.expires_at is not None:
                expires_at = min(expires_at, transaction.expires_at)

            payment = transaction.payment
            if payment is not None and payment.status != PaymentStatus.PENDING.value:
                raise TransactionNotPayable(f"Payment is already {payment.status}")

            if payment is None:
                payment = Payment(
                    amount=transaction.final_amount,
                    service_fee=fee,
                    method=method,
                    status=PaymentStatus.PENDING.value,
                    expires_at=expires_at,
                    created_at=now,
                    updated_at=now,
                )
                transaction.payment = payment
                repos.payments.add(payment)
                repos.payments.append_history(
                    payment, payment.status, f"Payment created ({method})", actor_id, now
                )
                logger.info(f"Created payment {payment.id} for transaction {transaction_id}")
            else:
                payment.method = method
                payment.service_fee = fee
                payment.expires_at = expires_at
                payment.updated_at = now
                repos.payments.append_history(
                    payment, payment.status, f"Payment method changed to {method}", actor_id, now
                )
                logger.info(f"Re-pointed payment {payment.id} to method {method}")

            transaction.status = next_transaction_status(
                transaction.status, TransactionEvent.PAYMENT_CREATED
            ).value
            transaction.updated_at = now

            total = quantize(to_decimal(payment.amount) + fee)
            return PaymentReceipt(
                transaction_id=transaction.id,
                payment_id=payment.id,
                method=method,
                amount=payment.amount,
                service_fee=fee,
                total_amount=total,
                status=PaymentStatus.PENDING,
                payment_expires_at=payment.expires_at,
                transaction_expires_at=transaction.expires_at,
                transaction_type=TransactionType(transaction.type),
                item_name=_item_name(transaction),
                instructions=gateway.initiate(payment.id, transaction.id, total),
            )

    def update_status(
        self,
        payment_id: str,
        new_status: PaymentStatus,
        note: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PaymentUpdateResult:
        """
        Move a pending payment to paid, failed, cancelled or expired

        The transaction follows the payment. On ``paid`` the activation engine
        runs before this returns; an activation failure leaves the payment
        paid and is reported on ``result.activation`` for the sweeper to retry.
        """
        now = now or utcnow()
        new_status = PaymentStatus(new_status)

        with unit_of_work(self.session_factory) as repos:
            payment = repos.payments.get(payment_id, lock=True)
            if payment is None:
                raise PaymentNotFound()

            try:
                payment.status = next_payment_status(payment.status, new_status).value
                transaction = repos.transactions.get(payment.transaction_id, lock=True)
                transaction.status = next_transaction_status(
                    transaction.status, PAYMENT_STATUS_EVENTS[new_status]
                ).value
            except InvalidStatusTransition as e:
                logger.warning(f"Rejected status update for payment {payment_id}: {e}")
                raise

            payment.updated_at = now
            transaction.updated_at = now
            if new_status == PaymentStatus.PAID:
                payment.paid_at = now
            else:
                fail_pending_children(transaction)
            repos.payments.append_history(payment, payment.status, note, actor_id, now)

            logger.info(
                f"Payment {payment_id} -> {payment.status}, "
                f"transaction {transaction.id} -> {transaction.status}"
            )
            transaction_id = transaction.id
            transaction_status = TransactionStatus(transaction.status)

        activation = ActivationOutcome()
        if new_status == PaymentStatus.PAID:
            activation.attempted = True
            try:
                result = self.activation.activate(transaction_id, now=now)
                activation.success = True
                activation.action = result.action
                transaction_status = result.transaction_status
            except ActivationFailure as e:
                logger.error(f"{e}; payment {payment_id} stays paid, sweeper will retry")
                activation.error = e.reason

        return PaymentUpdateResult(
            payment=self.get_status(payment_id),
            transaction_status=transaction_status,
            activation=activation,
        )

    def expire_payments(self, now: Optional[datetime] = None) -> List[str]:
        """Expire pending payments past ``expires_at``."""
        now = now or utcnow()
        with unit_of_work(self.session_factory) as repos:
            candidates = repos.payments.find_expired_ids(now)

        expired = []
        for payment_id in candidates:
            try:
                self.update_status(payment_id, PaymentStatus.EXPIRED, "Payment expired", now=now)
                expired.append(payment_id)
            except InvalidStatusTransition:
                # Settled between the scan and the update
                continue

        if expired:
            logger.info(f"Expired {len(expired)} payment(s)")
        return expired

    def get_status(self, payment_id: str) -> PaymentRead:
        with unit_of_work(self.session_factory) as repos:
            payment = repos.payments.get(payment_id)
            if payment is None:
                raise PaymentNotFound()
            return PaymentRead.model_validate(payment)
