"""
Transaction lifecycle

Creates checkout transactions from a cart and moves them through the
created/pending/expired/cancelled states. Only the activation engine moves a
transaction to success.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from database.models import (
    Transaction,
    TransactionAddon,
    TransactionProduct,
    TransactionWhatsappService,
)
from database.operations import Repositories, unit_of_work
from models.payment import PaymentStatus
from models.transaction import (
    CartItem,
    Currency,
    ItemType,
    SubTransactionStatus,
    TransactionRead,
    TransactionStatus,
    TransactionType,
)
from services.errors import InvalidCart, TransactionNotFound
from services.pricing import PricingResolver
from services.state_machine import TransactionEvent, next_payment_status, next_transaction_status
from services.vouchers import VoucherValidator
from utils.dates import utcnow
from utils.money import ZERO, quantize

logger = logging.getLogger(__name__)


def transaction_type_for(items: Sequence[CartItem]) -> TransactionType:
    has_whatsapp = any(item.type == ItemType.WHATSAPP for item in items)
    has_other = any(item.type != ItemType.WHATSAPP for item in items)
    if has_whatsapp and has_other:
        return TransactionType.MIXED_CHECKOUT
    if has_whatsapp:
        return TransactionType.WHATSAPP_SERVICE
    return TransactionType.PRODUCT


def fail_pending_children(transaction: Transaction, whatsapp_only: bool = False) -> None:
    """Mark still-pending line items of ``transaction`` as failed."""
    children = []
    if transaction.whatsapp_transaction is not None:
        children.append(transaction.whatsapp_transaction)
    if not whatsapp_only:
        children.extend(transaction.product_transactions)
        children.extend(transaction.addon_transactions)

    for child in children:
        if child.status == SubTransactionStatus.PENDING.value:
            child.status = SubTransactionStatus.FAILED.value


def close_pending_payment(
    repos: Repositories,
    transaction: Transaction,
    target: PaymentStatus,
    note: str,
    now: datetime,
) -> None:
    payment = transaction.payment
    if payment is None or payment.status != PaymentStatus.PENDING.value:
        return
    payment.status = next_payment_status(payment.status, target).value
    payment.updated_at = now
    repos.payments.append_history(payment, payment.status, note, None, now)


def is_overdue(transaction: Transaction, now: datetime) -> bool:
    return (
        transaction.status in (TransactionStatus.CREATED.value, TransactionStatus.PENDING.value)
        and transaction.expires_at is not None
        and transaction.expires_at < now
    )


class TransactionService:
    """Create, read, cancel and expire checkout transactions"""

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        pricing: Optional[PricingResolver] = None,
        vouchers: Optional[VoucherValidator] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.pricing = pricing or PricingResolver(session_factory, self.settings)
        self.vouchers = vouchers or VoucherValidator(session_factory, self.pricing)

    def create(
        self,
        user_id: str,
        items: Sequence[CartItem],
        voucher_code: Optional[str] = None,
        currency: Currency = Currency.IDR,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransactionRead:
        """
        Price a cart, apply an optional voucher and persist the transaction

        Args:
            user_id: Customer placing the order
            items: Cart lines
            voucher_code: Optional voucher to apply
            currency: idr or usd
            notes: Free text stored on the transaction

        Returns:
            Snapshot of the created transaction (status created)
        """
        now = now or utcnow()
        if not items:
            raise InvalidCart("Cart is empty")

        whatsapp_items = [item for item in items if item.type == ItemType.WHATSAPP]
        if len(whatsapp_items) > 1 or any(item.quantity != 1 for item in whatsapp_items):
            raise InvalidCart("Only one WhatsApp package with quantity 1 can be purchased per checkout")

        with unit_of_work(self.session_factory) as repos:
            cart = self.pricing.resolve_with(repos, items, currency)

            voucher_id = None
            discount = ZERO
            if voucher_code:
                voucher, breakdown = self.vouchers.apply(repos, voucher_code, cart, user_id, now)
                voucher_id = voucher.id
                discount = breakdown.discount_amount

            transaction = Transaction(
                user_id=user_id,
                type=transaction_type_for(items).value,
                status=TransactionStatus.CREATED.value,
                currency=cart.currency.value,
                original_amount=cart.subtotal,
                discount_amount=discount,
                final_amount=quantize(max(cart.subtotal - discount, ZERO)),
                voucher_id=voucher_id,
                notes=notes,
                expires_at=now + timedelta(days=self.settings.TRANSACTION_EXPIRY_DAYS),
                created_at=now,
                updated_at=now,
            )

            for line in cart.items:
                if line.type == ItemType.PRODUCT:
                    transaction.product_transactions.append(
                        TransactionProduct(
                            package_id=line.id,
                            quantity=line.quantity,
                            unit_price=line.unit_price,
                            status=SubTransactionStatus.PENDING.value,
                        )
                    )
                elif line.type == ItemType.ADDON:
                    transaction.addon_transactions.append(
                        TransactionAddon(
                            addon_id=line.id,
                            quantity=line.quantity,
                            unit_price=line.unit_price,
                            status=SubTransactionStatus.PENDING.value,
                        )
                    )
                else:
                    transaction.whatsapp_transaction = TransactionWhatsappService(
                        whatsapp_package_id=line.id,
                        duration=line.duration.value,
                        status=SubTransactionStatus.PENDING.value,
                    )

            repos.transactions.add(transaction)
            logger.info(
                f"Created transaction {transaction.id} for user {user_id}: "
                f"type={transaction.type}, original={transaction.original_amount}, "
                f"discount={transaction.discount_amount}, final={transaction.final_amount}"
            )
            return TransactionRead.model_validate(transaction)

    def get(self, transaction_id: str, user_id: Optional[str] = None) -> TransactionRead:
        with unit_of_work(self.session_factory) as repos:
            transaction = repos.transactions.get(transaction_id)
            if transaction is None or (user_id and transaction.user_id != user_id):
                raise TransactionNotFound()
            return TransactionRead.model_validate(transaction)

    def cancel(
        self,
        transaction_id: str,
        reason: str = "Cancelled by customer",
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransactionRead:
        now = now or utcnow()
        with unit_of_work(self.session_factory) as repos:
            transaction = repos.transactions.get(transaction_id, lock=True)
            if transaction is None or (user_id and transaction.user_id != user_id):
                raise TransactionNotFound()

            transaction.status = next_transaction_status(
                transaction.status, TransactionEvent.CANCEL
            ).value
            transaction.updated_at = now
            transaction.notes = f"{transaction.notes}\n{reason}" if transaction.notes else reason

            close_pending_payment(repos, transaction, PaymentStatus.CANCELLED, reason, now)
            fail_pending_children(transaction)

            logger.info(f"Cancelled transaction {transaction_id}: {reason}")
            return TransactionRead.model_validate(transaction)

    def expire(self, now: Optional[datetime] = None) -> List[str]:
        """Expire created/pending transactions past ``expires_at``."""
        now = now or utcnow()
        with unit_of_work(self.session_factory) as repos:
            candidates = repos.transactions.find_expired_ids(now)

        expired_ids = []
        for transaction_id in candidates:
            if self._expire_one(transaction_id, now):
                expired_ids.append(transaction_id)

        if expired_ids:
            logger.info(f"Expired {len(expired_ids)} transaction(s)")
        return expired_ids

    def _expire_one(self, transaction_id: str, now: datetime) -> bool:
        with unit_of_work(self.session_factory) as repos:
            # Same lock order as PaymentService.update_status: payment, then transaction
            repos.payments.lock_for_transaction(transaction_id)
            transaction = repos.transactions.get(transaction_id, lock=True)
            if transaction is None or not is_overdue(transaction, now):
                # Paid or cancelled after the scan
                return False
            transaction.status = next_transaction_status(
                transaction.status, TransactionEvent.EXPIRE
            ).value
            transaction.updated_at = now
            close_pending_payment(
                repos, transaction, PaymentStatus.EXPIRED, "Transaction expired", now
            )
            fail_pending_children(transaction)
            return True
