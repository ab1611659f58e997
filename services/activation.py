"""
Activation engine

The only writer of WhatsApp entitlements. Runs when a payment is confirmed
(and again from the sweeper for anything the synchronous path missed):

- WhatsApp lines extend an unexpired entitlement from its current expiry,
  otherwise start a fresh period from now.
- Product lines get start/end dates stamped, addon lines are marked success.
- The transaction moves to success, voucher usage is recorded once and the
  customer notification is queued, all in the same database transaction.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from database.models import Transaction, TransactionWhatsappService
from database.operations import Repositories, unit_of_work
from models.payment import PaymentStatus
from models.transaction import (
    ActivationResult,
    SubTransactionStatus,
    TransactionStatus,
)
from services.errors import (
    ActivationFailure,
    InvalidStatusTransition,
    TransactionNotFound,
)
from services.notifications import CHANNEL_EMAIL, CHANNEL_WHATSAPP, NotificationOutbox
from services.state_machine import TransactionEvent, next_transaction_status
from utils.dates import add_duration, add_years, utcnow
from utils.emailing import render_template

logger = logging.getLogger(__name__)

ACTION_CREATED = "created"
ACTION_EXTENDED = "extended"
ACTION_RENEWED = "renewed"
ACTION_ACTIVATED = "activated"
ACTION_ALREADY_ACTIVE = "already_active"


class ActivationEngine:
    def __init__(self, session_factory: sessionmaker, settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    def activate(self, transaction_id: str, now: Optional[datetime] = None) -> ActivationResult:
        """
        Activate everything a paid transaction bought

        Args:
            transaction_id: Transaction whose payment is paid
            now: Activation time (defaults to the current UTC time)

        Returns:
            ActivationResult; replays on a successful transaction return
            ``already_active`` without touching the entitlement

        Raises:
            TransactionNotFound, InvalidStatusTransition: nothing was changed
            ActivationFailure: the activation was rolled back and the
                WhatsApp line marked failed for the sweeper to retry
        """
        now = now or utcnow()
        try:
            with unit_of_work(self.session_factory) as repos:
                return self._activate(repos, transaction_id, now)
        except (TransactionNotFound, InvalidStatusTransition):
            raise
        except Exception as e:
            logger.exception(f"Activation failed for transaction {transaction_id}")
            self._mark_failed(transaction_id)
            raise ActivationFailure(transaction_id, str(e)) from e

    def _activate(self, repos: Repositories, transaction_id: str, now: datetime) -> ActivationResult:
        transaction = repos.transactions.get(transaction_id, lock=True)
        if transaction is None:
            raise TransactionNotFound()

        line = transaction.whatsapp_transaction
        if line is not None:
            line = repos.transactions.lock_whatsapp_line(line.id)

        if transaction.status == TransactionStatus.SUCCESS.value:
            logger.info(f"Transaction {transaction_id} already activated, skipping")
            return ActivationResult(
                transaction_id=transaction.id,
                transaction_status=TransactionStatus.SUCCESS,
                action=ACTION_ALREADY_ACTIVE,
                whatsapp_package_id=line.whatsapp_package_id if line else None,
                expired_at=line.end_date if line else None,
            )

        payment = transaction.payment
        if (
            transaction.status != TransactionStatus.IN_PROGRESS.value
            or payment is None
            or payment.status != PaymentStatus.PAID.value
        ):
            logger.warning(
                f"Refusing to activate transaction {transaction_id}: "
                f"status={transaction.status}, payment={payment.status if payment else None}"
            )
            raise InvalidStatusTransition(
                transaction.status, TransactionEvent.ACTIVATED.value, entity="transaction"
            )

        action = ACTION_ACTIVATED
        expired_at = None
        if line is not None:
            if line.status == SubTransactionStatus.SUCCESS.value:
                action = ACTION_ALREADY_ACTIVE
                expired_at = line.end_date
            else:
                action, expired_at = self._activate_whatsapp(repos, transaction, line, now)

        product_end = add_years(now, self.settings.PRODUCT_TERM_YEARS)
        for product in transaction.product_transactions:
            if product.status != SubTransactionStatus.SUCCESS.value:
                product.status = SubTransactionStatus.SUCCESS.value
                product.start_date = now
                product.end_date = product_end
        for addon in transaction.addon_transactions:
            if addon.status != SubTransactionStatus.SUCCESS.value:
                addon.status = SubTransactionStatus.SUCCESS.value
                addon.start_date = now

        transaction.status = next_transaction_status(
            transaction.status, TransactionEvent.ACTIVATED
        ).value
        transaction.updated_at = now

        self._record_voucher_usage(repos, transaction, now)
        self._queue_notifications(repos, transaction, line, now)

        logger.info(
            f"Activated transaction {transaction.id} ({transaction.type}): action={action}"
            + (f", expires {expired_at}" if expired_at else "")
        )
        return ActivationResult(
            transaction_id=transaction.id,
            transaction_status=TransactionStatus.SUCCESS,
            action=action,
            whatsapp_package_id=line.whatsapp_package_id if line else None,
            expired_at=expired_at,
        )

    def _activate_whatsapp(
        self,
        repos: Repositories,
        transaction: Transaction,
        line: TransactionWhatsappService,
        now: datetime,
    ) -> Tuple[str, datetime]:
        existing = repos.entitlements.find(
            transaction.user_id, line.whatsapp_package_id, lock=True
        )

        if existing is not None and existing.expired_at > now:
            # Extend from the current expiry, not from now
            new_expiry = add_duration(existing.expired_at, line.duration)
            action = ACTION_EXTENDED
        else:
            new_expiry = add_duration(now, line.duration)
            action = ACTION_RENEWED if existing is not None else ACTION_CREATED

        repos.entitlements.upsert(
            customer_id=transaction.user_id,
            package_id=line.whatsapp_package_id,
            transaction_id=transaction.id,
            expired_at=new_expiry,
            activated_at=now,
            existing=existing,
        )
        line.status = SubTransactionStatus.SUCCESS.value
        line.start_date = now
        line.end_date = new_expiry
        line.updated_at = now
        return action, new_expiry

    def _record_voucher_usage(self, repos: Repositories, transaction: Transaction, now: datetime) -> None:
        if not transaction.voucher_id:
            return
        if repos.vouchers.usage_for_transaction(transaction.id) is not None:
            return
        repos.vouchers.record_usage(
            voucher_id=transaction.voucher_id,
            user_id=transaction.user_id,
            transaction_id=transaction.id,
            discount_amount=transaction.discount_amount,
            used_at=now,
        )

    def _queue_notifications(
        self,
        repos: Repositories,
        transaction: Transaction,
        line: Optional[TransactionWhatsappService],
        now: datetime,
    ) -> None:
        user = repos.users.get(transaction.user_id)
        if user is None:
            logger.debug(f"No user record for {transaction.user_id}, skipping notifications")
            return

        lines: List[dict] = []
        if line is not None:
            lines.append({"name": line.whatsapp_package.name, "expires_at": line.end_date})
        use_local_names = transaction.currency == "idr"
        for product in transaction.product_transactions:
            name = product.package.name_id if use_local_names else product.package.name_en
            lines.append({"name": name, "expires_at": product.end_date})
        for addon in transaction.addon_transactions:
            name = addon.addon.name_id if use_local_names else addon.addon.name_en
            lines.append({"name": name, "expires_at": None})

        context = {
            "name": user.name,
            "transaction_id": transaction.id,
            "lines": lines,
            "currency": transaction.currency,
            "amount": transaction.final_amount,
        }
        if user.phone:
            NotificationOutbox.enqueue(
                repos,
                CHANNEL_WHATSAPP,
                user.phone,
                render_template("activation_message.txt", **context),
                now=now,
            )
        if user.email:
            NotificationOutbox.enqueue(
                repos,
                CHANNEL_EMAIL,
                user.email,
                render_template("activation_email.html", **context),
                subject=f"{self.settings.APP_NAME}: your order is active",
                now=now,
            )

    def _mark_failed(self, transaction_id: str) -> None:
        """Mark pending WhatsApp lines failed after a rolled-back activation."""
        try:
            with unit_of_work(self.session_factory) as repos:
                transaction = repos.transactions.get(transaction_id)
                line = transaction.whatsapp_transaction if transaction else None
                if line is not None and line.status == SubTransactionStatus.PENDING.value:
                    line.status = SubTransactionStatus.FAILED.value
        except Exception:
            logger.exception(f"Could not mark WhatsApp line failed for transaction {transaction_id}")

    def active_subscription(self, user_id: str, now: Optional[datetime] = None):
        """Latest unexpired WhatsApp entitlement of a user, or None."""
        now = now or utcnow()
        with unit_of_work(self.session_factory) as repos:
            entitlement = repos.entitlements.find_active(user_id, now)
            if entitlement is None:
                return None
            return {
                "package_id": entitlement.package_id,
                "package_name": entitlement.package.name,
                "expired_at": entitlement.expired_at,
                "status": entitlement.status,
                "transaction_id": entitlement.transaction_id,
            }
