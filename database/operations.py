"""
Database operations for checkout, payments and entitlements

Each repository wraps one SQLAlchemy ``Session`` and exposes the narrow set
of queries the services need. ``unit_of_work`` opens a session inside a
database transaction and hands out all repositories bound to it, so every
multi-row mutation commits or rolls back as one.
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, List, Optional, Sequence

from sqlalchemy import and_, delete, func, select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from database.models import (
    Addon,
    NotificationOutbox,
    Package,
    Payment,
    PaymentStatusHistory,
    ServiceFee,
    ServicesWhatsappCustomers,
    Transaction,
    TransactionWhatsappService,
    User,
    Voucher,
    VoucherUsage,
    WhatsappApiPackage,
)
from models.payment import PaymentStatus
from models.transaction import SubTransactionStatus, TransactionStatus, TransactionType


class CatalogRepository:
    """Read-only catalog lookups"""

    def __init__(self, session: Session):
        self.session = session

    def get_package(self, package_id: str) -> Optional[Package]:
        return self.session.get(Package, package_id)

    def get_addon(self, addon_id: str) -> Optional[Addon]:
        return self.session.get(Addon, addon_id)

    def get_whatsapp_package(self, package_id: str) -> Optional[WhatsappApiPackage]:
        return self.session.get(WhatsappApiPackage, package_id)


class VoucherRepository:
    def __init__(self, session: Session):
        self.session = session

    def find_by_code(self, code: str) -> Optional[Voucher]:
        return self.session.scalars(select(Voucher).where(Voucher.code == code)).first()

    def get(self, voucher_id: str) -> Optional[Voucher]:
        return self.session.get(Voucher, voucher_id)

    def add(self, voucher: Voucher) -> Voucher:
        self.session.add(voucher)
        self.session.flush()
        return voucher

    def list_all(self) -> List[Voucher]:
        return list(self.session.scalars(select(Voucher)))

    def usage_count(self, voucher_id: str) -> int:
        return self.session.scalar(
            select(func.count(VoucherUsage.id)).where(VoucherUsage.voucher_id == voucher_id)
        )

    def user_usage_count(self, voucher_id: str, user_id: str) -> int:
        return self.session.scalar(
            select(func.count(VoucherUsage.id)).where(
                VoucherUsage.voucher_id == voucher_id,
                VoucherUsage.user_id == user_id,
            )
        )

    def total_discount(self, voucher_id: str) -> Decimal:
        total = self.session.scalar(
            select(func.sum(VoucherUsage.discount_amount)).where(
                VoucherUsage.voucher_id == voucher_id
            )
        )
        return Decimal(str(total)) if total is not None else Decimal("0")

    def usage_for_transaction(self, transaction_id: str) -> Optional[VoucherUsage]:
        return self.session.scalars(
            select(VoucherUsage).where(VoucherUsage.transaction_id == transaction_id)
        ).first()

    def record_usage(
        self,
        voucher_id: str,
        user_id: str,
        transaction_id: str,
        discount_amount: Decimal,
        used_at: datetime,
    ) -> VoucherUsage:
        usage = VoucherUsage(
            voucher_id=voucher_id,
            user_id=user_id,
            transaction_id=transaction_id,
            discount_amount=discount_amount,
            used_at=used_at,
        )
        self.session.add(usage)
        return usage


class TransactionRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, transaction: Transaction) -> Transaction:
        self.session.add(transaction)
        self.session.flush()
        return transaction

    def get(self, transaction_id: str, lock: bool = False) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .options(
                selectinload(Transaction.product_transactions),
                selectinload(Transaction.addon_transactions),
                selectinload(Transaction.whatsapp_transaction),
                selectinload(Transaction.payment),
            )
        )
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def lock_whatsapp_line(self, line_id: str) -> Optional[TransactionWhatsappService]:
        """Re-read a WhatsApp line under a row lock (no-op on SQLite)."""
        return self.session.scalars(
            select(TransactionWhatsappService)
            .where(TransactionWhatsappService.id == line_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()

    def find_expired_ids(self, now: datetime) -> List[str]:
        return list(
            self.session.scalars(
                select(Transaction.id).where(
                    Transaction.status.in_(
                        [TransactionStatus.CREATED.value, TransactionStatus.PENDING.value]
                    ),
                    Transaction.expires_at.is_not(None),
                    Transaction.expires_at < now,
                )
            )
        )

    def find_unactivated_paid(self) -> List[Transaction]:
        """Paid WhatsApp-bearing transactions whose WhatsApp line is not success."""
        stmt = (
            select(Transaction)
            .join(Transaction.payment)
            .join(Transaction.whatsapp_transaction)
            .where(
                Transaction.type.in_(
                    [
                        TransactionType.WHATSAPP_SERVICE.value,
                        TransactionType.MIXED_CHECKOUT.value,
                    ]
                ),
                Transaction.status == TransactionStatus.IN_PROGRESS.value,
                Payment.status == PaymentStatus.PAID.value,
                TransactionWhatsappService.status != SubTransactionStatus.SUCCESS.value,
            )
            .order_by(Payment.paid_at.desc())
        )
        return list(self.session.scalars(stmt))

    def has_more_recent_paid(
        self, user_id: str, package_id: str, paid_after: Optional[datetime], exclude_id: str
    ) -> bool:
        if paid_after is None:
            return False
        stmt = (
            select(func.count(Transaction.id))
            .join(Transaction.payment)
            .join(Transaction.whatsapp_transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.id != exclude_id,
                Transaction.status.in_(
                    [TransactionStatus.IN_PROGRESS.value, TransactionStatus.SUCCESS.value]
                ),
                Payment.status == PaymentStatus.PAID.value,
                Payment.paid_at > paid_after,
                TransactionWhatsappService.whatsapp_package_id == package_id,
            )
        )
        return self.session.scalar(stmt) > 0

    def count_by_status(self, status: str, types: Sequence[str]) -> int:
        return self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.status == status, Transaction.type.in_(list(types))
            )
        )


class PaymentRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, payment_id: str, lock: bool = False) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.id == payment_id)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def lock_for_transaction(self, transaction_id: str) -> Optional[Payment]:
        return self.session.scalars(
            select(Payment).where(Payment.transaction_id == transaction_id).with_for_update()
        ).first()

    def add(self, payment: Payment) -> Payment:
        self.session.add(payment)
        self.session.flush()
        return payment

    def append_history(
        self, payment: Payment, status: str, note: Optional[str], actor_id: Optional[str], at: datetime
    ) -> PaymentStatusHistory:
        entry = PaymentStatusHistory(
            status=status, note=note, actor_id=actor_id, created_at=at
        )
        payment.status_history.append(entry)
        return entry

    def find_expired_ids(self, now: datetime) -> List[str]:
        return list(
            self.session.scalars(
                select(Payment.id).where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.expires_at.is_not(None),
                    Payment.expires_at < now,
                )
            )
        )

    def active_fee(self, method: str, currency: str) -> Optional[ServiceFee]:
        return self.session.scalars(
            select(ServiceFee).where(
                ServiceFee.payment_method == method,
                ServiceFee.currency == currency,
                ServiceFee.is_active.is_(True),
            )
        ).first()


class EntitlementRepository:
    """Only the activation engine writes through this repository"""

    def __init__(self, session: Session):
        self.session = session

    def find(self, customer_id: str, package_id: str, lock: bool = False) -> Optional[ServicesWhatsappCustomers]:
        stmt = select(ServicesWhatsappCustomers).where(
            ServicesWhatsappCustomers.customer_id == customer_id,
            ServicesWhatsappCustomers.package_id == package_id,
        )
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def upsert(
        self,
        customer_id: str,
        package_id: str,
        transaction_id: str,
        expired_at: datetime,
        activated_at: datetime,
        existing: Optional[ServicesWhatsappCustomers] = None,
    ) -> ServicesWhatsappCustomers:
        entitlement = existing or self.find(customer_id, package_id)
        if entitlement is None:
            entitlement = ServicesWhatsappCustomers(
                customer_id=customer_id,
                package_id=package_id,
            )
            self.session.add(entitlement)
        entitlement.transaction_id = transaction_id
        entitlement.expired_at = expired_at
        entitlement.status = "active"
        entitlement.activated_at = activated_at
        return entitlement

    def find_active(self, customer_id: str, now: datetime) -> Optional[ServicesWhatsappCustomers]:
        return self.session.scalars(
            select(ServicesWhatsappCustomers)
            .where(
                ServicesWhatsappCustomers.customer_id == customer_id,
                ServicesWhatsappCustomers.status == "active",
                ServicesWhatsappCustomers.expired_at > now,
            )
            .order_by(ServicesWhatsappCustomers.expired_at.desc())
        ).first()

    def count_active(self, now: datetime) -> int:
        return self.session.scalar(
            select(func.count(ServicesWhatsappCustomers.id)).where(
                ServicesWhatsappCustomers.expired_at > now
            )
        )

    def count_activated_since(self, since: datetime) -> int:
        return self.session.scalar(
            select(func.count(ServicesWhatsappCustomers.id)).where(
                ServicesWhatsappCustomers.activated_at >= since
            )
        )


class UserRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: str) -> Optional[User]:
        return self.session.get(User, user_id)

    def find_by_phone(self, phone: str) -> Optional[User]:
        return self.session.scalars(select(User).where(User.phone == phone)).first()

    def exists(self, phone: str, email: Optional[str]) -> bool:
        condition = User.phone == phone
        if email:
            condition = condition | (User.email == email)
        return self.session.scalar(select(func.count(User.id)).where(condition)) > 0

    def add(self, user: User) -> User:
        self.session.add(user)
        self.session.flush()
        return user

    def delete(self, user_id: str) -> None:
        self.session.execute(delete(User).where(User.id == user_id))

    def delete_unverified(self, now: datetime) -> int:
        result = self.session.execute(
            delete(User).where(
                and_(
                    User.phone_verified_at.is_(None),
                    User.otp_expires.is_not(None),
                    User.otp_expires < now,
                )
            )
        )
        return result.rowcount or 0


class NotificationRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, notification: NotificationOutbox) -> NotificationOutbox:
        self.session.add(notification)
        return notification

    def claim_due(self, now: datetime, lease_until: datetime, limit: int = 100) -> List[NotificationOutbox]:
        """Lock due messages and push them out of reach of other dispatchers until ``lease_until``."""
        messages = list(
            self.session.scalars(
                select(NotificationOutbox)
                .where(
                    NotificationOutbox.status == "pending",
                    NotificationOutbox.next_attempt_at <= now,
                )
                .order_by(NotificationOutbox.created_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
        )
        for message in messages:
            message.next_attempt_at = lease_until
        return messages


class Repositories:
    """All repositories bound to one session"""

    def __init__(self, session: Session):
        self.session = session
        self.catalog = CatalogRepository(session)
        self.vouchers = VoucherRepository(session)
        self.transactions = TransactionRepository(session)
        self.payments = PaymentRepository(session)
        self.entitlements = EntitlementRepository(session)
        self.users = UserRepository(session)
        self.notifications = NotificationRepository(session)


@contextmanager
def unit_of_work(session_factory: sessionmaker) -> Iterator[Repositories]:
    """Commit on success, roll back on any exception."""
    with session_factory.begin() as session:
        yield Repositories(session)
