import uuid

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Numeric,
    Boolean,
    ForeignKey,
    Text,
    Integer,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship, DeclarativeBase

from models.payment import PaymentStatus
from models.transaction import (
    EntitlementStatus,
    SubTransactionStatus,
    TransactionStatus,
)
from utils.dates import utcnow


class Base(DeclarativeBase):
    pass


def new_id() -> str:
    return str(uuid.uuid4())


AMOUNT = Numeric(14, 2)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=True, index=True)
    phone = Column(String(32), unique=True, nullable=False, index=True)
    phone_verified_at = Column(DateTime, nullable=True)
    otp = Column(String(6), nullable=True)
    otp_expires = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# Catalog


class Package(Base):
    __tablename__ = "packages"

    id = Column(String(36), primary_key=True, default=new_id)
    name_en = Column(String(255), nullable=False)
    name_id = Column(String(255), nullable=False)
    price_idr = Column(AMOUNT, nullable=False)
    price_usd = Column(AMOUNT, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Addon(Base):
    __tablename__ = "addons"

    id = Column(String(36), primary_key=True, default=new_id)
    name_en = Column(String(255), nullable=False)
    name_id = Column(String(255), nullable=False)
    price_idr = Column(AMOUNT, nullable=False)
    price_usd = Column(AMOUNT, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class WhatsappApiPackage(Base):
    __tablename__ = "whatsapp_api_packages"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    max_session = Column(Integer, nullable=False, default=1)
    # IDR only
    price_month = Column(AMOUNT, nullable=False)
    price_year = Column(AMOUNT, nullable=False)
    created_at = Column(DateTime, default=utcnow)


# Vouchers


class Voucher(Base):
    __tablename__ = "vouchers"

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    # Calculation kind and scope; legacy rows may hold them swapped
    type = Column(String(32), nullable=False)
    discount_type = Column(String(32), nullable=False)
    value = Column(AMOUNT, nullable=False)
    min_amount = Column(AMOUNT, nullable=True)
    max_discount = Column(AMOUNT, nullable=True)
    max_uses = Column(Integer, nullable=True)
    allow_multiple_use_per_user = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    start_date = Column(DateTime, nullable=False, default=utcnow)
    end_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    usages = relationship(
        "VoucherUsage", back_populates="voucher", cascade="all, delete-orphan"
    )


class VoucherUsage(Base):
    __tablename__ = "voucher_usages"

    id = Column(String(36), primary_key=True, default=new_id)
    voucher_id = Column(
        String(36),
        ForeignKey("vouchers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String(36), nullable=False, index=True)
    transaction_id = Column(
        String(36), ForeignKey("transactions.id"), unique=True, nullable=False
    )
    discount_amount = Column(AMOUNT, nullable=False)
    used_at = Column(DateTime, default=utcnow)

    voucher = relationship("Voucher", back_populates="usages")


# Transactions


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    status = Column(
        String(32), default=TransactionStatus.CREATED.value, nullable=False, index=True
    )
    currency = Column(String(3), default="idr", nullable=False)
    original_amount = Column(AMOUNT, nullable=False)
    discount_amount = Column(AMOUNT, nullable=False, default=0)
    final_amount = Column(AMOUNT, nullable=False)
    voucher_id = Column(String(36), ForeignKey("vouchers.id"), nullable=True)
    notes = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    voucher = relationship("Voucher")
    product_transactions = relationship(
        "TransactionProduct", back_populates="transaction", cascade="all, delete-orphan"
    )
    addon_transactions = relationship(
        "TransactionAddon", back_populates="transaction", cascade="all, delete-orphan"
    )
    whatsapp_transaction = relationship(
        "TransactionWhatsappService",
        back_populates="transaction",
        uselist=False,
        cascade="all, delete-orphan",
    )
    payment = relationship(
        "Payment", back_populates="transaction", uselist=False, cascade="all, delete-orphan"
    )


class TransactionProduct(Base):
    __tablename__ = "transaction_products"

    id = Column(String(36), primary_key=True, default=new_id)
    transaction_id = Column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    package_id = Column(String(36), ForeignKey("packages.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(AMOUNT, nullable=False)
    status = Column(String(32), default=SubTransactionStatus.PENDING.value)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    transaction = relationship("Transaction", back_populates="product_transactions")
    package = relationship("Package")


class TransactionAddon(Base):
    __tablename__ = "transaction_addons"

    id = Column(String(36), primary_key=True, default=new_id)
    transaction_id = Column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    addon_id = Column(String(36), ForeignKey("addons.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(AMOUNT, nullable=False)
    status = Column(String(32), default=SubTransactionStatus.PENDING.value)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    transaction = relationship("Transaction", back_populates="addon_transactions")
    addon = relationship("Addon")


class TransactionWhatsappService(Base):
    __tablename__ = "transaction_whatsapp_services"

    id = Column(String(36), primary_key=True, default=new_id)
    transaction_id = Column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    whatsapp_package_id = Column(
        String(36), ForeignKey("whatsapp_api_packages.id"), nullable=False, index=True
    )
    duration = Column(String(8), nullable=False)
    status = Column(String(32), default=SubTransactionStatus.PENDING.value, index=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    transaction = relationship("Transaction", back_populates="whatsapp_transaction")
    whatsapp_package = relationship("WhatsappApiPackage")


# Payments


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    transaction_id = Column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    amount = Column(AMOUNT, nullable=False)
    service_fee = Column(AMOUNT, nullable=False, default=0)
    method = Column(String(64), nullable=False)
    status = Column(
        String(32), default=PaymentStatus.PENDING.value, nullable=False, index=True
    )
    expires_at = Column(DateTime, nullable=True, index=True)
    paid_at = Column(DateTime, nullable=True)
    external_reference = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    transaction = relationship("Transaction", back_populates="payment")
    status_history = relationship(
        "PaymentStatusHistory",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentStatusHistory.id",
    )


class PaymentStatusHistory(Base):
    __tablename__ = "payment_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(
        String(36),
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(String(32), nullable=False)
    note = Column(Text, nullable=True)
    actor_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    payment = relationship("Payment", back_populates="status_history")


class ServiceFee(Base):
    __tablename__ = "service_fees"
    __table_args__ = (UniqueConstraint("payment_method", "currency"),)

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    payment_method = Column(String(64), nullable=False)
    currency = Column(String(3), nullable=False)
    type = Column(String(32), nullable=False)
    value = Column(AMOUNT, nullable=False)
    min_fee = Column(AMOUNT, nullable=True)
    max_fee = Column(AMOUNT, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


# Entitlements


class ServicesWhatsappCustomers(Base):
    __tablename__ = "services_whatsapp_customers"
    __table_args__ = (UniqueConstraint("customer_id", "package_id"),)

    id = Column(String(36), primary_key=True, default=new_id)
    customer_id = Column(String(36), nullable=False, index=True)
    package_id = Column(
        String(36), ForeignKey("whatsapp_api_packages.id"), nullable=False
    )
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=True)
    expired_at = Column(DateTime, nullable=False)
    status = Column(String(32), default=EntitlementStatus.ACTIVE.value)
    activated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    package = relationship("WhatsappApiPackage")


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"

    id = Column(String(36), primary_key=True, default=new_id)
    channel = Column(String(16), nullable=False)
    recipient = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=True)
    body = Column(Text, nullable=False)
    status = Column(String(16), default="pending", nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime, default=utcnow, index=True)
    last_error = Column(Text, nullable=True)
    error_kind = Column(String(16), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    sent_at = Column(DateTime, nullable=True)
