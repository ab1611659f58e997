"""
Shared fixtures: an in-memory SQLite database with a small catalog and the
services wired to it.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from database.models import (
    Addon,
    Base,
    Package,
    Payment,
    ServiceFee,
    User,
    Voucher,
    WhatsappApiPackage,
)
from database.operations import unit_of_work
from database.session import build_session_factory
from models.payment import PaymentStatus
from models.transaction import TransactionStatus
from services.activation import ActivationEngine
from services.payments import PaymentService
from services.pricing import PricingResolver
from services.transactions import TransactionService
from services.vouchers import VoucherValidator
from services.whatsapp_gateway import WhatsAppGatewayClient

# 2025 is not a leap year, so +1 year is always +365 days
NOW = datetime(2025, 3, 10, 12, 0, 0)

USER_ID = "user-1"


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        CRON_API_KEY="cron-secret",
        ADMIN_API_KEY="admin-secret",
        PAYMENT_WEBHOOK_SECRET="webhook-secret",
        ENABLE_SIMULATED_PAYMENTS=True,
        SIMULATED_PAYMENT_DELAY_SECONDS=0,
        WHATSAPP_SERVER_API="https://wa.test",
        WHATSAPP_USER_TOKEN="wa-token",
        SMTP_HOST="smtp.test",
        MAIL_FROM="noreply@genfity.test",
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def catalog(session_factory):
    with unit_of_work(session_factory) as repos:
        repos.session.add_all(
            [
                Package(
                    id="pkg-pro",
                    name_en="Pro Website",
                    name_id="Website Pro",
                    price_idr=Decimal("300000"),
                    price_usd=Decimal("20"),
                ),
                Package(
                    id="pkg-mini",
                    name_en="Mini Website",
                    name_id="Website Mini",
                    price_idr=Decimal("60000"),
                    price_usd=Decimal("4"),
                ),
                Addon(
                    id="addon-seo",
                    name_en="SEO Boost",
                    name_id="Optimasi SEO",
                    price_idr=Decimal("100000"),
                    price_usd=Decimal("7"),
                ),
                WhatsappApiPackage(
                    id="wa-starter",
                    name="WhatsApp Starter",
                    max_session=1,
                    price_month=Decimal("150000"),
                    price_year=Decimal("1500000"),
                ),
                User(
                    id=USER_ID,
                    name="Budi",
                    phone="6281234567890",
                    email="budi@example.com",
                    phone_verified_at=NOW - timedelta(days=30),
                ),
                ServiceFee(
                    name="Manual transfer fee",
                    payment_method="manual",
                    currency="idr",
                    type="fixed_amount",
                    value=Decimal("4000"),
                    is_active=True,
                ),
            ]
        )


@pytest.fixture
def make_voucher(session_factory):
    def _make(code="SAVE10", **overrides):
        fields = dict(
            code=code,
            name=f"Voucher {code}",
            type="percentage",
            discount_type="total",
            value=Decimal("10"),
            is_active=True,
            allow_multiple_use_per_user=False,
            start_date=NOW - timedelta(days=30),
            end_date=NOW + timedelta(days=30),
        )
        fields.update(overrides)
        with unit_of_work(session_factory) as repos:
            voucher = repos.vouchers.add(Voucher(**fields))
            return voucher.id

    return _make


@pytest.fixture
def pricing(session_factory, settings):
    return PricingResolver(session_factory, settings)


@pytest.fixture
def vouchers(session_factory, pricing):
    return VoucherValidator(session_factory, pricing)


@pytest.fixture
def transactions(session_factory, settings, pricing, vouchers):
    return TransactionService(session_factory, settings, pricing, vouchers)


@pytest.fixture
def activation(session_factory, settings):
    return ActivationEngine(session_factory, settings)


@pytest.fixture
def payments(session_factory, settings, activation):
    return PaymentService(session_factory, settings, activation)


@pytest.fixture
def mark_paid(session_factory):
    """Put a transaction in the paid-but-not-activated state directly."""

    def _mark(transaction_id, paid_at=NOW):
        with unit_of_work(session_factory) as repos:
            transaction = repos.transactions.get(transaction_id)
            if transaction.payment is None:
                transaction.payment = Payment(
                    amount=transaction.final_amount,
                    service_fee=Decimal("0"),
                    method="manual",
                    status=PaymentStatus.PENDING.value,
                    created_at=paid_at,
                )
            transaction.payment.status = PaymentStatus.PAID.value
            transaction.payment.paid_at = paid_at
            transaction.status = TransactionStatus.IN_PROGRESS.value

    return _mark


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served"""

    def __init__(self, handler=None):
        self.requests = []

        def _handle(request):
            self.requests.append(request)
            if handler is not None:
                return handler(request)
            return httpx.Response(200, json={"code": 200, "success": True})

        super().__init__(_handle)


@pytest.fixture
def wa_transport():
    return RecordingTransport()


@pytest.fixture
def whatsapp(settings, wa_transport):
    return WhatsAppGatewayClient(settings, transport=wa_transport)


class StubEmailSender:
    def __init__(self):
        self.sent = []

    def send(self, to_addr, subject, html, text=None):
        self.sent.append({"to": to_addr, "subject": subject, "html": html})


@pytest.fixture
def email_sender():
    return StubEmailSender()
