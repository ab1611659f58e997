"""
Shared route dependencies

Services are built per request from the cached session factory; tests swap
``get_session_factory`` / ``get_app_settings`` through
``app.dependency_overrides``.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from database.session import get_session_factory
from services.accounts import AccountService
from services.activation import ActivationEngine
from services.notifications import NotificationOutbox
from services.payments import PaymentService
from services.sweeper import ActivationSweeper, ExpirationSweeper
from services.transactions import TransactionService
from services.vouchers import VoucherValidator
from services.whatsapp_gateway import WhatsAppGatewayClient

logger = logging.getLogger(__name__)


def get_app_settings() -> Settings:
    return get_settings()


def get_whatsapp_client(settings: Settings = Depends(get_app_settings)) -> WhatsAppGatewayClient:
    return WhatsAppGatewayClient(settings)


def get_voucher_validator(
    factory: sessionmaker = Depends(get_session_factory),
) -> VoucherValidator:
    return VoucherValidator(factory)


def get_transaction_service(
    factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> TransactionService:
    return TransactionService(factory, settings)


def get_activation_engine(
    factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> ActivationEngine:
    return ActivationEngine(factory, settings)


def get_payment_service(
    factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
    activation: ActivationEngine = Depends(get_activation_engine),
) -> PaymentService:
    return PaymentService(factory, settings, activation)


def get_activation_sweeper(
    factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
    activation: ActivationEngine = Depends(get_activation_engine),
) -> ActivationSweeper:
    return ActivationSweeper(factory, activation, settings)


def get_expiration_sweeper(
    payments: PaymentService = Depends(get_payment_service),
    transactions: TransactionService = Depends(get_transaction_service),
) -> ExpirationSweeper:
    return ExpirationSweeper(payments, transactions)


def get_notification_outbox(
    factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
    whatsapp: WhatsAppGatewayClient = Depends(get_whatsapp_client),
) -> NotificationOutbox:
    return NotificationOutbox(factory, settings, whatsapp)


def get_account_service(
    factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
    whatsapp: WhatsAppGatewayClient = Depends(get_whatsapp_client),
) -> AccountService:
    return AccountService(factory, settings, whatsapp)


def _check_bearer(authorization: Optional[str], expected: str, label: str) -> None:
    if not expected:
        logger.error(f"{label} key not configured; rejecting request")
        raise HTTPException(status_code=401, detail=f"Unauthorized. Valid {label} API key required.")
    supplied = (authorization or "").strip()
    if not hmac.compare_digest(supplied, f"Bearer {expected}"):
        logger.warning(f"Rejected {label} request with invalid credentials")
        raise HTTPException(status_code=401, detail=f"Unauthorized. Valid {label} API key required.")


def require_cron_key(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    _check_bearer(authorization, settings.CRON_API_KEY, "cron")


def require_admin_key(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    _check_bearer(authorization, settings.ADMIN_API_KEY, "admin")
