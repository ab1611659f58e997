"""
Payment gateway adapters

Each payment method maps to an adapter that produces the customer-facing
payment instructions. The simulated adapter also reports a confirmation
delay; the route schedules ``confirm_after_delay`` as a background task
for it, so no timing logic lives in the payment service itself.
"""

import asyncio
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from starlette.concurrency import run_in_threadpool

from config import Settings, get_settings
from models.payment import PaymentStatus, PaymentWebhookEvent
from services.errors import CheckoutError, UnsupportedPaymentMethod

logger = logging.getLogger(__name__)


class PaymentGateway:
    method = ""
    # Seconds until the gateway confirms by itself; None means an external
    # actor (admin or webhook) confirms the payment
    confirmation_delay: Optional[float] = None

    def initiate(self, payment_id: str, transaction_id: str, amount) -> Dict[str, Any]:
        raise NotImplementedError


class ManualTransferGateway(PaymentGateway):
    """Bank transfer verified by an admin"""

    method = "manual"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def initiate(self, payment_id: str, transaction_id: str, amount) -> Dict[str, Any]:
        return {
            "bank_account": {
                "bank_name": "Bank Central Asia",
                "account_number": "1234567890",
                "account_name": "PT Genfity Indonesia",
            },
            "payment_code": f"PAY_{transaction_id[-8:].upper()}",
            "amount": str(amount),
            "instructions": "Transfer exact amount to the bank account with payment code in description",
        }


class SimulatedPaymentGateway(PaymentGateway):
    """Auto-confirming gateway for staging and demos"""

    method = "test"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.confirmation_delay = self.settings.SIMULATED_PAYMENT_DELAY_SECONDS

    def initiate(self, payment_id: str, transaction_id: str, amount) -> Dict[str, Any]:
        return {
            "gateway_transaction_id": f"sim_{payment_id}",
            "amount": str(amount),
            "instructions": f"Payment will be confirmed automatically in {self.confirmation_delay:g} seconds",
        }


def get_payment_gateway(method: str, settings: Optional[Settings] = None) -> PaymentGateway:
    settings = settings or get_settings()
    if method == ManualTransferGateway.method:
        return ManualTransferGateway(settings)
    if method == SimulatedPaymentGateway.method:
        if not settings.ENABLE_SIMULATED_PAYMENTS:
            logger.warning("Simulated payment requested but simulated payments are disabled")
            raise UnsupportedPaymentMethod("Test payments are disabled")
        return SimulatedPaymentGateway(settings)
    raise UnsupportedPaymentMethod(f"Unsupported payment method: {method}")


async def confirm_after_delay(payments, payment_id: str, delay: float) -> None:
    """
    Mark a simulated payment paid after ``delay`` seconds

    Runs as a FastAPI background task. No session is open while sleeping.
    """
    await asyncio.sleep(delay)
    try:
        result = await run_in_threadpool(
            payments.update_status,
            payment_id,
            PaymentStatus.PAID,
            "Simulated payment confirmed",
            "system",
        )
    except CheckoutError as e:
        # Cancelled or expired while waiting
        logger.warning(f"Simulated confirmation skipped for payment {payment_id}: {e}")
        return
    logger.info(
        f"Simulated payment {payment_id} confirmed; "
        f"transaction status={result.transaction_status.value}"
    )


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Verify a payment webhook signature

    Args:
        payload: Raw request body (bytes)
        signature: Hex HMAC-SHA256 from the request header, optionally
            prefixed with ``sha256=``
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret:
        logger.warning("Payment webhook secret not configured, rejecting webhook")
        return False
    if not signature:
        return False

    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    is_valid = hmac.compare_digest(expected, signature)
    if not is_valid:
        logger.warning("Invalid payment webhook signature")
    return is_valid


def parse_webhook_event(event_data: Dict[str, Any]) -> PaymentWebhookEvent:
    """
    Parse a webhook body into a PaymentWebhookEvent

    Accepts both flat events and ``{"event_id": ..., "data": {...}}``
    envelopes.
    """
    if not isinstance(event_data, dict):
        raise ValueError("Webhook body must be a JSON object")
    data = event_data.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError("Webhook data must be a JSON object")
    return PaymentWebhookEvent(
        event_id=event_data.get("event_id") or event_data.get("id") or "",
        payment_id=data.get("payment_id") or event_data.get("payment_id"),
        status=data.get("status") or event_data.get("status"),
        occurred_at=event_data.get("occurred_at"),
        note=data.get("note") or event_data.get("note"),
    )
