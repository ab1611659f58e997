"""
Checkout error taxonomy

Every business-rule rejection raised by the services derives from
``CheckoutError`` and carries a stable ``code`` the frontend can map to a
precise message, plus the HTTP status the routes should answer with.
"""

import smtplib
import socket
from typing import Any, Dict, Optional

import httpx


class CheckoutError(Exception):
    code = "CHECKOUT_ERROR"
    status_code = 400
    message = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, "error": self.code}


# Catalog / cart


class ItemNotFound(CheckoutError):
    code = "ITEM_NOT_FOUND"
    status_code = 404
    message = "Item not found"


class MissingDuration(CheckoutError):
    code = "MISSING_DURATION"
    message = "Duration is required for WhatsApp packages"


class InvalidCart(CheckoutError):
    code = "INVALID_CART"
    message = "Cart contents are not valid"


# Vouchers


class VoucherError(CheckoutError):
    """Base for voucher rejections"""


class VoucherNotFound(VoucherError):
    code = "VOUCHER_NOT_FOUND"
    status_code = 404
    message = "Invalid voucher code"


class VoucherInactive(VoucherError):
    code = "VOUCHER_INACTIVE"
    message = "Voucher is not active"


class VoucherNotYetValid(VoucherError):
    code = "VOUCHER_NOT_YET_VALID"
    message = "Voucher is not yet valid"


class VoucherExpired(VoucherError):
    code = "VOUCHER_EXPIRED"
    message = "Voucher has expired"


class UsageLimitReached(VoucherError):
    code = "USAGE_LIMIT_REACHED"
    message = "Voucher usage limit reached"


class AlreadyUsed(VoucherError):
    code = "ALREADY_USED"
    message = "You have already used this voucher"


class BelowMinimum(VoucherError):
    code = "BELOW_MINIMUM"
    message = "Order amount is below the voucher minimum"


class InvalidVoucherDefinition(VoucherError):
    code = "INVALID_VOUCHER"
    message = "Voucher definition is not valid"


# Transactions / payments


class TransactionNotFound(CheckoutError):
    code = "TRANSACTION_NOT_FOUND"
    status_code = 404
    message = "Transaction not found"


class TransactionNotPayable(CheckoutError):
    code = "TRANSACTION_NOT_PAYABLE"
    message = "Transaction is not eligible for payment"


class PaymentNotFound(CheckoutError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404
    message = "Payment not found"


class AmountMismatch(CheckoutError):
    code = "AMOUNT_MISMATCH"
    message = "Payment amount does not match the transaction total"


class UnsupportedPaymentMethod(CheckoutError):
    code = "UNSUPPORTED_PAYMENT_METHOD"
    message = "Payment method is not supported"


class InvalidStatusTransition(CheckoutError):
    code = "INVALID_STATUS_TRANSITION"
    status_code = 409
    message = "Request could not be processed"

    def __init__(self, current: str, target: str, entity: str = "transaction"):
        super().__init__(current=current, target=target, entity=entity)
        self.current = current
        self.target = target
        self.entity = entity

    def __str__(self) -> str:
        return f"Invalid {self.entity} status transition from {self.current} via {self.target}"


class ActivationFailure(CheckoutError):
    code = "ACTIVATION_FAILED"
    status_code = 500
    message = "Service activation failed and has been queued for retry"

    def __init__(self, transaction_id: str, reason: str):
        super().__init__(transaction_id=transaction_id, reason=reason)
        self.transaction_id = transaction_id
        self.reason = reason

    def __str__(self) -> str:
        return f"Activation failed for transaction {self.transaction_id}: {self.reason}"


# Notifications / accounts


DELIVERY_ERROR_MESSAGES = {
    "timeout": ("WHATSAPP_TIMEOUT", "Connection to WhatsApp server timed out."),
    "network": (
        "WHATSAPP_NETWORK_ERROR",
        "Unable to connect to WhatsApp server. Please try again later.",
    ),
    "auth": (
        "WHATSAPP_AUTH_ERROR",
        "WhatsApp service is under maintenance. Please try again later.",
    ),
    "config": (
        "WHATSAPP_CONFIG_ERROR",
        "WhatsApp configuration is invalid. Please contact the administrator.",
    ),
    "unknown": (
        "WHATSAPP_OTP_FAILED",
        "Failed to send OTP to WhatsApp. Please try again or check your number.",
    ),
}


class NotificationDeliveryError(CheckoutError):
    """Outbound email/WhatsApp delivery failed

    ``kind`` is one of timeout, network, auth, config, unknown.
    """

    status_code = 503

    def __init__(self, kind: str, detail: str = ""):
        if kind not in DELIVERY_ERROR_MESSAGES:
            kind = "unknown"
        code, message = DELIVERY_ERROR_MESSAGES[kind]
        super().__init__(message, kind=kind, detail=detail)
        self.kind = kind
        self.code = code
        self.detail = detail


class AccountExists(CheckoutError):
    code = "ACCOUNT_EXISTS"
    status_code = 409
    message = "Phone number or email already registered"


class InvalidOtp(CheckoutError):
    code = "INVALID_OTP"
    message = "OTP is invalid or has expired"


def classify_delivery_error(exc: BaseException) -> str:
    """Map a WhatsApp/SMTP exception to timeout, network, auth, config or unknown."""
    if isinstance(exc, NotificationDeliveryError):
        return exc.kind
    if isinstance(exc, (httpx.TimeoutException, socket.timeout, TimeoutError)):
        return "timeout"
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in (401, 403):
            return "auth"
        return "unknown"
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return "auth"
    if isinstance(
        exc,
        (
            httpx.TransportError,
            smtplib.SMTPConnectError,
            smtplib.SMTPServerDisconnected,
            ConnectionError,
        ),
    ):
        return "network"
    return "unknown"
