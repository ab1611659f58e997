"""
Customer checkout routes
Handles voucher checks, transaction creation, lookup and cancellation
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from models.transaction import CancelTransactionRequest, CheckoutRequest, TransactionResponse
from models.voucher import VoucherCheckRequest, VoucherCheckResponse
from routes.deps import get_activation_engine, get_transaction_service, get_voucher_validator
from services.activation import ActivationEngine
from services.errors import CheckoutError
from services.transactions import TransactionService
from services.vouchers import VoucherValidator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/customer", tags=["checkout"])


@router.post("/check-voucher", response_model=VoucherCheckResponse)
def check_voucher(
    request: VoucherCheckRequest,
    vouchers: VoucherValidator = Depends(get_voucher_validator),
):
    """
    Check a voucher against a cart

    Works without a user id; per-user usage limits are only checked when
    ``user_id`` is supplied.
    """
    try:
        return vouchers.check(request.code, request.items, request.currency, request.user_id)
    except CheckoutError:
        raise
    except Exception as e:
        logger.exception(f"Error checking voucher {request.code}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to check voucher")


@router.post("/checkout", response_model=TransactionResponse)
def create_transaction(
    request: CheckoutRequest,
    transactions: TransactionService = Depends(get_transaction_service),
):
    try:
        logger.info(f"Creating transaction for user_id: {request.user_id}")
        transaction = transactions.create(
            user_id=request.user_id,
            items=request.items,
            voucher_code=request.voucher_code,
            currency=request.currency,
            notes=request.notes,
        )
        return TransactionResponse(
            success=True, transaction=transaction, message="Transaction created"
        )
    except CheckoutError:
        raise
    except Exception as e:
        logger.exception(f"Error creating transaction: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to create transaction")


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: str,
    user_id: Optional[str] = Query(None),
    transactions: TransactionService = Depends(get_transaction_service),
):
    transaction = transactions.get(transaction_id, user_id=user_id)
    return TransactionResponse(success=True, transaction=transaction)


@router.post("/transactions/{transaction_id}/cancel", response_model=TransactionResponse)
def cancel_transaction(
    transaction_id: str,
    request: CancelTransactionRequest,
    transactions: TransactionService = Depends(get_transaction_service),
):
    try:
        transaction = transactions.cancel(
            transaction_id, reason=request.reason, user_id=request.user_id
        )
        return TransactionResponse(
            success=True, transaction=transaction, message="Transaction cancelled"
        )
    except CheckoutError:
        raise
    except Exception as e:
        logger.exception(f"Error cancelling transaction {transaction_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to cancel transaction")


@router.get("/whatsapp/subscription")
def get_whatsapp_subscription(
    user_id: str = Query(..., min_length=1),
    activation: ActivationEngine = Depends(get_activation_engine),
):
    """Current WhatsApp subscription of a customer, or null when none is active"""
    return {"success": True, "subscription": activation.active_subscription(user_id)}
