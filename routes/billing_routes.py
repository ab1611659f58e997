"""
Payment routes
Handles payment creation, status lookup, admin status updates and the
payment provider webhook
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from config import Settings
from models.payment import (
    PaymentUpdateResult,
    ProcessPaymentRequest,
    UpdatePaymentStatusRequest,
)
from routes.deps import get_app_settings, get_payment_service, require_admin_key
from services.errors import CheckoutError
from services.payment_gateway import (
    confirm_after_delay,
    get_payment_gateway,
    parse_webhook_event,
    verify_webhook_signature,
)
from services.payments import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

SIGNATURE_HEADER = "x-payment-signature"


@router.post("/process")
def process_payment(
    request: ProcessPaymentRequest,
    background_tasks: BackgroundTasks,
    payments: PaymentService = Depends(get_payment_service),
    settings: Settings = Depends(get_app_settings),
):
    """
    Create the payment for a transaction

    The amount must match the transaction total. Simulated payments are
    confirmed automatically after a short delay.
    """
    try:
        receipt = payments.create_with_expiration(
            transaction_id=request.transaction_id,
            amount=request.amount,
            method=request.method,
            user_id=request.user_id,
            actor_id=request.user_id,
        )
    except CheckoutError:
        raise
    except Exception as e:
        logger.exception(f"Error processing payment: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to process payment")

    gateway = get_payment_gateway(request.method, settings)
    if gateway.confirmation_delay is not None:
        background_tasks.add_task(
            confirm_after_delay, payments, receipt.payment_id, gateway.confirmation_delay
        )

    return {
        "success": True,
        "message": "Payment created",
        "data": receipt.model_dump(mode="json"),
    }


@router.get("/status/{payment_id}")
def payment_status(
    payment_id: str,
    payments: PaymentService = Depends(get_payment_service),
):
    payment = payments.get_status(payment_id)
    return {"success": True, "data": payment.model_dump(mode="json")}


@router.post(
    "/{payment_id}/update-status",
    response_model=PaymentUpdateResult,
    dependencies=[Depends(require_admin_key)],
)
def update_payment_status(
    payment_id: str,
    request: UpdatePaymentStatusRequest,
    payments: PaymentService = Depends(get_payment_service),
):
    try:
        return payments.update_status(
            payment_id, request.status, note=request.note, actor_id=request.actor_id
        )
    except CheckoutError:
        raise
    except Exception as e:
        logger.exception(f"Error updating payment {payment_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to update payment status")


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    payments: PaymentService = Depends(get_payment_service),
    settings: Settings = Depends(get_app_settings),
):
    # Get raw body for signature verification
    body = await request.body()

    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not signature:
        logger.warning("Webhook received without signature")
        raise HTTPException(status_code=401, detail="Missing signature")

    if not verify_webhook_signature(body, signature, settings.PAYMENT_WEBHOOK_SECRET):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = parse_webhook_event(await request.json())
    except (ValueError, ValidationError) as e:
        logger.warning(f"Malformed payment webhook: {e}")
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    logger.info(
        f"Received payment webhook: event_id={event.event_id}, "
        f"payment_id={event.payment_id}, status={event.status.value}"
    )

    current = await run_in_threadpool(payments.get_status, event.payment_id)
    if current.status == event.status:
        # Redelivery of an event we already applied
        return {"status": "success", "duplicate": True}

    result = await run_in_threadpool(
        payments.update_status,
        event.payment_id,
        event.status,
        event.note or f"Webhook {event.event_id}",
        "webhook",
    )
    return {
        "status": "success",
        "transaction_status": result.transaction_status.value,
        "activation": result.activation.model_dump(),
    }
