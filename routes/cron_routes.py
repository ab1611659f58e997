"""
Cron routes

Called by an external scheduler with ``Authorization: Bearer <CRON_API_KEY>``.
Every job here is safe to run repeatedly.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from routes.deps import (
    get_account_service,
    get_activation_sweeper,
    get_expiration_sweeper,
    get_notification_outbox,
    require_cron_key,
)
from services.accounts import AccountService
from services.notifications import NotificationOutbox
from services.sweeper import ActivationSweeper, ExpirationSweeper

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/public/cron",
    tags=["cron"],
    dependencies=[Depends(require_cron_key)],
)


@router.post("/activate-subscriptions")
def activate_subscriptions(sweeper: ActivationSweeper = Depends(get_activation_sweeper)):
    try:
        logger.info("Starting subscription activation job...")
        return sweeper.run().to_response()
    except Exception as e:
        logger.exception(f"Activation job failed: {str(e)}")
        raise HTTPException(status_code=500, detail="Activation job failed")


@router.get("/activate-subscriptions")
def activation_stats(sweeper: ActivationSweeper = Depends(get_activation_sweeper)):
    return {"success": True, "stats": sweeper.stats()}


@router.post("/expire-payments")
def expire_payments(sweeper: ExpirationSweeper = Depends(get_expiration_sweeper)):
    try:
        result = sweeper.run()
    except Exception as e:
        logger.exception(f"Expiration job failed: {str(e)}")
        raise HTTPException(status_code=500, detail="Expiration job failed")

    return {
        "success": True,
        "summary": {
            "expiredPayments": len(result["expired_payments"]),
            "expiredTransactions": len(result["expired_transactions"]),
        },
        "results": result,
    }


@router.post("/delete-unverified")
def delete_unverified(accounts: AccountService = Depends(get_account_service)):
    deleted = accounts.delete_unverified()
    return {"success": True, "deleted": deleted}


@router.post("/dispatch-notifications")
async def dispatch_notifications(outbox: NotificationOutbox = Depends(get_notification_outbox)):
    report = await outbox.dispatch_due()
    return {"success": True, "summary": report}
