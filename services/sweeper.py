"""
Scheduled sweeps

``ActivationSweeper`` re-runs activation for paid WhatsApp orders the
synchronous path missed (failed activation, lost webhook). It is safe to run
repeatedly and concurrently: activation itself is idempotent.
``ExpirationSweeper`` expires overdue payments and transactions.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from database.operations import unit_of_work
from models.transaction import SweepItemResult, SweepReport, TransactionStatus, TransactionType
from services.activation import ActivationEngine
from services.errors import CheckoutError
from services.payments import PaymentService
from services.transactions import TransactionService
from utils.dates import utcnow

logger = logging.getLogger(__name__)

WHATSAPP_TRANSACTION_TYPES = (
    TransactionType.WHATSAPP_SERVICE.value,
    TransactionType.MIXED_CHECKOUT.value,
)


class ActivationSweeper:
    def __init__(
        self,
        session_factory: sessionmaker,
        engine: Optional[ActivationEngine] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.engine = engine or ActivationEngine(session_factory, self.settings)

    def _candidates(self) -> List[dict]:
        with unit_of_work(self.session_factory) as repos:
            return [
                {
                    "transaction_id": t.id,
                    "user_id": t.user_id,
                    "package_id": t.whatsapp_transaction.whatsapp_package_id,
                    "package_name": t.whatsapp_transaction.whatsapp_package.name,
                    "paid_at": t.payment.paid_at,
                }
                for t in repos.transactions.find_unactivated_paid()
            ]

    def _is_superseded(self, candidate: dict, now: datetime) -> bool:
        """Active entitlement plus a more recently paid order for the same package."""
        with unit_of_work(self.session_factory) as repos:
            entitlement = repos.entitlements.find(candidate["user_id"], candidate["package_id"])
            if entitlement is None or entitlement.expired_at <= now:
                return False
            return repos.transactions.has_more_recent_paid(
                candidate["user_id"],
                candidate["package_id"],
                candidate["paid_at"],
                exclude_id=candidate["transaction_id"],
            )

    def run(self, now: Optional[datetime] = None) -> SweepReport:
        started = time.monotonic()
        now = now or utcnow()
        candidates = self._candidates()
        logger.info(f"Activation sweep: {len(candidates)} paid WhatsApp transaction(s) pending activation")

        report = SweepReport(total_transactions=len(candidates))
        results: List[SweepItemResult] = []

        for candidate in candidates:
            item = SweepItemResult(
                transaction_id=candidate["transaction_id"],
                user_id=candidate["user_id"],
                package_id=candidate["package_id"],
                package_name=candidate["package_name"],
                outcome="skipped",
            )
            try:
                if self._is_superseded(candidate, now):
                    logger.info(
                        f"Skipping transaction {candidate['transaction_id']}: "
                        f"superseded by a more recent paid transaction"
                    )
                    report.skipped += 1
                    item.error = "Superseded by a more recent paid transaction"
                else:
                    result = self.engine.activate(candidate["transaction_id"], now=now)
                    item.outcome = "activated"
                    item.action = result.action
                    item.expired_at = result.expired_at
                    report.activated += 1
            except CheckoutError as e:
                report.errors += 1
                item.outcome = "error"
                item.error = str(e)
                logger.error(f"Activation sweep error for {candidate['transaction_id']}: {e}")
            results.append(item)

        report.results = results[: self.settings.SWEEPER_RESULT_LIMIT]
        report.duration = f"{int((time.monotonic() - started) * 1000)}ms"
        logger.info(
            f"Activation sweep done in {report.duration}: activated={report.activated}, "
            f"skipped={report.skipped}, errors={report.errors}"
        )
        return report

    def stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        with unit_of_work(self.session_factory) as repos:
            paid = sum(
                repos.transactions.count_by_status(status, WHATSAPP_TRANSACTION_TYPES)
                for status in (TransactionStatus.IN_PROGRESS.value, TransactionStatus.SUCCESS.value)
            )
            return {
                "totalPaidTransactions": paid,
                "activeSubscriptions": repos.entitlements.count_active(now),
                "recentActivations24h": repos.entitlements.count_activated_since(
                    now - timedelta(hours=24)
                ),
            }


class ExpirationSweeper:
    """Expire overdue payments first, then overdue transactions"""

    def __init__(self, payments: PaymentService, transactions: TransactionService):
        self.payments = payments
        self.transactions = transactions

    def run(self, now: Optional[datetime] = None) -> Dict[str, List[str]]:
        now = now or utcnow()
        expired_payments = self.payments.expire_payments(now)
        expired_transactions = self.transactions.expire(now)
        return {
            "expired_payments": expired_payments,
            "expired_transactions": expired_transactions,
        }
