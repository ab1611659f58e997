"""
Notification outbox

Services enqueue messages inside their own unit of work; ``dispatch_due``
delivers them later with exponential backoff, so a slow or failing gateway
never affects the request that produced the message.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from config import Settings, get_settings
from database.models import NotificationOutbox as OutboxMessage
from database.operations import Repositories, unit_of_work
from services.errors import NotificationDeliveryError, classify_delivery_error
from services.whatsapp_gateway import WhatsAppGatewayClient
from utils.dates import utcnow
from utils.emailing import EmailSender

logger = logging.getLogger(__name__)

CHANNEL_WHATSAPP = "whatsapp"
CHANNEL_EMAIL = "email"

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"

# How long a claimed message stays invisible to other dispatchers
CLAIM_LEASE = timedelta(minutes=5)


class NotificationOutbox:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        whatsapp: Optional[WhatsAppGatewayClient] = None,
        email: Optional[EmailSender] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.whatsapp = whatsapp or WhatsAppGatewayClient(self.settings)
        self.email = email or EmailSender(self.settings)

    @staticmethod
    def enqueue(
        repos: Repositories,
        channel: str,
        recipient: str,
        body: str,
        subject: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OutboxMessage:
        """Add a message to the outbox in the caller's unit of work."""
        now = now or utcnow()
        message = OutboxMessage(
            channel=channel,
            recipient=recipient,
            subject=subject,
            body=body,
            status=STATUS_PENDING,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
        )
        return repos.notifications.add(message)

    def backoff(self, attempts: int) -> timedelta:
        return timedelta(seconds=self.settings.NOTIFICATION_BACKOFF_SECONDS * 2 ** (attempts - 1))

    async def _deliver(self, channel: str, recipient: str, subject: Optional[str], body: str) -> None:
        if channel == CHANNEL_WHATSAPP:
            await self.whatsapp.send_text(recipient, body)
        elif channel == CHANNEL_EMAIL:
            await run_in_threadpool(self.email.send, recipient, subject or "", body)
        else:
            raise NotificationDeliveryError("config", f"Unknown channel {channel}")

    async def dispatch_due(self, now: Optional[datetime] = None, limit: int = 100) -> Dict[str, int]:
        """
        Send every message whose next attempt is due

        Returns:
            Counters: processed, sent, retried, failed
        """
        now = now or utcnow()
        with unit_of_work(self.session_factory) as repos:
            due = [
                (m.id, m.channel, m.recipient, m.subject, m.body)
                for m in repos.notifications.claim_due(now, now + CLAIM_LEASE, limit)
            ]

        report = {"processed": len(due), "sent": 0, "retried": 0, "failed": 0}

        for message_id, channel, recipient, subject, body in due:
            error = None
            try:
                await self._deliver(channel, recipient, subject, body)
            except NotificationDeliveryError as e:
                error = e
            except Exception as e:
                logger.exception(f"Unexpected error delivering notification {message_id}")
                error = NotificationDeliveryError(classify_delivery_error(e), str(e))

            with unit_of_work(self.session_factory) as repos:
                message = repos.session.get(OutboxMessage, message_id)
                message.attempts += 1
                if error is None:
                    message.status = STATUS_SENT
                    message.sent_at = now
                    message.last_error = None
                    report["sent"] += 1
                    continue

                message.last_error = error.detail or error.message
                message.error_kind = error.kind
                if error.kind == "config" or message.attempts >= self.settings.NOTIFICATION_MAX_ATTEMPTS:
                    message.status = STATUS_FAILED
                    report["failed"] += 1
                    logger.error(
                        f"Notification {message_id} failed permanently after "
                        f"{message.attempts} attempt(s): {error.kind}"
                    )
                else:
                    message.next_attempt_at = now + self.backoff(message.attempts)
                    report["retried"] += 1
                    logger.warning(
                        f"Notification {message_id} attempt {message.attempts} failed "
                        f"({error.kind}); retrying at {message.next_attempt_at}"
                    )

        if due:
            logger.info(f"Notification dispatch: {report}")
        return report
