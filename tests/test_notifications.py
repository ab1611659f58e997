"""
WhatsApp gateway client, delivery error classification and the outbox
"""

import json
import smtplib
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from conftest import NOW, RecordingTransport
from database.models import NotificationOutbox as OutboxMessage
from database.operations import unit_of_work
from services.errors import NotificationDeliveryError, classify_delivery_error
from services.notifications import (
    CHANNEL_EMAIL,
    CHANNEL_WHATSAPP,
    CLAIM_LEASE,
    NotificationOutbox,
)
from services.whatsapp_gateway import WhatsAppGatewayClient, normalize_phone


def failing_transport(exc_type):
    def handler(request):
        raise exc_type("boom", request=request)

    return RecordingTransport(handler)


def status_transport(status_code):
    return RecordingTransport(lambda request: httpx.Response(status_code, text="denied"))


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("081234567890", "6281234567890"),
            ("+62 812-3456-7890", "6281234567890"),
            ("6281234567890", "6281234567890"),
            ("81234567890", "6281234567890"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_phone(raw) == expected


class TestWhatsAppGatewayClient:
    @pytest.mark.asyncio
    async def test_send_text(self, whatsapp, wa_transport):
        response = await whatsapp.send_text("0812-3456-7890", "hello")

        assert response == {"code": 200, "success": True}
        request = wa_transport.requests[0]
        assert str(request.url) == "https://wa.test/chat/send/text"
        assert request.headers["token"] == "wa-token"
        assert json.loads(request.content) == {"Phone": "6281234567890", "Body": "hello"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "transport, kind, code",
        [
            (lambda: status_transport(401), "auth", "WHATSAPP_AUTH_ERROR"),
            (lambda: status_transport(500), "unknown", "WHATSAPP_OTP_FAILED"),
            (lambda: failing_transport(httpx.ReadTimeout), "timeout", "WHATSAPP_TIMEOUT"),
            (lambda: failing_transport(httpx.ConnectError), "network", "WHATSAPP_NETWORK_ERROR"),
        ],
    )
    async def test_error_kinds(self, settings, transport, kind, code):
        client = WhatsAppGatewayClient(settings, transport=transport())

        with pytest.raises(NotificationDeliveryError) as exc_info:
            await client.send_text("081234567890", "hello")

        assert exc_info.value.kind == kind
        assert exc_info.value.code == code
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_not_configured(self, settings, wa_transport):
        client = WhatsAppGatewayClient(
            settings.model_copy(update={"WHATSAPP_USER_TOKEN": ""}), transport=wa_transport
        )

        with pytest.raises(NotificationDeliveryError) as exc_info:
            await client.send_text("081234567890", "hello")

        assert exc_info.value.kind == "config"
        assert wa_transport.requests == []


class TestClassifyDeliveryError:
    def test_smtp_errors(self):
        assert classify_delivery_error(smtplib.SMTPAuthenticationError(535, b"bad login")) == "auth"
        assert classify_delivery_error(smtplib.SMTPServerDisconnected("gone")) == "network"
        assert classify_delivery_error(TimeoutError()) == "timeout"
        assert classify_delivery_error(ValueError("?")) == "unknown"


@pytest.fixture
def outbox(session_factory, settings, whatsapp, email_sender):
    return NotificationOutbox(session_factory, settings, whatsapp, email_sender)


def enqueue(session_factory, channel=CHANNEL_WHATSAPP, recipient="081234567890", subject=None):
    with unit_of_work(session_factory) as repos:
        message = NotificationOutbox.enqueue(
            repos, channel, recipient, "Your order is active", subject=subject, now=NOW
        )
    return message.id


def load(session_factory, message_id):
    with unit_of_work(session_factory) as repos:
        return repos.session.scalars(
            select(OutboxMessage).where(OutboxMessage.id == message_id)
        ).one()


class TestNotificationOutbox:
    @pytest.mark.asyncio
    async def test_sends_due_messages(self, outbox, session_factory, wa_transport, email_sender):
        whatsapp_id = enqueue(session_factory)
        email_id = enqueue(session_factory, CHANNEL_EMAIL, "budi@example.com", subject="Order active")

        report = await outbox.dispatch_due(NOW)

        assert report == {"processed": 2, "sent": 2, "retried": 0, "failed": 0}
        assert len(wa_transport.requests) == 1
        assert email_sender.sent == [
            {"to": "budi@example.com", "subject": "Order active", "html": "Your order is active"}
        ]
        assert load(session_factory, whatsapp_id).status == "sent"
        assert load(session_factory, email_id).sent_at == NOW

    @pytest.mark.asyncio
    async def test_failures_back_off(self, session_factory, settings, email_sender):
        outbox = NotificationOutbox(
            session_factory,
            settings,
            WhatsAppGatewayClient(settings, transport=failing_transport(httpx.ConnectError)),
            email_sender,
        )
        message_id = enqueue(session_factory)

        first = await outbox.dispatch_due(NOW)
        message = load(session_factory, message_id)
        assert first["retried"] == 1
        assert message.attempts == 1
        assert message.error_kind == "network"
        assert message.next_attempt_at == NOW + timedelta(seconds=60)

        # Not due yet
        assert (await outbox.dispatch_due(NOW + timedelta(seconds=30)))["processed"] == 0

        later = NOW + timedelta(seconds=60)
        await outbox.dispatch_due(later)
        assert load(session_factory, message_id).next_attempt_at == later + timedelta(seconds=120)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, session_factory, settings, email_sender):
        limited = settings.model_copy(update={"NOTIFICATION_MAX_ATTEMPTS": 2})
        outbox = NotificationOutbox(
            session_factory,
            limited,
            WhatsAppGatewayClient(limited, transport=failing_transport(httpx.ReadTimeout)),
            email_sender,
        )
        message_id = enqueue(session_factory)

        await outbox.dispatch_due(NOW)
        report = await outbox.dispatch_due(NOW + timedelta(hours=1))

        assert report["failed"] == 1
        message = load(session_factory, message_id)
        assert message.status == "failed"
        assert message.attempts == 2
        assert message.error_kind == "timeout"

    @pytest.mark.asyncio
    async def test_config_errors_fail_immediately(self, session_factory, settings, email_sender):
        unconfigured = settings.model_copy(update={"WHATSAPP_USER_TOKEN": ""})
        outbox = NotificationOutbox(
            session_factory, unconfigured, WhatsAppGatewayClient(unconfigured), email_sender
        )
        message_id = enqueue(session_factory)

        report = await outbox.dispatch_due(NOW)

        assert report["failed"] == 1
        assert load(session_factory, message_id).error_kind == "config"

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_classified(self, session_factory, settings, whatsapp):
        class BrokenSender:
            def send(self, to_addr, subject, html, text=None):
                raise smtplib.SMTPServerDisconnected("connection closed")

        outbox = NotificationOutbox(session_factory, settings, whatsapp, BrokenSender())
        message_id = enqueue(session_factory, CHANNEL_EMAIL, "budi@example.com", subject="Hi")

        report = await outbox.dispatch_due(NOW)

        assert report["retried"] == 1
        assert load(session_factory, message_id).error_kind == "network"

    @pytest.mark.asyncio
    async def test_claimed_messages_are_not_sent_twice(self, outbox, session_factory, wa_transport):
        message_id = enqueue(session_factory)

        # Another dispatcher has already picked the message up
        with unit_of_work(session_factory) as repos:
            claimed = repos.notifications.claim_due(NOW, NOW + CLAIM_LEASE)
            assert [m.id for m in claimed] == [message_id]

        report = await outbox.dispatch_due(NOW + timedelta(seconds=10))

        assert report["processed"] == 0
        assert wa_transport.requests == []

        # Still pending once the lease runs out, so a crashed dispatcher loses nothing
        report = await outbox.dispatch_due(NOW + CLAIM_LEASE)

        assert report["sent"] == 1
        assert load(session_factory, message_id).status == "sent"
