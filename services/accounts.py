"""
Customer registration with WhatsApp OTP verification
"""

import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from database.models import User
from database.operations import unit_of_work
from services.errors import AccountExists, InvalidOtp, NotificationDeliveryError
from services.whatsapp_gateway import WhatsAppGatewayClient, normalize_phone
from utils.dates import utcnow
from utils.emailing import render_template

logger = logging.getLogger(__name__)


def generate_otp() -> str:
    return f"{secrets.randbelow(10 ** 6):06d}"


class AccountService:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        whatsapp: Optional[WhatsAppGatewayClient] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.whatsapp = whatsapp or WhatsAppGatewayClient(self.settings)

    async def register(
        self,
        name: str,
        phone: str,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Create an unverified account and send its OTP over WhatsApp

        The OTP is sent after the account is committed. If delivery fails the
        account is deleted again and the delivery error propagates.

        Returns:
            The new user id
        """
        now = now or utcnow()
        phone = normalize_phone(phone)
        otp = generate_otp()

        with unit_of_work(self.session_factory) as repos:
            if repos.users.exists(phone, email):
                raise AccountExists()
            user = repos.users.add(
                User(
                    name=name,
                    phone=phone,
                    email=email,
                    otp=otp,
                    otp_expires=now + timedelta(minutes=self.settings.OTP_TTL_MINUTES),
                    created_at=now,
                    updated_at=now,
                )
            )
            user_id = user.id

        message = render_template(
            "otp_message.txt",
            name=name,
            otp=otp,
            ttl_minutes=self.settings.OTP_TTL_MINUTES,
        )
        try:
            await self.whatsapp.send_text(phone, message)
        except NotificationDeliveryError as e:
            logger.error(f"OTP delivery to {phone} failed ({e.kind}); removing account {user_id}")
            with unit_of_work(self.session_factory) as repos:
                repos.users.delete(user_id)
            raise

        logger.info(f"Registered user {user_id}, OTP sent to {phone}")
        return user_id

    def verify_otp(self, phone: str, otp: str, now: Optional[datetime] = None) -> str:
        now = now or utcnow()
        with unit_of_work(self.session_factory) as repos:
            user = repos.users.find_by_phone(normalize_phone(phone))
            if (
                user is None
                or not user.otp
                or not hmac.compare_digest(user.otp, otp)
                or (user.otp_expires is not None and user.otp_expires < now)
            ):
                raise InvalidOtp()

            user.phone_verified_at = now
            user.otp = None
            user.otp_expires = None
            user.updated_at = now
            logger.info(f"Phone verified for user {user.id}")
            return user.id

    def delete_unverified(self, now: Optional[datetime] = None) -> int:
        """Remove accounts whose OTP expired before the phone was verified."""
        now = now or utcnow()
        with unit_of_work(self.session_factory) as repos:
            deleted = repos.users.delete_unverified(now)
        if deleted:
            logger.info(f"Deleted {deleted} unverified account(s)")
        return deleted
