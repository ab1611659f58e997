"""
WhatsApp gateway client

Outbound text messages through the external WhatsApp server, used for OTP
delivery and order notifications.
"""

import logging
import re
from typing import Any, Dict, Optional

import httpx

from config import Settings, get_settings
from services.errors import NotificationDeliveryError, classify_delivery_error

logger = logging.getLogger(__name__)


def normalize_phone(phone: str) -> str:
    """Digits only, Indonesian numbers in 62... form."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("0"):
        return "62" + digits[1:]
    if not digits.startswith("62"):
        return "62" + digits
    return digits


class WhatsAppGatewayClient:
    """WhatsApp server API client"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.WHATSAPP_SERVER_API.rstrip("/")
        self.user_token = self.settings.WHATSAPP_USER_TOKEN
        self.transport = transport

    def is_configured(self) -> bool:
        return bool(self.base_url and self.user_token)

    def _get_headers(self) -> Dict[str, str]:
        return {
            "token": self.user_token,
            "Content-Type": "application/json",
        }

    async def send_text(self, phone: str, body: str) -> Dict[str, Any]:
        """
        Send a text message

        Args:
            phone: Recipient number in any local or international form
            body: Message text

        Returns:
            Decoded gateway response (empty dict when it has no JSON body)

        Raises:
            NotificationDeliveryError: kind is timeout, network, auth, config or unknown
        """
        if not self.is_configured():
            logger.error("WhatsApp gateway not configured")
            raise NotificationDeliveryError("config", "WhatsApp user token not configured")

        formatted_phone = normalize_phone(phone)
        payload = {"Phone": formatted_phone, "Body": body}

        async with httpx.AsyncClient(
            timeout=self.settings.WHATSAPP_TIMEOUT_SECONDS, transport=self.transport
        ) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/chat/send/text",
                    headers=self._get_headers(),
                    json=payload,
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error(
                    f"WhatsApp gateway error: {e.response.status_code} - {e.response.text}"
                )
                raise NotificationDeliveryError(classify_delivery_error(e), e.response.text) from e
            except httpx.HTTPError as e:
                kind = classify_delivery_error(e)
                logger.error(f"WhatsApp gateway {kind} error sending to {formatted_phone}: {e}")
                raise NotificationDeliveryError(kind, str(e)) from e

        logger.info(f"WhatsApp message sent to {formatted_phone}")
        try:
            return response.json()
        except ValueError:
            return {}
