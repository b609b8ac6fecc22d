"""
SMS delivery through the Twilio Messages REST API.
"""

import re

import httpx
import structlog

from core.domain.exceptions import DeliveryError
from core.domain.models import Channel
from core.services.dispatcher import NotificationMessage, Recipient

logger = structlog.get_logger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")


def normalize_phone_number(raw: str, default_country_code: str = "+1") -> str:
    """Strip formatting and make sure the number carries a country code."""
    digits = re.sub(r"[^\d+]", "", raw)
    if not digits.startswith("+"):
        digits = default_country_code + digits.lstrip("0")
    if not E164_PATTERN.match(digits):
        raise DeliveryError(f"invalid phone number: {raw!r}")
    return digits


class TwilioSmsProvider:
    """Sends the notification title and body as one text message."""

    channel = Channel.SMS

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not account_sid or not auth_token or not from_number:
            raise ValueError("Twilio account SID, auth token and sender number are required")
        self.url = TWILIO_MESSAGES_URL.format(sid=account_sid)
        self.from_number = from_number
        self._auth = httpx.BasicAuth(account_sid, auth_token)
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self.logger = logger.bind(component="twilio_sms_provider")

    async def send(self, recipient: Recipient, message: NotificationMessage) -> str:
        if not recipient.phone_number:
            raise DeliveryError(f"no phone number on profile for user {recipient.user_id}")
        to_number = normalize_phone_number(recipient.phone_number)

        try:
            response = await self._client.post(
                self.url,
                data={"To": to_number, "From": self.from_number, "Body": message.sms_text},
                auth=self._auth,
            )
        except httpx.HTTPError as e:
            raise DeliveryError(f"Twilio request failed: {e}") from e

        if response.status_code not in (200, 201):
            try:
                detail = response.json().get("message", "")
            except ValueError:
                detail = response.text[:200]
            raise DeliveryError(
                f"Twilio rejected message: {response.status_code} {detail}",
                provider_status=response.status_code,
            )

        body = response.json()
        self.logger.info("sms_sent", user_id=recipient.user_id, sid=body.get("sid"), status=body.get("status"))
        return body.get("sid", "")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
