"""Provider that only logs, used when no real credentials are configured (demo, local dev)."""

import itertools

import structlog

from core.domain.exceptions import DeliveryError
from core.domain.models import Channel
from core.services.dispatcher import NotificationMessage, Recipient

logger = structlog.get_logger(__name__)


class LoggingProvider:
    def __init__(self, channel: Channel) -> None:
        self.channel = channel
        self.sent: list[tuple[Recipient, NotificationMessage]] = []
        self._ids = itertools.count(1)
        self.logger = logger.bind(component="logging_provider", channel=channel.value)

    async def send(self, recipient: Recipient, message: NotificationMessage) -> str:
        address = recipient.device_token if self.channel is Channel.PUSH else recipient.phone_number
        if not address:
            raise DeliveryError(f"no {self.channel.value} address for user {recipient.user_id}")
        self.sent.append((recipient, message))
        message_id = f"{self.channel.value}-{next(self._ids)}"
        self.logger.info("notification_logged", user_id=recipient.user_id, title=message.title, message_id=message_id)
        return message_id
