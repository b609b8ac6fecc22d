"""
Push delivery through the Firebase Cloud Messaging HTTP v1 API.
"""

import httpx
import structlog

from core.domain.exceptions import DeliveryError
from core.domain.models import Channel
from core.services.dispatcher import NotificationMessage, Recipient

logger = structlog.get_logger(__name__)

FCM_ENDPOINT = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"


class FcmPushProvider:
    """Sends one notification per call to the recipient's registered device token."""

    channel = Channel.PUSH

    def __init__(
        self,
        project_id: str,
        access_token: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not project_id or not access_token:
            raise ValueError("FCM project id and access token are required")
        self.url = FCM_ENDPOINT.format(project_id=project_id)
        self._access_token = access_token
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self.logger = logger.bind(component="fcm_push_provider")

    def build_payload(self, token: str, message: NotificationMessage) -> dict:
        return {
            "message": {
                "token": token,
                "notification": {"title": message.title, "body": message.body},
                "data": message.data,
                "android": {"priority": "high"},
                "apns": {"headers": {"apns-priority": "10"}},
            }
        }

    async def send(self, recipient: Recipient, message: NotificationMessage) -> str:
        if not recipient.device_token:
            raise DeliveryError(f"no device token registered for user {recipient.user_id}")

        try:
            response = await self._client.post(
                self.url,
                json=self.build_payload(recipient.device_token, message),
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
        except httpx.HTTPError as e:
            raise DeliveryError(f"FCM request failed: {e}") from e

        if response.status_code != 200:
            raise DeliveryError(
                f"FCM rejected message: {response.status_code} {response.text[:200]}",
                provider_status=response.status_code,
            )

        name = response.json().get("name", "")
        self.logger.info("push_sent", user_id=recipient.user_id, message_name=name)
        return name

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
