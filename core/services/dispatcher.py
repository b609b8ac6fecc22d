"""
Notification dispatcher.

Sends an Alert or Reminder through its delivery channels and folds the
per-channel outcomes into one DeliveryResult.

Dispatch policy:
- Alerts: only HIGH severity reaches any channel; MEDIUM/LOW are store-only.
- Reminders: every channel in the reminder's `channels` set is attempted.
- Any successful channel marks the item delivered; only all-failed is a failure.

Each channel attempt is isolated and bounded by a timeout, so one slow or
broken provider never blocks the others.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

from core.domain.exceptions import DeliveryError
from core.domain.models import (
    Alert,
    Channel,
    ChannelResult,
    DeliveryResult,
    Reminder,
    ReminderType,
    RuleCategory,
    Severity,
    UserProfile,
    utcnow,
)
from core.services.result import Result

logger = structlog.get_logger(__name__)

# Primary channel first; the order only affects logging and attempt sequence.
CHANNEL_ORDER = (Channel.PUSH, Channel.SMS)


class NotificationMessage(BaseModel):
    """Channel-neutral notification content. `data` values are strings (FCM requirement)."""

    title: str
    body: str
    data: dict[str, str] = Field(default_factory=dict)

    @property
    def sms_text(self) -> str:
        return f"{self.title}\n{self.body}"


class Recipient(BaseModel):
    user_id: str
    device_token: str | None = None
    phone_number: str | None = None

    @classmethod
    def from_profile(cls, user_id: str, profile: UserProfile | None) -> "Recipient":
        if profile is None:
            return cls(user_id=user_id)
        return cls(user_id=user_id, device_token=profile.device_token, phone_number=profile.phone_number)


class ChannelProvider(Protocol):
    """
    One delivery mechanism.

    `send` returns the provider's message id and raises DeliveryError when
    the provider rejects the message or the recipient has no address for it.
    """

    channel: Channel

    async def send(self, recipient: Recipient, message: NotificationMessage) -> str: ...


ProfileLookup = Callable[[str], Awaitable[UserProfile | None]]


def _metadata(values: dict[str, Any]) -> str:
    return json.dumps({k: v for k, v in values.items() if v is not None}, default=str)


def build_alert_message(alert: Alert) -> NotificationMessage:
    data = alert.trigger_data
    if alert.category is RuleCategory.FEEDING:
        title = "🍼 Feeding Alert"
        if data.get("checked") == "daily_total_feeding":
            if data.get("is_critical"):
                body = f"⚠️ CRITICAL: Only {data.get('value', 0):g}ml fed today. Feed immediately!"
            else:
                body = (
                    f"Feeding is below minimum ({data.get('value', 0):g}ml of "
                    f"{data.get('threshold', 150):g}ml)."
                )
        else:
            body = alert.message or alert.description
    elif alert.category is RuleCategory.SLEEP:
        title = "😴 Sleep Alert"
        if "value" in data:
            body = (
                f"Only {data['value']}h of sleep logged today "
                f"(needs {data.get('threshold', 10):g}h minimum)."
            )
        else:
            body = "No sleep logged today. Please log sleep."
    elif alert.category is RuleCategory.MEDICATION:
        title = "💊 Medication Alert"
        body = alert.message or alert.description
    else:
        title = "👶 Care Alert"
        body = alert.message or alert.description or "You have a new care alert"

    return NotificationMessage(
        title=title,
        body=body,
        data={
            "type": "alert",
            "alert_id": alert.id,
            "alert_type": alert.category.value,
            "rule_id": alert.rule_id,
            "severity": alert.severity.value,
            "subject_id": alert.subject_id,
            "metadata": _metadata(data),
        },
    )


def build_reminder_message(reminder: Reminder) -> NotificationMessage:
    data = reminder.trigger_data
    if reminder.type is ReminderType.FEEDING:
        hours = float(data.get("hours_since_last", 0.0))
        title = "🍼 Feeding Reminder"
        body = f"It's been {hours:.1f}h since last feeding. Time to feed!"
    elif reminder.type is ReminderType.SLEEP:
        title = "😴 Sleep Reminder"
        total = data.get("total_sleep_hours")
        if total:
            body = f"Total sleep today: {float(total):.1f}h. Consider logging more rest."
        else:
            body = "No sleep logged today. Please log sleep."
    elif reminder.type is ReminderType.MEDICINE:
        title = "💊 Medicine Reminder"
        name = reminder.medicine_name or "medicine"
        dosage = f" {reminder.dosage}" if reminder.dosage else ""
        body = f"Time to give {name}{dosage} (scheduled: {reminder.dose_time or 'now'})."
    else:
        title = "👶 Care Reminder"
        body = reminder.message or "You have a care reminder"

    return NotificationMessage(
        title=title,
        body=body,
        data={
            "type": "reminder",
            "reminder_id": reminder.id,
            "reminder_type": reminder.type.value,
            "subject_id": reminder.subject_id,
            "metadata": _metadata(
                {
                    **data,
                    "medicine_name": reminder.medicine_name,
                    "dosage": reminder.dosage,
                    "scheduled_time": reminder.dose_time,
                }
            ),
        },
    )


class NotificationDispatcher:
    """Delivers alerts and reminders through the configured channel providers."""

    def __init__(
        self,
        providers: Iterable[ChannelProvider],
        profile_lookup: ProfileLookup,
        timeout_seconds: float = 10.0,
        alert_channels: Iterable[Channel] = CHANNEL_ORDER,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._providers: dict[Channel, ChannelProvider] = {p.channel: p for p in providers}
        self._profile_lookup = profile_lookup
        self.timeout_seconds = timeout_seconds
        self.alert_channels = frozenset(alert_channels)
        self.logger = logger.bind(component="notification_dispatcher")

    @property
    def channels(self) -> frozenset[Channel]:
        return frozenset(self._providers)

    async def send(self, item: Alert | Reminder) -> DeliveryResult:
        """
        Deliver one item. Never raises for delivery problems.

        Returns an empty DeliveryResult when nothing was attempted (non-HIGH
        alert, or a reminder with no channels).
        """
        if isinstance(item, Alert):
            if item.severity is not Severity.HIGH:
                self.logger.debug("alert_not_dispatched", alert_id=item.id, severity=item.severity.value)
                return DeliveryResult()
            channels = self.alert_channels
            message = build_alert_message(item)
            item_ref = {"alert_id": item.id}
        else:
            channels = frozenset(item.channels)
            message = build_reminder_message(item)
            item_ref = {"reminder_id": item.id}

        if not channels:
            self.logger.warning("dispatch_skipped_no_channels", **item_ref)
            return DeliveryResult()

        recipient = await self._resolve_recipient(item.owner_id)
        results: dict[Channel, ChannelResult] = {}
        for channel in CHANNEL_ORDER:
            if channel not in channels:
                continue
            attempt = await self._attempt(channel, recipient, message)
            if attempt.is_ok():
                results[channel] = ChannelResult(success=True, provider_message_id=attempt.unwrap())
            else:
                results[channel] = ChannelResult(success=False, error=str(attempt.unwrap_err()))

        delivery = DeliveryResult(results=results)
        self.logger.info(
            "item_dispatched",
            status=delivery.status.value,
            channels={c.value: r.success for c, r in results.items()},
            **item_ref,
        )
        return delivery

    async def _resolve_recipient(self, owner_id: str) -> Recipient:
        # One profile lookup per send, shared by all channels.
        try:
            profile = await self._profile_lookup(owner_id)
        except Exception as e:
            self.logger.warning("recipient_lookup_failed", owner_id=owner_id, error=str(e))
            profile = None
        return Recipient.from_profile(owner_id, profile)

    async def _attempt(
        self, channel: Channel, recipient: Recipient, message: NotificationMessage
    ) -> Result[str, Exception]:
        provider = self._providers.get(channel)
        if provider is None:
            return Result.err(DeliveryError(f"{channel.value} provider not configured"))

        started = utcnow()
        try:
            message_id = await asyncio.wait_for(
                provider.send(recipient, message), timeout=self.timeout_seconds
            )
            return Result.ok(message_id or "")
        except TimeoutError:
            self.logger.warning(
                "channel_send_timeout", channel=channel.value, timeout_seconds=self.timeout_seconds
            )
            return Result.err(DeliveryError(f"timed out after {self.timeout_seconds:g}s"))
        except DeliveryError as e:
            self.logger.warning(
                "channel_send_failed",
                channel=channel.value,
                error=str(e),
                provider_status=e.provider_status,
            )
            return Result.err(e)
        except Exception as e:
            self.logger.exception("unexpected_channel_error", channel=channel.value, error=str(e))
            return Result.err(e)
        finally:
            self.logger.debug(
                "channel_attempt_finished",
                channel=channel.value,
                elapsed_seconds=round((utcnow() - started).total_seconds(), 3),
            )
