"""
Tests for NotificationDispatcher in `core/services/dispatcher.py`.

Covers:
- HIGH-only alert dispatch
- Any-success aggregation across push and SMS
- Per-channel timeouts and isolation
- Missing providers and recipient lookups
- Message builders
- The Result type the per-channel attempt is expressed with
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from core.domain.exceptions import DeliveryError, TransientStoreError
from core.domain.models import (
    Alert,
    Channel,
    Reminder,
    ReminderStatus,
    ReminderType,
    RuleCategory,
    Severity,
    UserProfile,
)
from core.services.dispatcher import NotificationDispatcher, build_alert_message, build_reminder_message
from core.services.result import Result

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)


def _alert(severity: Severity, **fields) -> Alert:
    return Alert(
        id="alert-1",
        subject_id="subject-1",
        owner_id="owner-1",
        rule_id="low_daily_feeding_total",
        category=RuleCategory.FEEDING,
        severity=severity,
        title="Low Daily Feeding Total Alert",
        description="",
        **fields,
    )


def _reminder(channels: set[Channel] | None = None, **fields) -> Reminder:
    return Reminder(
        id="reminder-1",
        subject_id="subject-1",
        owner_id="owner-1",
        type=fields.pop("type", ReminderType.MEDICINE),
        medicine_name="Vitamin D",
        dosage="400 IU",
        dose_time="08:00",
        scheduled_for=NOW,
        next_trigger_at=NOW,
        channels=channels if channels is not None else {Channel.PUSH, Channel.SMS},
        **fields,
    )


@pytest.fixture
def dispatcher(store, push_provider, sms_provider) -> NotificationDispatcher:
    return NotificationDispatcher([push_provider, sms_provider], store.get_profile, timeout_seconds=0.2)


class TestResult:
    def test_ok_and_err(self) -> None:
        ok: Result[str, Exception] = Result.ok("msg-1")
        err: Result[str, Exception] = Result.err(ValueError("down"))

        assert ok.is_ok() and ok.unwrap() == "msg-1"
        assert err.is_err() and isinstance(err.unwrap_err(), ValueError)
        assert err.unwrap_or("fallback") == "fallback"

    def test_unwrap_raises_on_error_result(self) -> None:
        with pytest.raises(ValueError, match="down"):
            Result.err(ValueError("down")).unwrap()

    def test_must_have_exactly_one_side(self) -> None:
        with pytest.raises(ValueError):
            Result()
        with pytest.raises(ValueError):
            Result(value=1, error=ValueError())


class TestAlertDispatch:
    @pytest.mark.parametrize("severity", [Severity.LOW, Severity.MEDIUM])
    async def test_non_high_alerts_are_store_only(
        self, dispatcher: NotificationDispatcher, push_provider, sms_provider, severity: Severity
    ) -> None:
        result = await dispatcher.send(_alert(severity))

        assert result.attempted is False
        assert push_provider.sent == [] and sms_provider.sent == []

    async def test_high_alert_goes_to_all_channels(
        self, dispatcher: NotificationDispatcher, push_provider, sms_provider
    ) -> None:
        result = await dispatcher.send(
            _alert(Severity.HIGH, trigger_data={"checked": "daily_total_feeding", "value": 60, "is_critical": True})
        )

        assert result.status is ReminderStatus.SENT
        assert set(result.results) == {Channel.PUSH, Channel.SMS}
        recipient, message = push_provider.sent[0]
        assert recipient.device_token == "device-token-1"
        assert "CRITICAL" in message.body
        assert sms_provider.sent[0][0].phone_number == "+15551234567"


class TestAggregation:
    async def test_push_fails_sms_succeeds_is_sent(
        self, dispatcher: NotificationDispatcher, push_provider, sms_provider
    ) -> None:
        push_provider.fail = True

        result = await dispatcher.send(_reminder())

        assert result.status is ReminderStatus.SENT
        assert result.results[Channel.PUSH].success is False
        assert result.results[Channel.SMS].success is True
        assert result.error_summary == "push: push provider down"

    async def test_all_channels_fail_is_failed(
        self, dispatcher: NotificationDispatcher, push_provider, sms_provider
    ) -> None:
        push_provider.fail = True
        sms_provider.fail = True

        result = await dispatcher.send(_reminder())

        assert result.status is ReminderStatus.FAILED
        assert "push:" in result.error_summary and "sms:" in result.error_summary

    async def test_only_listed_channels_are_attempted(
        self, dispatcher: NotificationDispatcher, push_provider, sms_provider
    ) -> None:
        result = await dispatcher.send(_reminder(channels={Channel.SMS}))

        assert set(result.results) == {Channel.SMS}
        assert push_provider.sent == []

    async def test_empty_channel_set_attempts_nothing(self, dispatcher: NotificationDispatcher) -> None:
        result = await dispatcher.send(_reminder(channels=set()))
        assert result.attempted is False

    async def test_slow_channel_times_out_without_blocking_other(
        self, dispatcher: NotificationDispatcher, push_provider, sms_provider
    ) -> None:
        push_provider.delay = 5.0

        result = await dispatcher.send(_reminder())

        assert result.results[Channel.PUSH].success is False
        assert "timed out" in result.results[Channel.PUSH].error
        assert result.results[Channel.SMS].success is True
        assert result.status is ReminderStatus.SENT

    async def test_unconfigured_provider_is_a_channel_failure(self, store, sms_provider) -> None:
        dispatcher = NotificationDispatcher([sms_provider], store.get_profile)

        result = await dispatcher.send(_reminder())

        assert result.results[Channel.PUSH].error == "push provider not configured"
        assert result.status is ReminderStatus.SENT

    async def test_profile_lookup_is_done_once(self, push_provider, sms_provider) -> None:
        calls: list[str] = []

        async def lookup(user_id: str) -> UserProfile:
            calls.append(user_id)
            return UserProfile(id=user_id, device_token="t", phone_number="+15550001111")

        dispatcher = NotificationDispatcher([push_provider, sms_provider], lookup)
        await dispatcher.send(_reminder())

        assert calls == ["owner-1"]

    async def test_profile_lookup_failure_fails_channels_not_dispatch(
        self, push_provider, sms_provider
    ) -> None:
        async def lookup(user_id: str) -> UserProfile:
            raise TransientStoreError("quota exceeded")

        class AddressCheckingProvider:
            channel = Channel.PUSH

            async def send(self, recipient, message) -> str:
                if not recipient.device_token:
                    raise DeliveryError("no device token")
                return "id"

        dispatcher = NotificationDispatcher([AddressCheckingProvider()], lookup)
        result = await dispatcher.send(_reminder(channels={Channel.PUSH}))

        assert result.status is ReminderStatus.FAILED

    async def test_unexpected_lookup_error_does_not_escape(self) -> None:
        async def lookup(user_id: str) -> UserProfile:
            raise ValueError("malformed user document")

        seen: list[tuple[str | None, str | None]] = []

        class AddressCheckingProvider:
            def __init__(self, channel: Channel) -> None:
                self.channel = channel

            async def send(self, recipient, message) -> str:
                seen.append((recipient.device_token, recipient.phone_number))
                raise DeliveryError(f"no {self.channel.value} address")

        dispatcher = NotificationDispatcher(
            [AddressCheckingProvider(Channel.PUSH), AddressCheckingProvider(Channel.SMS)], lookup
        )
        result = await dispatcher.send(_reminder())

        assert result.status is ReminderStatus.FAILED
        assert seen == [(None, None), (None, None)]
        assert all(not r.success for r in result.results.values())

    def test_timeout_must_be_positive(self, store) -> None:
        with pytest.raises(ValueError):
            NotificationDispatcher([], store.get_profile, timeout_seconds=0)


class TestMessageBuilders:
    def test_medicine_reminder_message(self) -> None:
        message = build_reminder_message(_reminder())
        assert message.title == "💊 Medicine Reminder"
        assert "Vitamin D 400 IU" in message.body
        assert message.data["reminder_type"] == "medicine"
        assert all(isinstance(v, str) for v in message.data.values())

    def test_feeding_reminder_message(self) -> None:
        message = build_reminder_message(
            _reminder(type=ReminderType.FEEDING, trigger_data={"hours_since_last": 5.04})
        )
        assert "5.0h since last feeding" in message.body

    def test_sleep_reminder_without_logs(self) -> None:
        message = build_reminder_message(_reminder(type=ReminderType.SLEEP))
        assert message.body == "No sleep logged today. Please log sleep."

    def test_non_critical_feeding_alert_message(self) -> None:
        message = build_alert_message(
            _alert(Severity.MEDIUM, trigger_data={"checked": "daily_total_feeding", "value": 100, "threshold": 150})
        )
        assert message.body == "Feeding is below minimum (100ml of 150ml)."
        assert message.data["severity"] == "MEDIUM"
