"""
Tests for RuleEngine in `core/services/rule_engine.py`.

Covers:
- The overdue-feeding scenario (HIGH alert + pending companion reminder)
- Idempotent alerting and resolution
- No-data suppression
- Severity escalation triggers exactly one dispatch
- Premature thresholds
- Category isolation on store failures
"""

from __future__ import annotations

from datetime import UTC, timedelta

import pytest

from core.domain.evaluators import NO_SLEEP_LOG_TODAY
from core.domain.exceptions import SubjectNotFoundError, TransientStoreError
from core.domain.models import (
    EventType,
    ReminderStatus,
    RuleCategory,
    Severity,
    Subject,
)
from core.domain.rules import RuleTable, load_rule_table
from core.services.dispatcher import NotificationDispatcher
from core.services.rule_engine import RuleEngine

SUBJECT_ID = "subject-1"
OWNER_ID = "owner-1"


@pytest.fixture
def dispatcher(store, push_provider, sms_provider) -> NotificationDispatcher:
    return NotificationDispatcher([push_provider, sms_provider], store.get_profile)


@pytest.fixture
def engine(store, dispatcher, clock) -> RuleEngine:
    return RuleEngine(store, load_rule_table(), dispatcher, UTC, clock=clock)


class TestFeedingScenarios:
    async def test_overdue_feeding_creates_high_alert_and_pending_reminder(
        self, engine: RuleEngine, store, make_event, clock, push_provider
    ) -> None:
        store.add_event(make_event(EventType.FEEDING, clock() - timedelta(hours=5)))

        result = await engine.evaluate(SUBJECT_ID, OWNER_ID)

        assert len(result.alerts) == 1
        outcome = result.alerts[0]
        assert outcome.is_new is True
        assert outcome.alert.rule_id == "feeding_delay"
        assert outcome.alert.severity is Severity.HIGH
        assert outcome.alert.trigger_data["value"] == pytest.approx(5.0)
        assert len(result.reminders) == 1
        assert result.reminders[0].reminder.status is ReminderStatus.PENDING
        assert len(push_provider.sent) == 1

    async def test_repeated_evaluation_updates_in_place(
        self, engine: RuleEngine, store, make_event, clock, push_provider
    ) -> None:
        store.add_event(make_event(EventType.FEEDING, clock() - timedelta(hours=5)))

        first = await engine.evaluate(SUBJECT_ID, OWNER_ID)
        clock.advance(minutes=30)
        second = await engine.evaluate(SUBJECT_ID, OWNER_ID)

        assert second.alerts[0].is_new is False
        assert second.alerts[0].alert.id == first.alerts[0].alert.id
        assert second.alerts[0].alert.trigger_data["value"] == pytest.approx(5.5)
        assert second.reminders[0].is_new is False
        assert len([a for a in store.alerts.values() if a.is_active]) == 1
        assert len(push_provider.sent) == 1

    async def test_new_feeding_resolves_alert_and_reminder(
        self, engine: RuleEngine, store, make_event, clock
    ) -> None:
        store.add_event(make_event(EventType.FEEDING, clock() - timedelta(hours=5)))
        first = await engine.evaluate(SUBJECT_ID, OWNER_ID)
        reminder_id = first.reminders[0].reminder.id

        store.add_event(make_event(EventType.FEEDING, clock()))
        await engine.evaluate(SUBJECT_ID, OWNER_ID)

        alert = store.alerts[first.alerts[0].alert.id]
        assert alert.is_active is False and alert.resolved is True
        reminder = store.reminders[reminder_id]
        assert reminder.is_active is False
        assert reminder.status is ReminderStatus.DISMISSED

    async def test_no_logs_means_no_alerts(self, engine: RuleEngine, store, push_provider) -> None:
        result = await engine.evaluate(SUBJECT_ID, OWNER_ID)

        assert result.alerts == []
        assert result.reminders == []
        assert store.alerts == {} and store.reminders == {}
        assert push_provider.sent == []

    async def test_premature_subject_uses_stricter_threshold(
        self, engine: RuleEngine, store, make_event, clock
    ) -> None:
        store.add_subject(Subject(id="preemie", owner_id=OWNER_ID, gestational_age_weeks=34))
        store.add_event(make_event(EventType.FEEDING, clock() - timedelta(hours=3.5), subject_id="preemie"))

        result = await engine.evaluate("preemie", OWNER_ID)

        assert [o.alert.rule_id for o in result.alerts] == ["feeding_delay_premature"]


class TestEscalation:
    async def test_escalation_to_high_dispatches_once(
        self, store, dispatcher, make_event, clock, push_provider
    ) -> None:
        engine = RuleEngine(
            store, RuleTable([load_rule_table().get("low_daily_feeding_total")]), dispatcher, UTC, clock=clock
        )
        store.add_event(make_event(EventType.FEEDING, clock() - timedelta(hours=1), quantity=100))

        first = await engine.evaluate(SUBJECT_ID, OWNER_ID)
        assert first.alerts[0].alert.severity is Severity.MEDIUM
        assert push_provider.sent == []

        # Next calendar day: only 60ml so far.
        clock.advance(hours=10)
        store.add_event(make_event(EventType.FEEDING, clock() - timedelta(minutes=10), quantity=60))

        second = await engine.evaluate(SUBJECT_ID, OWNER_ID)

        outcome = second.alerts[0]
        assert outcome.is_new is False
        assert outcome.severity_escalated is True
        assert outcome.alert.severity is Severity.HIGH
        assert len(push_provider.sent) == 1

        await engine.evaluate(SUBJECT_ID, OWNER_ID)
        assert len(push_provider.sent) == 1


class TestOtherCategories:
    async def test_sleep_logged_yesterday_only_nudges(
        self, engine: RuleEngine, store, make_event, clock
    ) -> None:
        store.add_event(make_event(EventType.SLEEP, clock() - timedelta(days=1), duration=600))

        result = await engine.evaluate(SUBJECT_ID, OWNER_ID)

        assert result.alerts == []
        assert [o.reminder.rule_id for o in result.reminders] == [NO_SLEEP_LOG_TODAY]

    async def test_weight_uses_newest_of_profile_and_events(
        self, engine: RuleEngine, store, make_event, clock
    ) -> None:
        store.add_subject(
            Subject(id=SUBJECT_ID, owner_id=OWNER_ID, weight_updated_at=clock() - timedelta(days=9))
        )
        stale = await engine.evaluate(SUBJECT_ID, OWNER_ID)
        assert [o.alert.rule_id for o in stale.alerts] == ["weight_not_updated"]

        store.add_event(make_event(EventType.WEIGHT, clock() - timedelta(days=1)))
        await engine.evaluate(SUBJECT_ID, OWNER_ID)

        assert all(not a.is_active for a in store.alerts.values())

    async def test_failing_category_does_not_block_others(
        self, engine: RuleEngine, store, make_event, clock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        store.add_event(make_event(EventType.FEEDING, clock() - timedelta(hours=5)))
        store.add_event(make_event(EventType.SLEEP, clock() - timedelta(hours=3), duration=120))
        original = store.events_between

        async def flaky(subject_id, event_type, start, end):
            if event_type is EventType.FEEDING:
                raise TransientStoreError("quota exceeded")
            return await original(subject_id, event_type, start, end)

        monkeypatch.setattr(store, "events_between", flaky)

        result = await engine.evaluate(SUBJECT_ID, OWNER_ID)

        assert result.failed_categories == [RuleCategory.FEEDING]
        assert [o.alert.rule_id for o in result.alerts] == ["low_sleep_duration"]

    async def test_recipient_lookup_error_keeps_every_high_alert(
        self, store, make_event, clock, push_provider, sms_provider
    ) -> None:
        async def lookup(user_id: str):
            raise ValueError("malformed user document")

        engine = RuleEngine(
            store,
            load_rule_table(),
            NotificationDispatcher([push_provider, sms_provider], lookup),
            UTC,
            clock=clock,
        )
        store.add_event(make_event(EventType.FEEDING, clock() - timedelta(hours=5), quantity=60))

        result = await engine.evaluate(SUBJECT_ID, OWNER_ID)

        assert {o.alert.rule_id for o in result.alerts} == {"feeding_delay", "low_daily_feeding_total"}
        assert all(o.alert.severity is Severity.HIGH for o in result.alerts)
        assert result.failed_categories == []

    async def test_dispatch_error_does_not_skip_remaining_alerts(
        self, engine: RuleEngine, store, make_event, clock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        store.add_event(make_event(EventType.FEEDING, clock() - timedelta(hours=5), quantity=60))
        attempted: list[str] = []

        async def broken_send(alert):
            attempted.append(alert.rule_id)
            raise RuntimeError("provider client crashed")

        monkeypatch.setattr(engine.dispatcher, "send", broken_send)

        result = await engine.evaluate(SUBJECT_ID, OWNER_ID)

        assert sorted(attempted) == ["feeding_delay", "low_daily_feeding_total"]
        assert len(result.alerts) == 2
        assert len(store.alerts) == 2

    async def test_unknown_subject_raises(self, engine: RuleEngine) -> None:
        with pytest.raises(SubjectNotFoundError):
            await engine.evaluate("nobody", OWNER_ID)
