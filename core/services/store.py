"""
Alert/Reminder store adapter.

MonitorStore is the boundary between the monitoring core and the document
store. The two invariants live here rather than in callers:

- at most one active alert (and one active rule reminder) per
  (subject, owner, rule), enforced by a conditional upsert
- at most one reminder per dedup key, enforced by an insert-if-absent

InMemoryMonitorStore serialises every operation behind one asyncio lock, which
makes each of those conditional writes atomic. It backs the tests and the demo.
"""

import asyncio
from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

import structlog
from pydantic import BaseModel

from core.domain.models import (
    TERMINAL_STATUSES,
    Alert,
    EventLog,
    EventType,
    Reminder,
    ReminderOutcome,
    ReminderStatus,
    ReminderType,
    Schedule,
    Severity,
    Subject,
    UserProfile,
)

logger = structlog.get_logger(__name__)


class AlertUpsert(BaseModel):
    alert: Alert
    is_new: bool
    previous_severity: Severity | None = None


class MonitorStore(Protocol):
    """
    Async persistence contract used by the rule engine, generator and scheduler.

    Implementations raise TransientStoreError for quota, timeout and
    connection problems so callers can skip the cycle.
    """

    async def get_subject(self, subject_id: str) -> Subject | None: ...

    async def get_profile(self, user_id: str) -> UserProfile | None: ...

    async def recent_events(
        self, subject_id: str, event_type: EventType, limit: int
    ) -> list[EventLog]:
        """Newest first, at most `limit` entries."""
        ...

    async def events_between(
        self, subject_id: str, event_type: EventType, start: datetime, end: datetime
    ) -> list[EventLog]:
        """Events with start <= timestamp < end, oldest first."""
        ...

    async def has_confirmed_schedule(self, subject_id: str) -> bool: ...

    async def upsert_active_alert(self, candidate: Alert) -> AlertUpsert:
        """Update the active alert for the candidate's key in place, or insert the candidate."""
        ...

    async def resolve_alerts(
        self, subject_id: str, owner_id: str, rule_id: str, now: datetime
    ) -> int: ...

    async def active_alerts(self, subject_id: str, owner_id: str) -> list[Alert]: ...

    async def upsert_active_reminder(self, candidate: Reminder) -> ReminderOutcome: ...

    async def resolve_reminders(
        self, subject_id: str, owner_id: str, rule_ids: Iterable[str], now: datetime
    ) -> int: ...

    async def create_reminder_unique(self, candidate: Reminder) -> ReminderOutcome:
        """Insert unless a reminder with the same dedup key exists; return whichever is stored."""
        ...

    async def find_reminder_by_dedup_key(
        self, subject_id: str, medicine_name: str, dose_time: str, dose_date: str
    ) -> Reminder | None: ...

    async def get_reminder(self, reminder_id: str) -> Reminder | None: ...

    async def due_reminders(self, now: datetime, limit: int) -> list[Reminder]: ...

    async def record_delivery(
        self, reminder_id: str, status: ReminderStatus, error: str | None, now: datetime
    ) -> Reminder | None:
        """Apply a delivery outcome if the reminder is still pending; None otherwise."""
        ...

    async def dismiss_reminder(self, reminder_id: str, now: datetime) -> Reminder | None: ...

    async def delete_terminal_reminders(self, cutoff: datetime, limit: int) -> int:
        """Delete up to `limit` terminal reminders scheduled at or before `cutoff`."""
        ...

    async def reminders_between(
        self, subject_id: str, reminder_type: ReminderType, start: datetime, end: datetime
    ) -> list[Reminder]: ...


class InMemoryMonitorStore:
    """Dictionary-backed MonitorStore."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.subjects: dict[str, Subject] = {}
        self.profiles: dict[str, UserProfile] = {}
        self.events: list[EventLog] = []
        self.schedules: dict[str, list[Schedule]] = {}
        self.alerts: dict[str, Alert] = {}
        self.reminders: dict[str, Reminder] = {}
        self.logger = logger.bind(component="memory_store")

    # Seeding helpers for the collaborators this core only reads

    def add_subject(self, subject: Subject) -> None:
        self.subjects[subject.id] = subject

    def add_profile(self, profile: UserProfile) -> None:
        self.profiles[profile.id] = profile

    def add_event(self, event: EventLog) -> None:
        self.events.append(event)

    def add_schedule(self, subject_id: str, schedule: Schedule) -> None:
        self.schedules.setdefault(subject_id, []).append(schedule)

    # Reads

    async def get_subject(self, subject_id: str) -> Subject | None:
        subject = self.subjects.get(subject_id)
        return subject.model_copy() if subject else None

    async def get_profile(self, user_id: str) -> UserProfile | None:
        profile = self.profiles.get(user_id)
        return profile.model_copy() if profile else None

    async def recent_events(
        self, subject_id: str, event_type: EventType, limit: int
    ) -> list[EventLog]:
        matching = [e for e in self.events if e.subject_id == subject_id and e.type is event_type]
        matching.sort(key=lambda e: e.timestamp, reverse=True)
        return matching[:limit]

    async def events_between(
        self, subject_id: str, event_type: EventType, start: datetime, end: datetime
    ) -> list[EventLog]:
        matching = [
            e
            for e in self.events
            if e.subject_id == subject_id and e.type is event_type and start <= e.timestamp < end
        ]
        return sorted(matching, key=lambda e: e.timestamp)

    async def has_confirmed_schedule(self, subject_id: str) -> bool:
        return bool(self.schedules.get(subject_id))

    # Alerts

    async def upsert_active_alert(self, candidate: Alert) -> AlertUpsert:
        async with self._lock:
            existing = self._find_active_alert(candidate.subject_id, candidate.owner_id, candidate.rule_id)
            if existing is None:
                stored = candidate.model_copy(deep=True)
                self.alerts[stored.id] = stored
                return AlertUpsert(alert=stored.model_copy(deep=True), is_new=True)

            previous = existing.severity
            existing.severity = candidate.severity
            existing.title = candidate.title
            existing.description = candidate.description
            existing.message = candidate.message
            existing.trigger_data = dict(candidate.trigger_data)
            existing.updated_at = candidate.updated_at
            return AlertUpsert(
                alert=existing.model_copy(deep=True), is_new=False, previous_severity=previous
            )

    async def resolve_alerts(
        self, subject_id: str, owner_id: str, rule_id: str, now: datetime
    ) -> int:
        async with self._lock:
            count = 0
            for alert in self.alerts.values():
                if (
                    alert.is_active
                    and alert.subject_id == subject_id
                    and alert.owner_id == owner_id
                    and alert.rule_id == rule_id
                ):
                    alert.is_active = False
                    alert.resolved = True
                    alert.updated_at = now
                    count += 1
            return count

    async def active_alerts(self, subject_id: str, owner_id: str) -> list[Alert]:
        return [
            a.model_copy(deep=True)
            for a in sorted(self.alerts.values(), key=lambda a: a.created_at)
            if a.is_active and a.subject_id == subject_id and a.owner_id == owner_id
        ]

    def _find_active_alert(self, subject_id: str, owner_id: str, rule_id: str) -> Alert | None:
        for alert in self.alerts.values():
            if (
                alert.is_active
                and alert.subject_id == subject_id
                and alert.owner_id == owner_id
                and alert.rule_id == rule_id
            ):
                return alert
        return None

    # Reminders

    async def upsert_active_reminder(self, candidate: Reminder) -> ReminderOutcome:
        async with self._lock:
            for reminder in self.reminders.values():
                if (
                    reminder.is_active
                    and reminder.subject_id == candidate.subject_id
                    and reminder.owner_id == candidate.owner_id
                    and reminder.rule_id == candidate.rule_id
                ):
                    reminder.message = candidate.message
                    reminder.trigger_data = dict(candidate.trigger_data)
                    reminder.updated_at = candidate.updated_at
                    return ReminderOutcome(reminder=reminder.model_copy(deep=True), is_new=False)

            stored = candidate.model_copy(deep=True)
            self.reminders[stored.id] = stored
            return ReminderOutcome(reminder=stored.model_copy(deep=True), is_new=True)

    async def resolve_reminders(
        self, subject_id: str, owner_id: str, rule_ids: Iterable[str], now: datetime
    ) -> int:
        wanted = set(rule_ids)
        async with self._lock:
            count = 0
            for reminder in self.reminders.values():
                if (
                    reminder.is_active
                    and reminder.subject_id == subject_id
                    and reminder.owner_id == owner_id
                    and reminder.rule_id in wanted
                ):
                    reminder.is_active = False
                    if reminder.status is ReminderStatus.PENDING:
                        reminder.status = ReminderStatus.DISMISSED
                    reminder.updated_at = now
                    count += 1
            return count

    async def create_reminder_unique(self, candidate: Reminder) -> ReminderOutcome:
        key = candidate.dedup_key
        if key is None:
            raise ValueError("create_reminder_unique needs medicine_name, dose_time and dose_date")
        async with self._lock:
            for reminder in self.reminders.values():
                if reminder.dedup_key == key:
                    return ReminderOutcome(reminder=reminder.model_copy(deep=True), is_new=False)
            stored = candidate.model_copy(deep=True)
            self.reminders[stored.id] = stored
            return ReminderOutcome(reminder=stored.model_copy(deep=True), is_new=True)

    async def find_reminder_by_dedup_key(
        self, subject_id: str, medicine_name: str, dose_time: str, dose_date: str
    ) -> Reminder | None:
        key = (subject_id, medicine_name, dose_time, dose_date)
        for reminder in self.reminders.values():
            if reminder.dedup_key == key:
                return reminder.model_copy(deep=True)
        return None

    async def get_reminder(self, reminder_id: str) -> Reminder | None:
        reminder = self.reminders.get(reminder_id)
        return reminder.model_copy(deep=True) if reminder else None

    async def due_reminders(self, now: datetime, limit: int) -> list[Reminder]:
        due = [
            r
            for r in self.reminders.values()
            if r.status is ReminderStatus.PENDING and r.next_trigger_at <= now
        ]
        due.sort(key=lambda r: r.next_trigger_at)
        return [r.model_copy(deep=True) for r in due[:limit]]

    async def record_delivery(
        self, reminder_id: str, status: ReminderStatus, error: str | None, now: datetime
    ) -> Reminder | None:
        async with self._lock:
            reminder = self.reminders.get(reminder_id)
            if reminder is None or reminder.status is not ReminderStatus.PENDING:
                return None
            reminder.status = status
            reminder.attempt_count += 1
            reminder.last_error = error
            reminder.last_attempt_at = now
            reminder.updated_at = now
            return reminder.model_copy(deep=True)

    async def dismiss_reminder(self, reminder_id: str, now: datetime) -> Reminder | None:
        async with self._lock:
            reminder = self.reminders.get(reminder_id)
            if reminder is None:
                return None
            if reminder.status is not ReminderStatus.DISMISSED:
                reminder.status = ReminderStatus.DISMISSED
                reminder.is_active = False
                reminder.updated_at = now
            return reminder.model_copy(deep=True)

    async def delete_terminal_reminders(self, cutoff: datetime, limit: int) -> int:
        async with self._lock:
            doomed = [
                r.id
                for r in sorted(self.reminders.values(), key=lambda r: r.scheduled_for)
                if r.status in TERMINAL_STATUSES and r.scheduled_for <= cutoff
            ][:limit]
            for reminder_id in doomed:
                del self.reminders[reminder_id]
            return len(doomed)

    async def reminders_between(
        self, subject_id: str, reminder_type: ReminderType, start: datetime, end: datetime
    ) -> list[Reminder]:
        matching = [
            r
            for r in self.reminders.values()
            if r.subject_id == subject_id
            and r.type is reminder_type
            and start <= r.scheduled_for < end
        ]
        return [r.model_copy(deep=True) for r in sorted(matching, key=lambda r: r.scheduled_for)]
