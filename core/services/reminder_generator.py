"""
Reminder generator: expands a confirmed medication schedule into dated reminders.

For every dose time of every item, over the next `lookahead_days` local
calendar days, one reminder is created unless its dedup key
(subject, medicine, dose time, calendar date) already exists. The dedup cache
is consulted first and the store second; creation itself goes through the
store's insert-if-absent so concurrent expansions cannot race into duplicates.
Re-running an expansion is therefore safe and returns the same reminder ids.
"""

from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any

import structlog
from pydantic import ValidationError

from core.domain.exceptions import InvalidScheduleError, TransientStoreError
from core.domain.models import (
    Channel,
    ExpansionResult,
    Reminder,
    ReminderType,
    Schedule,
    ScheduleItem,
    utcnow,
)
from core.services.cache import TTLCache, dedup_cache_key
from core.services.rule_engine import new_id
from core.services.store import MonitorStore

logger = structlog.get_logger(__name__)


def coerce_schedule(schedule: Schedule | dict[str, Any]) -> Schedule:
    if isinstance(schedule, Schedule):
        return schedule
    try:
        return Schedule.model_validate(schedule)
    except ValidationError as e:
        raise InvalidScheduleError(f"Malformed schedule: {e.error_count()} validation error(s)") from e


def dose_instant(day: date, dose_time: str, tz: tzinfo) -> datetime:
    """Absolute UTC instant of a local HH:mm on `day`."""
    hour, minute = (int(part) for part in dose_time.split(":"))
    return datetime.combine(day, time(hour, minute), tzinfo=tz).astimezone(UTC)


class ReminderGenerator:
    def __init__(
        self,
        store: MonitorStore,
        dedup_cache: TTLCache,
        tz: tzinfo,
        lookahead_days: int = 2,
        channels: Iterable[Channel] = (Channel.PUSH, Channel.SMS),
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        if lookahead_days <= 0:
            raise ValueError("lookahead_days must be positive")
        self.store = store
        self.dedup_cache = dedup_cache
        self.tz = tz
        self.lookahead_days = lookahead_days
        self.channels = frozenset(channels)
        self._clock = clock
        self._new_id = id_factory
        self.logger = logger.bind(component="reminder_generator")

    async def expand(
        self, subject_id: str, owner_id: str, schedule: Schedule | dict[str, Any]
    ) -> ExpansionResult:
        plan = coerce_schedule(schedule)
        now = self._clock()
        today = now.astimezone(self.tz).date()
        result = ExpansionResult()

        for item in plan.items:
            for day_offset in range(self.lookahead_days):
                day = today + timedelta(days=day_offset)
                for dose_time in item.dose_times:
                    scheduled_for = dose_instant(day, dose_time, self.tz)
                    if scheduled_for < now:
                        continue
                    try:
                        await self._ensure_reminder(
                            subject_id, owner_id, item, dose_time, day, scheduled_for, result
                        )
                    except TransientStoreError as e:
                        result.failed += 1
                        self.logger.warning(
                            "reminder_creation_skipped",
                            subject_id=subject_id,
                            medicine_name=item.name,
                            dose_time=dose_time,
                            dose_date=day.isoformat(),
                            error=str(e),
                        )

        self.logger.info(
            "schedule_expanded",
            subject_id=subject_id,
            created=len(result.created),
            skipped=len(result.skipped),
            failed=result.failed,
        )
        return result

    async def _ensure_reminder(
        self,
        subject_id: str,
        owner_id: str,
        item: ScheduleItem,
        dose_time: str,
        day: date,
        scheduled_for: datetime,
        result: ExpansionResult,
    ) -> None:
        dose_date = day.isoformat()
        cache_key = dedup_cache_key(subject_id, item.name, dose_time, dose_date)

        cached_id = self.dedup_cache.get(cache_key)
        if cached_id is not None:
            result.skipped.append(cached_id)
            return

        existing = await self.store.find_reminder_by_dedup_key(subject_id, item.name, dose_time, dose_date)
        if existing is not None:
            self.dedup_cache.set(cache_key, existing.id)
            result.skipped.append(existing.id)
            return

        now = self._clock()
        outcome = await self.store.create_reminder_unique(
            Reminder(
                id=self._new_id(),
                subject_id=subject_id,
                owner_id=owner_id,
                type=ReminderType.MEDICINE,
                message=f"Time to give {item.name}" + (f" ({item.dosage})" if item.dosage else ""),
                medicine_name=item.name,
                dosage=item.dosage or None,
                dose_time=dose_time,
                dose_date=dose_date,
                scheduled_for=scheduled_for,
                next_trigger_at=scheduled_for,
                channels=set(self.channels),
                trigger_data={
                    "medicine_name": item.name,
                    "dosage": item.dosage,
                    "scheduled_time": dose_time,
                    "frequency": item.frequency,
                },
                created_at=now,
                updated_at=now,
            )
        )
        self.dedup_cache.set(cache_key, outcome.reminder.id)
        if outcome.is_new:
            result.created.append(outcome.reminder.id)
            self.logger.debug(
                "medicine_reminder_created",
                reminder_id=outcome.reminder.id,
                medicine_name=item.name,
                scheduled_for=scheduled_for.isoformat(),
            )
        else:
            result.skipped.append(outcome.reminder.id)
