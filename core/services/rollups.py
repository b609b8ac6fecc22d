"""
Daily and weekly activity rollups, cached per subject and day/ISO week.

Cached values are invalidated whenever an event is logged for the subject, so
a rollup is never staler than the rollup cache TTL even without invalidation.
"""

from collections.abc import Callable, Sequence
from datetime import date, datetime, time, timedelta, tzinfo

import structlog
from pydantic import BaseModel, Field

from core.domain.models import EventLog, EventType, utcnow
from core.services.cache import TTLCache, daily_key, iso_week_key
from core.services.store import MonitorStore

logger = structlog.get_logger(__name__)


class DailyRollup(BaseModel):
    subject_id: str
    day: date
    feeding_count: int = 0
    feeding_total_ml: float = 0.0
    sleep_minutes: float = 0.0
    sleep_count: int = 0
    medication_doses_given: int = 0

    @property
    def sleep_hours(self) -> float:
        return round(self.sleep_minutes / 60, 1)


class WeeklyRollup(BaseModel):
    subject_id: str
    week: str = Field(description="ISO week, YYYY-Www")
    days: list[DailyRollup]

    @property
    def feeding_total_ml(self) -> float:
        return sum(d.feeding_total_ml for d in self.days)

    @property
    def average_daily_feeding_ml(self) -> float:
        return round(self.feeding_total_ml / len(self.days), 1) if self.days else 0.0

    @property
    def average_daily_sleep_hours(self) -> float:
        if not self.days:
            return 0.0
        return round(sum(d.sleep_minutes for d in self.days) / 60 / len(self.days), 1)


def summarize_day(subject_id: str, day: date, events: Sequence[EventLog]) -> DailyRollup:
    rollup = DailyRollup(subject_id=subject_id, day=day)
    for event in events:
        if event.type is EventType.FEEDING:
            rollup.feeding_count += 1
            rollup.feeding_total_ml += event.quantity or 0.0
        elif event.type is EventType.SLEEP:
            rollup.sleep_count += 1
            rollup.sleep_minutes += event.duration or 0.0
        elif event.type is EventType.MEDICATION and event.given:
            rollup.medication_doses_given += 1
    return rollup


class RollupService:
    ROLLED_UP_TYPES = (EventType.FEEDING, EventType.SLEEP, EventType.MEDICATION)

    def __init__(
        self,
        store: MonitorStore,
        cache: TTLCache,
        tz: tzinfo,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tz = tz
        self._clock = clock
        self.logger = logger.bind(component="rollup_service")

    def _today(self) -> date:
        return self._clock().astimezone(self.tz).date()

    def _local_midnight(self, day: date) -> datetime:
        return datetime.combine(day, time.min, tzinfo=self.tz)

    async def _events(self, subject_id: str, start: date, days: int) -> list[EventLog]:
        window_start = self._local_midnight(start)
        window_end = self._local_midnight(start + timedelta(days=days))
        events: list[EventLog] = []
        for event_type in self.ROLLED_UP_TYPES:
            events.extend(
                await self.store.events_between(subject_id, event_type, window_start, window_end)
            )
        return events

    async def daily(self, subject_id: str, day: date | None = None) -> DailyRollup:
        day = day or self._today()
        key = daily_key(subject_id, day)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        rollup = summarize_day(subject_id, day, await self._events(subject_id, day, 1))
        self.cache.set(key, rollup)
        return rollup

    async def weekly(self, subject_id: str, day: date | None = None) -> WeeklyRollup:
        day = day or self._today()
        key = iso_week_key(subject_id, day)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        monday = day - timedelta(days=day.isoweekday() - 1)
        events = await self._events(subject_id, monday, 7)
        by_day: dict[date, list[EventLog]] = {}
        for event in events:
            by_day.setdefault(event.timestamp.astimezone(self.tz).date(), []).append(event)

        days = [
            summarize_day(subject_id, monday + timedelta(days=i), by_day.get(monday + timedelta(days=i), []))
            for i in range(7)
        ]
        rollup = WeeklyRollup(subject_id=subject_id, week=key.split("_")[-1], days=days)
        self.cache.set(key, rollup)
        return rollup

    def invalidate(self, subject_id: str) -> int:
        dropped = self.cache.delete_prefix(f"{subject_id}_")
        if dropped:
            self.logger.debug("rollups_invalidated", subject_id=subject_id, count=dropped)
        return dropped
