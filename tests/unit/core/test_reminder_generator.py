"""
Tests for ReminderGenerator in `core/services/reminder_generator.py`.

Covers:
- Two-day lookahead with past instants skipped
- Idempotent re-expansion (same ids, all skipped)
- Cache-first dedup with store fallback
- Concurrent expansions
- Local timezone handling and malformed schedules
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest

from core.config import CacheConfig
from core.domain.exceptions import InvalidScheduleError
from core.domain.models import ReminderType, Schedule, ScheduleItem
from core.services.cache import CacheRegistry
from core.services.reminder_generator import ReminderGenerator, dose_instant

SUBJECT_ID = "subject-1"
OWNER_ID = "owner-1"

SCHEDULE = Schedule(
    items=[
        ScheduleItem(name="Vitamin D", dosage="400 IU", times_of_day=["08:00", "20:00"]),
        ScheduleItem(name="Iron", dosage="1 ml", times_of_day=["12:00"]),
    ]
)


@pytest.fixture
def caches(mono_clock) -> CacheRegistry:
    return CacheRegistry(CacheConfig(), clock=mono_clock)


@pytest.fixture
def generator(store, caches, clock) -> ReminderGenerator:
    return ReminderGenerator(store, caches.dedup, UTC, lookahead_days=2, clock=clock)


class TestExpansion:
    async def test_lookahead_skips_past_instants(self, generator: ReminderGenerator, store) -> None:
        # Clock is 15:00 UTC: today's 08:00 and 12:00 doses are already past.
        result = await generator.expand(SUBJECT_ID, OWNER_ID, SCHEDULE)

        created = [store.reminders[rid] for rid in result.created]
        slots = sorted((r.medicine_name, r.dose_date, r.dose_time) for r in created)
        assert slots == [
            ("Iron", "2026-03-11", "12:00"),
            ("Vitamin D", "2026-03-10", "20:00"),
            ("Vitamin D", "2026-03-11", "08:00"),
            ("Vitamin D", "2026-03-11", "20:00"),
        ]
        assert all(r.type is ReminderType.MEDICINE for r in created)
        assert all(r.next_trigger_at == r.scheduled_for for r in created)
        assert result.skipped == []

    async def test_second_expansion_returns_same_ids_as_skipped(
        self, generator: ReminderGenerator, store
    ) -> None:
        first = await generator.expand(SUBJECT_ID, OWNER_ID, SCHEDULE)
        second = await generator.expand(SUBJECT_ID, OWNER_ID, SCHEDULE)

        assert second.created == []
        assert sorted(second.skipped) == sorted(first.created)
        assert first.reminder_ids == second.reminder_ids
        assert len(store.reminders) == 4

    async def test_store_fallback_when_cache_is_cold(
        self, generator: ReminderGenerator, caches: CacheRegistry, store
    ) -> None:
        first = await generator.expand(SUBJECT_ID, OWNER_ID, SCHEDULE)
        caches.clear()

        second = await generator.expand(SUBJECT_ID, OWNER_ID, SCHEDULE)

        assert sorted(second.skipped) == sorted(first.created)
        assert len(store.reminders) == 4

    async def test_concurrent_expansions_do_not_duplicate(
        self, store, clock, mono_clock
    ) -> None:
        # Separate caches so neither run can short-circuit on the other's cache.
        generators = [
            ReminderGenerator(store, CacheRegistry(CacheConfig(), clock=mono_clock).dedup, UTC, clock=clock)
            for _ in range(3)
        ]

        results = await asyncio.gather(*(g.expand(SUBJECT_ID, OWNER_ID, SCHEDULE) for g in generators))

        assert len(store.reminders) == 4
        assert sum(len(r.created) for r in results) == 4
        assert all(r.reminder_ids == results[0].reminder_ids for r in results)

    async def test_item_without_times_uses_suggested_start(self, generator: ReminderGenerator, store) -> None:
        schedule = Schedule(items=[ScheduleItem(name="Probiotic", suggested_start_time="18:30")])

        result = await generator.expand(SUBJECT_ID, OWNER_ID, schedule)

        assert sorted(store.reminders[r].dose_date for r in result.created) == ["2026-03-10", "2026-03-11"]

    async def test_local_timezone_calendar_days(self, store, caches, clock) -> None:
        tokyo = ZoneInfo("Asia/Tokyo")
        generator = ReminderGenerator(store, caches.dedup, tokyo, clock=clock)
        schedule = Schedule(items=[ScheduleItem(name="Vitamin D", times_of_day=["08:00"])])

        # 15:00 UTC is already 00:00 on the 11th in Tokyo.
        result = await generator.expand(SUBJECT_ID, OWNER_ID, schedule)

        reminders = sorted((store.reminders[r] for r in result.created), key=lambda r: r.scheduled_for)
        assert [r.dose_date for r in reminders] == ["2026-03-11", "2026-03-12"]
        assert reminders[0].scheduled_for == datetime(2026, 3, 10, 23, 0, tzinfo=UTC)


class TestScheduleValidation:
    async def test_malformed_dict_schedule_raises(self, generator: ReminderGenerator) -> None:
        with pytest.raises(InvalidScheduleError):
            await generator.expand(SUBJECT_ID, OWNER_ID, {"items": [{"name": "X", "times_of_day": ["25:00"]}]})

    async def test_empty_schedule_raises(self, generator: ReminderGenerator) -> None:
        with pytest.raises(InvalidScheduleError):
            await generator.expand(SUBJECT_ID, OWNER_ID, {"items": []})

    async def test_dict_schedule_accepted(self, generator: ReminderGenerator) -> None:
        result = await generator.expand(
            SUBJECT_ID, OWNER_ID, {"items": [{"name": "Iron", "times_of_day": ["21:00"]}]}
        )
        assert len(result.created) == 2


def test_dose_instant_converts_local_time_to_utc() -> None:
    instant = dose_instant(datetime(2026, 7, 1).date(), "08:00", ZoneInfo("Europe/Berlin"))
    assert instant == datetime(2026, 7, 1, 6, 0, tzinfo=UTC)
