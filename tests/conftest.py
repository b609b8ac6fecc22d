"""
Shared fixtures: a controllable clock, a seeded in-memory store, recording
channel providers and an AppConfig with pacing delays switched off.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from core.config import AppConfig, SchedulerConfig
from core.domain.exceptions import DeliveryError
from core.domain.models import Channel, EventLog, EventType, Subject, UserProfile
from core.services.dispatcher import NotificationMessage, Recipient
from core.services.store import InMemoryMonitorStore

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)
SUBJECT_ID = "subject-1"
OWNER_ID = "owner-1"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class MonotonicClock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class RecordingProvider:
    """Channel provider that records sends and can be told to fail or hang."""

    def __init__(self, channel: Channel, fail: bool = False, delay: float = 0.0) -> None:
        self.channel = channel
        self.fail = fail
        self.delay = delay
        self.sent: list[tuple[Recipient, NotificationMessage]] = []
        self._ids = itertools.count(1)

    async def send(self, recipient: Recipient, message: NotificationMessage) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise DeliveryError(f"{self.channel.value} provider down", provider_status=503)
        self.sent.append((recipient, message))
        return f"{self.channel.value}-msg-{next(self._ids)}"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mono_clock() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture
def store() -> InMemoryMonitorStore:
    store = InMemoryMonitorStore()
    store.add_subject(Subject(id=SUBJECT_ID, owner_id=OWNER_ID, name="Ada", gestational_age_weeks=40))
    store.add_profile(UserProfile(id=OWNER_ID, device_token="device-token-1", phone_number="+15551234567"))
    return store


@pytest.fixture
def make_event() -> Callable[..., EventLog]:
    counter = itertools.count(1)

    def _make(event_type: EventType, at: datetime, subject_id: str = SUBJECT_ID, **fields) -> EventLog:
        return EventLog(
            id=f"event-{next(counter)}",
            subject_id=subject_id,
            owner_id=OWNER_ID,
            type=event_type,
            timestamp=at,
            **fields,
        )

    return _make


@pytest.fixture
def push_provider() -> RecordingProvider:
    return RecordingProvider(Channel.PUSH)


@pytest.fixture
def sms_provider() -> RecordingProvider:
    return RecordingProvider(Channel.SMS)


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        scheduler=SchedulerConfig(send_delay_seconds=0.0, cleanup_batch_pause_seconds=0.0),
    )
