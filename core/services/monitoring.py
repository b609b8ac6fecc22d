"""
Care monitoring service: the entry points the route layer calls.

Wires the rule table, store, caches, dispatcher, rule engine, reminder
generator, rollups and background scheduler together, and owns their
lifecycle. Caller contract violations (unknown subject, wrong owner,
malformed schedule) are raised as DataError; every other monitoring failure
is logged and degrades to an empty result.
"""

import time
from collections.abc import Callable, Iterable
from datetime import date, datetime
from typing import Any

import structlog

from core.config import AppConfig, get_config
from core.domain.exceptions import (
    DataError,
    OwnershipError,
    ReminderNotFoundError,
    SubjectNotFoundError,
    TransientStoreError,
)
from core.domain.models import (
    EvaluationResult,
    Reminder,
    Schedule,
    Severity,
    SubjectStatus,
    utcnow,
)
from core.domain.rules import RuleTable, load_rule_table
from core.services.cache import CacheRegistry, ownership_key
from core.services.dispatcher import ChannelProvider, NotificationDispatcher
from core.services.periodic import PeriodicTask
from core.services.reminder_generator import ReminderGenerator, coerce_schedule
from core.services.rollups import DailyRollup, RollupService, WeeklyRollup
from core.services.rule_engine import RuleEngine
from core.services.scheduler import BackgroundScheduler
from core.services.store import InMemoryMonitorStore, MonitorStore

logger = structlog.get_logger(__name__)

SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


class CareMonitoringService:
    """
    Main service that orchestrates rule evaluation and reminder delivery.

    - on_event_logged: ownership check, rollup invalidation, rule evaluation
    - on_schedule_confirmed: idempotent medication reminder expansion
    - background poll/cleanup through BackgroundScheduler
    """

    def __init__(
        self,
        store: MonitorStore,
        providers: Iterable[ChannelProvider] = (),
        config: AppConfig | None = None,
        rules: RuleTable | None = None,
        clock: Callable[[], datetime] = utcnow,
        cache_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or get_config()
        self.store = store
        self.rules = rules if rules is not None else load_rule_table(self.config.rules.rules_file)
        self.providers = list(providers)
        self._clock = clock
        self.logger = logger.bind(component="care_monitoring")

        tz = self.config.rules.tzinfo
        channels = self.config.notifications.default_channels

        self.caches = CacheRegistry(self.config.cache, clock=cache_clock)
        self.dispatcher = NotificationDispatcher(
            self.providers,
            profile_lookup=store.get_profile,
            timeout_seconds=self.config.notifications.channel_timeout_seconds,
        )
        self.rule_engine = RuleEngine(
            store, self.rules, self.dispatcher, tz, reminder_channels=channels, clock=clock
        )
        self.generator = ReminderGenerator(
            store,
            self.caches.dedup,
            tz,
            lookahead_days=self.config.rules.reminder_lookahead_days,
            channels=channels,
            clock=clock,
        )
        self.rollups = RollupService(store, self.caches.rollup, tz, clock=clock)
        self.scheduler = BackgroundScheduler(store, self.dispatcher, self.config.scheduler, clock=clock)
        self.cache_sweep = PeriodicTask(
            "cache_sweep", self.config.cache.sweep_interval_seconds, self._sweep_caches
        )

        self.logger.info(
            "care_monitoring_initialized",
            rules=len(self.rules),
            channels=sorted(c.value for c in self.dispatcher.channels),
            timezone=self.config.rules.timezone,
        )

    # Lifecycle

    def start(self) -> None:
        self.scheduler.start()
        self.cache_sweep.start()

    async def stop(self) -> None:
        """Gracefully stop background tasks and release provider clients."""
        self.logger.info("stopping_care_monitoring")
        await self.scheduler.stop()
        await self.cache_sweep.stop()
        for provider in self.providers:
            aclose = getattr(provider, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _sweep_caches(self) -> int:
        return self.caches.cleanup()

    # Entry points

    async def verify_ownership(self, subject_id: str, owner_id: str) -> None:
        key = ownership_key(subject_id, owner_id)
        if self.caches.ownership.get(key):
            return

        subject = await self.store.get_subject(subject_id)
        if subject is None:
            raise SubjectNotFoundError(subject_id)
        if subject.owner_id != owner_id:
            raise OwnershipError(subject_id, owner_id)
        self.caches.ownership.set(key, True)

    async def on_event_logged(self, subject_id: str, owner_id: str) -> EvaluationResult:
        try:
            await self.verify_ownership(subject_id, owner_id)
            self.rollups.invalidate(subject_id)
            return await self.rule_engine.evaluate(subject_id, owner_id)
        except DataError:
            raise
        except Exception as e:
            self.logger.exception("event_monitoring_failed", subject_id=subject_id, error=str(e))
            return EvaluationResult()

    async def on_schedule_confirmed(
        self, subject_id: str, owner_id: str, schedule: Schedule | dict[str, Any]
    ) -> list[str]:
        plan = coerce_schedule(schedule)
        try:
            await self.verify_ownership(subject_id, owner_id)
            result = await self.generator.expand(subject_id, owner_id, plan)
        except DataError:
            raise
        except TransientStoreError as e:
            self.logger.warning("schedule_expansion_skipped", subject_id=subject_id, error=str(e))
            return []
        return result.reminder_ids

    async def dismiss_reminder(self, reminder_id: str, owner_id: str) -> Reminder:
        reminder = await self.store.get_reminder(reminder_id)
        if reminder is None:
            raise ReminderNotFoundError(reminder_id)
        if reminder.owner_id != owner_id:
            raise OwnershipError(reminder.subject_id, owner_id)

        dismissed = await self.store.dismiss_reminder(reminder_id, self._clock())
        if dismissed is None:
            raise ReminderNotFoundError(reminder_id)
        self.logger.info("reminder_dismissed", reminder_id=reminder_id, subject_id=reminder.subject_id)
        return dismissed

    async def subject_status(self, subject_id: str, owner_id: str) -> SubjectStatus:
        """Dashboard view, always read from the store."""
        await self.verify_ownership(subject_id, owner_id)
        alerts = await self.store.active_alerts(subject_id, owner_id)
        if not alerts:
            return SubjectStatus(
                is_all_good=True,
                alert_count=0,
                overall_severity="none",
                reasons=[],
                active_alerts=[],
                summary="All good. No active alerts.",
                generated_at=self._clock(),
            )

        alerts.sort(key=lambda a: SEVERITY_RANK[a.severity], reverse=True)
        worst = alerts[0].severity
        return SubjectStatus(
            is_all_good=False,
            alert_count=len(alerts),
            overall_severity=worst.value.lower(),
            reasons=[a.message or a.title for a in alerts],
            active_alerts=alerts,
            summary=f"{len(alerts)} active alert(s), highest severity {worst.value}.",
            generated_at=self._clock(),
        )

    async def daily_rollup(self, subject_id: str, owner_id: str, day: date | None = None) -> DailyRollup:
        await self.verify_ownership(subject_id, owner_id)
        return await self.rollups.daily(subject_id, day)

    async def weekly_rollup(
        self, subject_id: str, owner_id: str, day: date | None = None
    ) -> WeeklyRollup:
        await self.verify_ownership(subject_id, owner_id)
        return await self.rollups.weekly(subject_id, day)

    def status(self) -> dict[str, Any]:
        return {
            "scheduler": self.scheduler.status(),
            "cache_sweep": self.cache_sweep.status(),
            "caches": {name: s.model_dump() for name, s in self.caches.stats().items()},
        }


def build_providers(config: AppConfig) -> list[ChannelProvider]:
    """Real providers for every channel with credentials configured."""
    from adapters.providers.fcm import FcmPushProvider
    from adapters.providers.twilio_sms import TwilioSmsProvider

    notifications = config.notifications
    providers: list[ChannelProvider] = []
    if notifications.push_enabled:
        providers.append(
            FcmPushProvider(notifications.fcm_project_id or "", notifications.fcm_access_token or "")
        )
    else:
        logger.warning("push_provider_disabled", reason="missing FCM credentials")
    if notifications.sms_enabled:
        providers.append(
            TwilioSmsProvider(
                notifications.twilio_account_sid or "",
                notifications.twilio_auth_token or "",
                notifications.twilio_from_number or "",
            )
        )
    else:
        logger.warning("sms_provider_disabled", reason="missing Twilio credentials")
    return providers


def build_store(config: AppConfig) -> MonitorStore:
    if config.database.backend == "mongo":
        from adapters.mongo.store import MongoMonitorStore

        return MongoMonitorStore.from_config(config.database)
    return InMemoryMonitorStore()


def build_service(config: AppConfig | None = None) -> CareMonitoringService:
    """Assemble the service from configuration."""
    config = config or get_config()
    return CareMonitoringService(
        store=build_store(config),
        providers=build_providers(config),
        config=config,
    )
