"""
Background scheduler: due-reminder polling and terminal-reminder cleanup.

Two independent PeriodicTasks. The poll task drains pending reminders whose
`next_trigger_at` has passed, one at a time with a small pause between sends,
bounded by the batch size. The cleanup task deletes sent/failed/dismissed
reminders scheduled at or before the retention cutoff, batch by batch until a
batch comes back short.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel

from core.config import SchedulerConfig
from core.domain.exceptions import TransientStoreError
from core.domain.models import ReminderStatus, utcnow
from core.services.dispatcher import NotificationDispatcher
from core.services.periodic import PeriodicTask
from core.services.store import MonitorStore

logger = structlog.get_logger(__name__)

NO_CHANNELS_ERROR = "no channels configured"


class PollSummary(BaseModel):
    total: int = 0
    sent: int = 0
    failed: int = 0
    stale: int = 0
    errors: int = 0
    skipped: bool = False


class BackgroundScheduler:
    def __init__(
        self,
        store: MonitorStore,
        dispatcher: NotificationDispatcher,
        config: SchedulerConfig,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self.poll_task = PeriodicTask(
            "reminder_poll", config.poll_interval_seconds, self.poll_due_reminders
        )
        self.cleanup_task = PeriodicTask(
            "reminder_cleanup", config.cleanup_interval_seconds, self.cleanup_terminal_reminders
        )
        self.total_sent = 0
        self.total_failed = 0
        self.total_deleted = 0
        self.logger = logger.bind(component="background_scheduler")

    def start(self) -> None:
        self.poll_task.start()
        self.cleanup_task.start()
        self.logger.info(
            "scheduler_started",
            poll_interval_seconds=self.config.poll_interval_seconds,
            cleanup_interval_seconds=self.config.cleanup_interval_seconds,
        )

    async def stop(self) -> None:
        await self.poll_task.stop()
        await self.cleanup_task.stop()
        self.logger.info("scheduler_stopped")

    async def poll_due_reminders(self) -> PollSummary:
        now = self._clock()
        try:
            due = await self.store.due_reminders(now, self.config.poll_batch_size)
        except TransientStoreError as e:
            self.logger.warning("poll_cycle_skipped", error=str(e))
            return PollSummary(skipped=True)

        if not due:
            self.logger.debug("no_due_reminders")
            return PollSummary()

        summary = PollSummary(total=len(due))
        for index, reminder in enumerate(due):
            if index and self.config.send_delay_seconds:
                await self._sleep(self.config.send_delay_seconds)

            try:
                delivery = await self.dispatcher.send(reminder)
                if delivery.attempted:
                    status, error = delivery.status, delivery.error_summary
                else:
                    status, error = ReminderStatus.FAILED, NO_CHANNELS_ERROR
                updated = await self.store.record_delivery(reminder.id, status, error, self._clock())
            except TransientStoreError as e:
                summary.errors += 1
                self.logger.warning("delivery_not_recorded", reminder_id=reminder.id, error=str(e))
                continue
            except Exception as e:
                summary.errors += 1
                self.logger.exception("reminder_dispatch_failed", reminder_id=reminder.id, error=str(e))
                continue

            if updated is None:
                # Dismissed or resolved while the send was in flight.
                summary.stale += 1
            elif updated.status is ReminderStatus.SENT:
                summary.sent += 1
            else:
                summary.failed += 1

        self.total_sent += summary.sent
        self.total_failed += summary.failed
        self.logger.info("poll_cycle_completed", **summary.model_dump(exclude={"skipped"}))
        return summary

    async def cleanup_terminal_reminders(self) -> int:
        cutoff = self._clock() - timedelta(days=self.config.retention_days)
        batch_size = self.config.cleanup_batch_size
        total = 0

        while True:
            try:
                deleted = await self.store.delete_terminal_reminders(cutoff, batch_size)
            except TransientStoreError as e:
                self.logger.warning("cleanup_cycle_interrupted", deleted_so_far=total, error=str(e))
                break
            total += deleted
            if deleted < batch_size:
                break
            if self.config.cleanup_batch_pause_seconds:
                await self._sleep(self.config.cleanup_batch_pause_seconds)

        self.total_deleted += total
        if total:
            self.logger.info("cleanup_completed", deleted=total, cutoff=cutoff.isoformat())
        else:
            self.logger.debug("cleanup_nothing_to_delete", cutoff=cutoff.isoformat())
        return total

    def status(self) -> dict[str, Any]:
        return {
            "poll": self.poll_task.status(),
            "cleanup": self.cleanup_task.status(),
            "totals": {
                "sent": self.total_sent,
                "failed": self.total_failed,
                "deleted": self.total_deleted,
            },
            "config": self.config.model_dump(),
        }
