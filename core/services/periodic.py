"""
Periodic background task with an explicit start/stop lifecycle.

A tick never overlaps the previous one: while a run is in flight, further
triggers are counted as skipped instead of starting a second run. A failing
run is logged and the loop keeps ticking.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import structlog

from core.domain.models import utcnow

logger = structlog.get_logger(__name__)


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        job: Callable[[], Awaitable[Any]],
        run_immediately: bool = False,
        stop_timeout_seconds: float = 5.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._job = job
        self._run_immediately = run_immediately
        self.stop_timeout_seconds = stop_timeout_seconds
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._in_flight = False
        self.run_count = 0
        self.failure_count = 0
        self.skipped_count = 0
        self.last_run_at: datetime | None = None
        self.last_error: str | None = None
        self.logger = logger.bind(component="periodic_task", task=name)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def start(self) -> None:
        if self.is_running:
            return
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._task = asyncio.create_task(self._loop(stop_event), name=f"periodic:{self.name}")
        self.logger.info("periodic_task_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None or self._stop_event is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=self.stop_timeout_seconds)
        except TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self.logger.info("periodic_task_stopped", runs=self.run_count)

    async def run_once(self) -> Any:
        """Run the job now unless a run is already in flight."""
        if self._in_flight:
            self.skipped_count += 1
            self.logger.warning("periodic_run_skipped_overlap")
            return None

        self._in_flight = True
        self.last_run_at = utcnow()
        try:
            result = await self._job()
            self.last_error = None
            return result
        except Exception as e:
            self.failure_count += 1
            self.last_error = str(e)
            self.logger.exception("periodic_run_failed", error=str(e))
            return None
        finally:
            self.run_count += 1
            self._in_flight = False

    async def _loop(self, stop_event: asyncio.Event) -> None:
        if self._run_immediately:
            await self.run_once()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
                break
            except TimeoutError:
                pass
            await self.run_once()

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self.is_running,
            "in_flight": self._in_flight,
            "interval_seconds": self.interval_seconds,
            "runs": self.run_count,
            "failures": self.failure_count,
            "skipped": self.skipped_count,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }
