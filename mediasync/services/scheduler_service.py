"""Interval scheduler for reconciliation and cleanup runs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from functools import partial
from typing import TYPE_CHECKING, Any

from mediasync.models.operation import OperationSource
from mediasync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from mediasync.services.lock_service import LockProvider

logger = logging.getLogger(__name__)

ALREADY_RUNNING = "already running"


class SchedulerState(StrEnum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class JobReport:
    """What a job run did, in the scheduler's terms."""

    processed: int = 0
    failed: int = 0
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass
class RunOutcome:
    started: bool
    reason: str | None = None
    report: JobReport | None = None


@dataclass
class JobStats:
    interval_seconds: float
    runs: int = 0
    skipped: int = 0
    errors: int = 0
    total_processed: int = 0
    total_failed: int = 0
    last_run: datetime | None = None
    next_run: datetime | None = None
    last_error: str | None = None
    last_detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "skipped": self.skipped,
            "errors": self.errors,
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_error": self.last_error,
            "last_result": self.last_detail,
        }


class SyncScheduler:
    """Explicit start/stop state machine over named interval jobs.

    Each job runs under its own run-lock. A tick that finds the lock held is
    skipped, not queued. ``stop()`` cancels timers only; a run already in
    flight finishes on its own.
    """

    def __init__(
        self,
        jobs: dict[str, tuple[Callable[[str], Awaitable[JobReport]], float]],
        lock_provider: LockProvider,
        *,
        clock: Callable[[], datetime] = now_utc,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._jobs = {name: func for name, (func, _) in jobs.items()}
        self._stats = {
            name: JobStats(interval_seconds=interval) for name, (_, interval) in jobs.items()
        }
        self._locks = lock_provider
        self._clock = clock
        self._sleep = sleep
        self._state = SchedulerState.STOPPED
        self._started_at: datetime | None = None
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._in_flight: set[asyncio.Task[RunOutcome]] = set()

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def start(self) -> bool:
        """Start the timers. Returns False when already running."""
        if self.is_running:
            return False
        self._state = SchedulerState.RUNNING
        self._started_at = self._clock()
        for name in self._jobs:
            self._timers[name] = asyncio.create_task(self._timer(name), name=f"scheduler:{name}")
        logger.info("Scheduler started with jobs: %s", ", ".join(self._jobs))
        return True

    def stop(self) -> bool:
        """Cancel the timers. Returns False when already stopped."""
        if not self.is_running:
            return False
        self._state = SchedulerState.STOPPED
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()
        for stats in self._stats.values():
            stats.next_run = None
        logger.info("Scheduler stopped")
        return True

    async def _timer(self, name: str) -> None:
        stats = self._stats[name]
        while self.is_running:
            stats.next_run = self._clock() + timedelta(seconds=stats.interval_seconds)
            await self._sleep(stats.interval_seconds)
            if not self.is_running:
                return
            task = asyncio.create_task(
                self.trigger(name, source=OperationSource.SCHEDULED), name=f"scheduler-run:{name}"
            )
            self._in_flight.add(task)
            task.add_done_callback(partial(self._run_finished, name))

    def _run_finished(self, name: str, task: asyncio.Task[RunOutcome]) -> None:
        self._in_flight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # raised before the job body ran, e.g. the lock backend is down
            stats = self._stats[name]
            stats.errors += 1
            stats.last_error = str(exc) or exc.__class__.__name__
            logger.error("Scheduled %s run could not start: %s", name, exc, exc_info=exc)

    async def trigger(
        self,
        name: str,
        *,
        source: str = OperationSource.MANUAL,
        job: Callable[[str], Awaitable[JobReport]] | None = None,
    ) -> RunOutcome:
        """Run a job now under its run-lock.

        ``job`` overrides the registered function for this run (e.g. a manual
        sync with custom options) while keeping the same lock.
        """
        if name not in self._jobs:
            raise ValueError(f"Unknown job: {name}")
        stats = self._stats[name]
        if not await self._locks.acquire(name):
            stats.skipped += 1
            logger.info("Skipping %s run (%s): %s", name, source, ALREADY_RUNNING)
            return RunOutcome(started=False, reason=ALREADY_RUNNING)

        func = job or self._jobs[name]
        stats.last_run = self._clock()
        try:
            report = await func(source)
        except Exception as exc:
            stats.errors += 1
            stats.last_error = str(exc) or exc.__class__.__name__
            logger.exception("Scheduled job %s failed", name)
            if source != OperationSource.SCHEDULED:
                raise
            return RunOutcome(started=True, reason=stats.last_error)
        finally:
            await self._locks.release(name)

        stats.runs += 1
        stats.total_processed += report.processed
        stats.total_failed += report.failed
        stats.last_error = None
        stats.last_detail = report.detail
        return RunOutcome(started=True, report=report)

    async def wait_idle(self) -> None:
        """Wait for runs spawned by timers to finish."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    def status(self) -> dict[str, Any]:
        processed = sum(s.total_processed for s in self._stats.values())
        failed = sum(s.total_failed for s in self._stats.values())
        attempted = processed + failed
        last_runs = [s.last_run for s in self._stats.values() if s.last_run]
        next_runs = [s.next_run for s in self._stats.values() if s.next_run]
        uptime = 0.0
        if self.is_running and self._started_at is not None:
            uptime = (self._clock() - self._started_at).total_seconds() / 60
        return {
            "is_running": self.is_running,
            "state": self._state.value,
            "last_run": max(last_runs).isoformat() if last_runs else None,
            "next_run": min(next_runs).isoformat() if next_runs else None,
            "total_processed": processed,
            "total_failed": failed,
            "success_rate": round(processed / attempted * 100, 2) if attempted else 100.0,
            "uptime_minutes": round(uptime, 2),
            "jobs": {name: stats.to_dict() for name, stats in self._stats.items()},
        }