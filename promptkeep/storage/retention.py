"""Retention scheduler: timer-driven, age-based archive cleanup."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from promptkeep.errors import ArchiveIOError, RetentionDisabledError
from promptkeep.models import CleanupResult, CleanupStatus
from promptkeep.monitoring import metrics

if TYPE_CHECKING:
    from collections.abc import Callable

    from promptkeep.config import RetentionPolicy, SettingsStore
    from promptkeep.storage.archive_store import ArchiveStore

logger = logging.getLogger(__name__)

EVENT_TICK = "tick"
EVENT_EXECUTED = "executed"
EVENT_ERROR = "error"
EVENTS = (EVENT_TICK, EVENT_EXECUTED, EVENT_ERROR)

TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class CleanupStats:
    """Statistics for one cleanup pass."""

    records_deleted: int = 0
    image_dirs_deleted: int = 0
    errors: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None


class RetentionScheduler:
    """Deletes archived records older than the configured retention window.

    The next pass is a one-shot timer re-armed after every pass, so the
    interval is always measured from the end of the previous pass. A second
    task broadcasts the countdown once per tick while cleanup is enabled.
    Policy values are re-read from the settings store on every use.

    A pass that has started always runs to completion: cancelling the timer,
    triggering a manual pass or stopping the scheduler only waits for it.
    """

    def __init__(
        self,
        settings: SettingsStore,
        store: ArchiveStore,
        tick_interval_seconds: float = 1.0,
    ) -> None:
        """Initialize retention scheduler.

        Args:
            settings: Settings store holding the retention policy
            store: Archive store to prune
            tick_interval_seconds: Countdown broadcast interval
        """
        self.settings = settings
        self.store = store
        self.tick_interval_seconds = tick_interval_seconds
        self._listeners: dict[str, list[Callable[[dict[str, Any]], Any]]] = {event: [] for event in EVENTS}
        self._timer_task: asyncio.Task[None] | None = None
        self._tick_task: asyncio.Task[None] | None = None
        self._pass_task: asyncio.Task[CleanupResult] | None = None
        self._cycle_lock = asyncio.Lock()
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @property
    def timer_armed(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def on(self, event: str, callback: Callable[[dict[str, Any]], Any]) -> Callable[[], None]:
        """Subscribe to ``tick``, ``executed`` or ``error`` events.

        Returns:
            Function removing the callback again
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown retention event: {event}")
        self._listeners[event].append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        return unsubscribe

    async def _emit(self, event: str, payload: dict[str, Any]) -> None:
        for callback in list(self._listeners[event]):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Retention {event} listener failed: {e}", exc_info=True)

    async def start(self) -> None:
        """(Re)arm the timers from the persisted policy.

        Existing timers are cancelled first. Nothing is armed while cleanup is
        disabled. A missing or past ``next_cleanup_time`` is replaced by
        ``now + interval_ms`` and persisted.
        """
        await self._cancel_timers()
        self._active = True

        policy = self.settings.retention_policy()
        if not policy.enabled:
            logger.info("Automatic cleanup disabled, scheduler idle")
            return

        current = now_ms()
        next_cleanup_time = policy.next_cleanup_time
        if not next_cleanup_time or next_cleanup_time <= current:
            next_cleanup_time = current + policy.interval_ms
            self.settings.update_retention_policy(next_cleanup_time=next_cleanup_time)

        self._arm(max(0, next_cleanup_time - current))
        self._tick_task = asyncio.create_task(self._tick_loop(), name="promptkeep-retention-tick")

        logger.info(
            f"Retention scheduler started: interval {policy.interval_ms}ms, "
            f"retain {policy.retain_ms}ms, next pass at {datetime.fromtimestamp(next_cleanup_time / 1000, UTC)}"
        )

    def _arm(self, delay_ms: int) -> None:
        if self._timer_task and not self._timer_task.done():
            self._timer_task.cancel()
        self._timer_task = asyncio.create_task(
            self._run_after(delay_ms / 1000), name="promptkeep-retention-timer"
        )

    async def _run_after(self, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        # The timer has fired; re-arming from inside the pass must not cancel it.
        self._timer_task = None
        with contextlib.suppress(Exception):
            await self._execute(TRIGGER_SCHEDULED)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval_seconds)
            status = self.get_cleanup_status()
            if not status.enabled:
                continue
            await self._emit(
                EVENT_TICK,
                {"next_cleanup_time": status.next_cleanup_time, "remaining_ms": status.remaining_ms},
            )

    async def _execute(self, trigger: str) -> CleanupResult:
        if self._pass_task is None or self._pass_task.done():
            self._pass_task = asyncio.create_task(self._cleanup_cycle(trigger), name="promptkeep-retention-pass")
        return await asyncio.shield(self._pass_task)

    async def _cleanup_cycle(self, trigger: str) -> CleanupResult:
        async with self._cycle_lock:
            policy = self.settings.retention_policy()
            start = time.perf_counter()
            try:
                if trigger == TRIGGER_SCHEDULED and not policy.enabled:
                    logger.info("Automatic cleanup disabled, skipping scheduled pass")
                    return CleanupResult(deleted_count=0, next_cleanup_time=policy.next_cleanup_time)

                stats = await self.clean_by_age(policy.retain_ms)

                finished = now_ms()
                next_cleanup_time = finished + policy.interval_ms
                self.settings.update_retention_policy(
                    last_cleanup_time=finished, next_cleanup_time=next_cleanup_time
                )
            except Exception as e:
                logger.error(f"Cleanup pass failed: {e}", exc_info=True)
                metrics.cleanup_runs_total.labels(trigger=trigger, status="error").inc()
                await self._emit(EVENT_ERROR, {"error": str(e)})
                self._rearm(policy.interval_ms)
                raise
            finally:
                metrics.cleanup_duration_seconds.observe(time.perf_counter() - start)

            metrics.cleanup_runs_total.labels(trigger=trigger, status="success").inc()
            metrics.cleanup_records_deleted_total.inc(stats.records_deleted)
            logger.info(
                f"Cleanup pass complete: {stats.records_deleted} records, "
                f"{stats.image_dirs_deleted} image directories deleted, next pass at "
                f"{datetime.fromtimestamp(next_cleanup_time / 1000, UTC)}"
            )

            await self._emit(
                EVENT_EXECUTED,
                {"deleted_count": stats.records_deleted, "next_cleanup_time": next_cleanup_time},
            )
            self._rearm(policy.interval_ms)
            return CleanupResult(deleted_count=stats.records_deleted, next_cleanup_time=next_cleanup_time)

    def _rearm(self, interval_ms: int) -> None:
        if not self._active or not self.settings.retention_policy().enabled:
            return
        self._arm(interval_ms)

    async def clean_by_age(self, retain_ms: int) -> CleanupStats:
        """Delete records and image directories older than ``retain_ms``.

        Runs independently of the scheduler policy and does not touch the
        persisted cleanup times.

        Args:
            retain_ms: Maximum age kept, in milliseconds

        Returns:
            Cleanup statistics
        """
        stats = CleanupStats(start_time=datetime.now(UTC))
        cutoff = now_ms() - retain_ms

        logger.info(f"Deleting records older than {datetime.fromtimestamp(cutoff / 1000, UTC)}")

        failures: list[ArchiveIOError] = []
        stats.records_deleted = await self.store.delete_where(
            lambda record: record.timestamp < cutoff, errors=failures
        )
        stats.errors += len(failures)

        try:
            stats.image_dirs_deleted = await self.store.remove_image_dirs_older_than(cutoff)
        except OSError as e:
            stats.errors += 1
            logger.error(f"Failed to prune image directories: {e}")

        stats.end_time = datetime.now(UTC)
        duration = (stats.end_time - stats.start_time).total_seconds()
        logger.info(
            f"Age cleanup finished in {duration:.2f}s: {stats.records_deleted} records, "
            f"{stats.image_dirs_deleted} image directories, {stats.errors} errors"
        )
        return stats

    async def run_cleanup_now(self) -> CleanupResult:
        """Run a pass immediately and restart the countdown from its end.

        Returns:
            Deleted record count and the new next cleanup time

        Raises:
            RetentionDisabledError: If automatic cleanup is disabled
        """
        policy = self.settings.retention_policy()
        if not policy.enabled:
            raise RetentionDisabledError({"policy": policy.model_dump()})

        if self._timer_task and not self._timer_task.done():
            self._timer_task.cancel()
        self._timer_task = None

        if self._pass_task and not self._pass_task.done():
            logger.debug("Waiting for the running cleanup pass before the manual one")
            with contextlib.suppress(Exception):
                await asyncio.shield(self._pass_task)

        return await self._execute(TRIGGER_MANUAL)

    def get_cleanup_status(self) -> CleanupStatus:
        """Current countdown derived from the persisted policy."""
        policy: RetentionPolicy = self.settings.retention_policy()
        if not policy.enabled:
            return CleanupStatus(enabled=False)

        next_cleanup_time = policy.next_cleanup_time or None
        remaining_ms = max(0, next_cleanup_time - now_ms()) if next_cleanup_time else None
        return CleanupStatus(enabled=True, next_cleanup_time=next_cleanup_time, remaining_ms=remaining_ms)

    async def _cancel_timers(self) -> None:
        for task in (self._timer_task, self._tick_task):
            if task and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._timer_task = None
        self._tick_task = None

    async def stop(self) -> None:
        """Cancel both timers, letting a running pass finish first."""
        self._active = False
        await self._cancel_timers()
        if self._pass_task and not self._pass_task.done():
            with contextlib.suppress(Exception):
                await asyncio.shield(self._pass_task)
        logger.info("Retention scheduler stopped")
