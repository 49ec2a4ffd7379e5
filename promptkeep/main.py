"""promptkeep application: wires ingestion, queries and retention together."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import TYPE_CHECKING, Any

from promptkeep.artifacts import ImageResolver, PasteCache
from promptkeep.config import PromptKeepConfig, SettingsStore, get_config
from promptkeep.errors import ArchiveIOError, ConfigurationError
from promptkeep.ingestion import IngestionPipeline, IngestionWorker
from promptkeep.query import SessionQuery
from promptkeep.storage import ArchiveStore, RetentionScheduler

if TYPE_CHECKING:
    from collections.abc import Callable

    from promptkeep.config import RetentionPolicy
    from promptkeep.models import (
        ArchivedRecord,
        CachedImage,
        CleanupResult,
        CleanupStatus,
        SessionPaste,
        SessionSummary,
    )

logger = logging.getLogger(__name__)


class PromptKeepApplication:
    """promptkeep application with lifecycle management.

    Owns one archive root at a time. Monitoring and retention state live on
    the worker and scheduler instances created here; changing the archive
    root rebuilds them.

    Attributes:
        config: Effective configuration
        settings: Persisted settings (record toggle, archive root, retention policy)
        shutdown_event: Event for graceful shutdown
        worker: Active ingestion worker, if monitoring
    """

    def __init__(self, config: PromptKeepConfig | None = None, settings: SettingsStore | None = None) -> None:
        """Initialize application.

        Args:
            config: Configuration, loaded from the environment when omitted
            settings: Settings store, opened at ``config.settings_path`` when omitted
        """
        self.config = config or get_config()
        self.settings = settings or SettingsStore(
            self.config.settings_path,
            defaults={SettingsStore.RECORD_ENABLED_KEY: self.config.record_enabled},
        )
        self.shutdown_event = asyncio.Event()
        self.worker: IngestionWorker | None = None
        self._record_callbacks: list[Callable[[ArchivedRecord], Any]] = []
        self._pipeline_unsubscribers: dict[Callable[[ArchivedRecord], Any], Callable[[], None]] = {}
        self._cleanup_listeners: list[tuple[str, Callable[[dict[str, Any]], Any]]] = []
        self._build_components(self.archive_root)

    @property
    def archive_root(self) -> Path:
        """Archive root from the settings store, else the configured default."""
        return self.settings.archive_root() or Path(self.config.archive_root_path)

    @property
    def monitoring(self) -> bool:
        return self.worker is not None and self.worker.running

    def _build_components(self, archive_root: Path) -> None:
        content_cache_root = Path(self.config.content_cache_root)
        ingestion = self.config.ingestion

        self.store = ArchiveStore(archive_root)
        self.paste_cache = PasteCache(content_cache_root)
        self.image_resolver = ImageResolver(
            content_cache_root,
            archive_root,
            wait_attempts=ingestion.image_wait_attempts,
            wait_interval_seconds=ingestion.image_wait_interval_seconds,
            settle_seconds=ingestion.image_settle_seconds,
            match_window_ms=ingestion.timestamp_match_window_ms,
        )
        self.pipeline = IngestionPipeline(self.store, self.paste_cache, self.image_resolver)
        self.query = SessionQuery(
            self.store, self.paste_cache, self.image_resolver, source_log_path=self.config.source_log_path
        )
        self.scheduler = RetentionScheduler(
            self.settings, self.store, tick_interval_seconds=self.config.retention.tick_interval_seconds
        )

        for callback in self._record_callbacks:
            self._pipeline_unsubscribers[callback] = self.pipeline.on_new_record(callback)
        for event, listener in self._cleanup_listeners:
            self.scheduler.on(event, listener)

        logger.debug(f"Components built for archive root {archive_root}")

    async def initialize(self) -> None:
        """Create the archive root."""
        await self.store.initialize()

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    def on_new_record(self, callback: Callable[[ArchivedRecord], Any]) -> Callable[[], None]:
        """Register a callback invoked once per newly archived record.

        Returns:
            Function removing the callback again
        """
        self._record_callbacks.append(callback)
        self._pipeline_unsubscribers[callback] = self.pipeline.on_new_record(callback)

        def unsubscribe() -> None:
            if callback in self._record_callbacks:
                self._record_callbacks.remove(callback)
            remove = self._pipeline_unsubscribers.pop(callback, None)
            if remove:
                remove()

        return unsubscribe

    def on_cleanup_event(self, event: str, listener: Callable[[dict[str, Any]], Any]) -> None:
        """Register a retention ``tick``, ``executed`` or ``error`` listener."""
        self.scheduler.on(event, listener)
        self._cleanup_listeners.append((event, listener))

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def start_monitoring(self, source_path: Path | str | None = None) -> bool:
        """Start tailing the source log.

        Any running monitoring session is stopped first.

        Args:
            source_path: Log to tail, defaults to the configured source log

        Returns:
            True if monitoring started
        """
        await self.stop_monitoring()
        source = Path(source_path) if source_path else Path(self.config.source_log_path)

        try:
            await self.store.initialize()
            worker = IngestionWorker(
                source, self.pipeline, poll_interval_seconds=self.config.ingestion.poll_interval_seconds
            )
            await worker.start()
        except (ArchiveIOError, ConfigurationError) as e:
            logger.error(f"Monitoring not started: {e.message}")
            return False

        self.worker = worker
        return True

    async def stop_monitoring(self) -> None:
        """Stop tailing; queued batches are archived first."""
        if self.worker is None:
            return
        await self.worker.stop()
        self.worker = None

    async def save_record_config(self, enabled: bool, archive_root: Path | str | None = None) -> bool:
        """Persist the record toggle and archive root, then start or stop monitoring.

        Args:
            enabled: Whether new entries are archived
            archive_root: New archive root, keeps the current one when omitted

        Returns:
            Whether monitoring is running afterwards
        """
        root = Path(archive_root).expanduser() if archive_root else self.archive_root
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create archive root {root}: {e}", {"path": str(root)}) from e

        self.settings.save_record_config(enabled, root)

        if root != self.store.root:
            scheduler_active = self.scheduler.active
            await self.stop_monitoring()
            await self.scheduler.stop()
            self._build_components(root)
            if scheduler_active:
                await self.scheduler.start()

        if enabled:
            return await self.start_monitoring()
        await self.stop_monitoring()
        return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_sessions(self) -> list[SessionSummary]:
        return self.query.list_sessions()

    def get_session_detail(self, session_id: str) -> list[ArchivedRecord]:
        return self.query.get_session_detail(session_id)

    def list_records(self, limit: int = SessionQuery.MAX_RECORDS) -> list[ArchivedRecord]:
        return self.query.list_records(limit)

    def read_session_image_cache(self, session_id: str) -> list[CachedImage]:
        return self.query.read_session_image_cache(session_id)

    def read_session_paste_cache(self, session_id: str) -> list[SessionPaste]:
        return self.query.read_session_paste_cache(session_id)

    def read_archived_image(self, relative_path: str) -> str:
        return self.query.read_archived_image(relative_path)

    async def delete_record(self, session_id: str, timestamp: int) -> bool:
        return await self.query.delete_record(session_id, timestamp)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def run_cleanup_now(self) -> CleanupResult:
        return await self.scheduler.run_cleanup_now()

    def get_cleanup_status(self) -> CleanupStatus:
        return self.scheduler.get_cleanup_status()

    async def clean_by_age(self, retain_ms: int) -> int:
        """One-off cleanup of records older than ``retain_ms``.

        Returns:
            Number of records deleted
        """
        stats = await self.scheduler.clean_by_age(retain_ms)
        return stats.records_deleted

    async def clear_archive(self) -> int:
        """Delete every partition and all archived images.

        Returns:
            Number of partition files deleted
        """
        return await self.store.clear()

    async def update_retention_policy(self, **changes: Any) -> RetentionPolicy:
        """Persist retention policy changes and re-arm a running scheduler.

        Returns:
            The updated policy
        """
        policy = self.settings.update_retention_policy(**changes)
        if self.scheduler.active:
            await self.scheduler.start()
        return policy

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start monitoring and retention, then run until shutdown."""
        logger.info("Starting promptkeep application")

        await self.initialize()
        enabled, _ = self.settings.record_config()
        if enabled:
            await self.start_monitoring()
        else:
            logger.info("Recording disabled, not monitoring the source log")
        await self.scheduler.start()

        logger.info("Setting up signal handlers for graceful shutdown")
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        logger.info("promptkeep application started")
        logger.info(f"   Archive: {self.archive_root}")
        logger.info(f"   Source log: {self.config.source_log_path}")
        logger.info(f"   Monitoring: {'enabled' if self.monitoring else 'disabled'}")
        logger.info(f"   Auto cleanup: {'enabled' if self.get_cleanup_status().enabled else 'disabled'}")

        try:
            await self.shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("Application cancelled")

    def _handle_shutdown(self, signum: int, _frame: Any = None) -> None:
        """Handle shutdown signal.

        Args:
            signum: Signal number (SIGINT or SIGTERM)
            _frame: Current stack frame (unused)
        """
        signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
        logger.info(f"Received {signal_name} signal, initiating graceful shutdown")
        self.shutdown_event.set()

    async def stop(self) -> None:
        """Stop monitoring and retention."""
        logger.info("Stopping promptkeep application")
        await self.stop_monitoring()
        await self.scheduler.stop()
        logger.info("promptkeep application shutdown complete")
