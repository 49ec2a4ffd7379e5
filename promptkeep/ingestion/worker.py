"""Ingestion worker: one monitoring session over the source log."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from promptkeep.ingestion.tail import TailWatcher
from promptkeep.monitoring import metrics

if TYPE_CHECKING:
    from promptkeep.ingestion.pipeline import IngestionPipeline

logger = logging.getLogger(__name__)


class IngestionWorker:
    """Tail-based ingestion worker.

    Owns the watcher state for one source file from ``start()`` to ``stop()``.
    A producer task turns file growth into line batches and queues them; a
    consumer task feeds batches to the pipeline one at a time. Batches queue
    instead of being dropped, so a slow record (waiting on an image cache)
    never stops growth detection.
    """

    def __init__(
        self,
        source_path: Path | str,
        pipeline: IngestionPipeline,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        """Initialize worker.

        Args:
            source_path: Append-only log to tail
            pipeline: Pipeline archiving each line
            poll_interval_seconds: Change detection interval
        """
        self.source_path = Path(source_path).expanduser()
        self.pipeline = pipeline
        self.poll_interval_seconds = poll_interval_seconds
        self.watcher: TailWatcher | None = None
        self._queue: asyncio.Queue[list[str] | None] = asyncio.Queue()
        self._producer_task: asyncio.Task[None] | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_read_offset(self) -> int | None:
        return self.watcher.last_read_offset if self.watcher else None

    async def start(self) -> None:
        """Start monitoring from the current end of the source log.

        Raises:
            ConfigurationError: If the source log does not exist
        """
        if self._running:
            await self.stop()

        watcher = TailWatcher(self.source_path, poll_interval_seconds=self.poll_interval_seconds)
        watcher.start()

        self.watcher = watcher
        self._queue = asyncio.Queue()
        self._running = True
        self._producer_task = asyncio.create_task(self._produce(watcher), name="promptkeep-tail")
        self._consumer_task = asyncio.create_task(self._consume(), name="promptkeep-ingest")
        logger.info(f"Ingestion worker started for {self.source_path}")

    async def _produce(self, watcher: TailWatcher) -> None:
        stream = watcher.events()
        try:
            async for event in stream:
                if not event.ok:
                    continue
                self._queue.put_nowait(event.lines)
                metrics.ingestion_queue_size.set(self._queue.qsize())
                logger.debug(f"Queued {len(event.lines)} new lines")
        finally:
            await stream.aclose()

    async def _consume(self) -> None:
        while True:
            batch = await self._queue.get()
            try:
                if batch is None:
                    return
                await self.pipeline.process_lines(batch)
            except Exception as e:
                logger.error(f"Ingestion batch failed: {e}", exc_info=True)
            finally:
                self._queue.task_done()
                metrics.ingestion_queue_size.set(self._queue.qsize())

    async def drain(self) -> None:
        """Wait until every queued batch has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Stop monitoring.

        Growth detection stops immediately; batches already queued are still
        archived before this returns.
        """
        if not self._running:
            return
        self._running = False

        if self.watcher:
            self.watcher.stop()
        if self._producer_task:
            self._producer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._producer_task

        if self._consumer_task:
            self._queue.put_nowait(None)
            await self._consumer_task

        self._producer_task = None
        self._consumer_task = None
        self.watcher = None
        logger.info("Ingestion worker stopped")
