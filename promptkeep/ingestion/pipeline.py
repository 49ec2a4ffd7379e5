"""Ingestion pipeline: raw source lines -> archived records."""

from __future__ import annotations

import inspect
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from promptkeep.errors import ArchiveIOError, ParseError
from promptkeep.models import ArchivedRecord, RawEntry
from promptkeep.monitoring import metrics
from promptkeep.storage.archive_store import PartitionKey

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from promptkeep.artifacts import ImageResolver, PasteCache
    from promptkeep.storage.archive_store import ArchiveStore

logger = logging.getLogger(__name__)


def parse_raw_line(line: str) -> RawEntry:
    """Parse one source-log line.

    Args:
        line: Raw JSON line

    Returns:
        Validated entry

    Raises:
        ParseError: If the line is not a JSON object or its timestamp is invalid
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ParseError(f"Malformed JSON line: {e}", {"reason": "invalid_json"}) from e

    if not isinstance(data, dict):
        raise ParseError("Source line is not a JSON object", {"reason": "invalid_entry"})

    try:
        return RawEntry.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Invalid source entry: {e.errors()[0]['msg']}", {"reason": "invalid_entry"}) from e


class IngestionPipeline:
    """Normalizes raw entries, resolves their artifacts and archives them.

    Every line is handled independently: a bad line is dropped, a failed image
    lookup degrades to an empty image list, and a failed write drops only that
    record. No deduplication is done, so processing the same line twice yields
    two independent archive rows.
    """

    def __init__(
        self,
        store: ArchiveStore,
        paste_cache: PasteCache,
        image_resolver: ImageResolver,
    ) -> None:
        """Initialize pipeline.

        Args:
            store: Archive store receiving records
            paste_cache: Paste reference expansion
            image_resolver: Image resolution for records with a session id
        """
        self.store = store
        self.paste_cache = paste_cache
        self.image_resolver = image_resolver
        self._callbacks: list[Callable[[ArchivedRecord], Any]] = []

    def on_new_record(self, callback: Callable[[ArchivedRecord], Any]) -> Callable[[], None]:
        """Register a live-update callback, invoked once per archived record.

        Callbacks may be plain functions or coroutine functions.

        Returns:
            Function removing the callback again
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def process_lines(self, lines: Iterable[str]) -> list[ArchivedRecord]:
        """Process one change-event batch sequentially.

        Returns:
            Records archived from the batch
        """
        archived: list[ArchivedRecord] = []
        for line in lines:
            record = await self.process_line(line)
            if record is not None:
                archived.append(record)
        return archived

    async def process_line(self, line: str) -> ArchivedRecord | None:
        """Parse and archive one raw line.

        Returns:
            The archived record, or None if the line was dropped
        """
        try:
            entry = parse_raw_line(line)
        except ParseError as e:
            logger.warning(f"Dropping source line: {e.message}")
            metrics.lines_dropped_total.labels(reason=e.details.get("reason", "invalid_entry")).inc()
            return None

        try:
            with metrics.ingestion_duration_seconds.time():
                return await self.process_entry(entry)
        except Exception as e:
            logger.error(f"Failed to archive entry {entry.timestamp}: {e}", exc_info=True)
            metrics.lines_dropped_total.labels(reason="internal_error").inc()
            return None

    async def build_record(self, entry: RawEntry) -> ArchivedRecord:
        """Expand pastes and resolve images for an entry.

        Returns:
            The enriched record, not yet written
        """
        pasted_contents = self.paste_cache.expand_all(entry.pasted_contents)

        images: list[str] = []
        if entry.session_id:
            try:
                images = await self.image_resolver.resolve(
                    entry.session_id, entry.project, entry.display, entry.timestamp
                )
            except Exception as e:
                logger.error(f"Image resolution failed for session {entry.session_id}: {e}", exc_info=True)
                images = []

        return ArchivedRecord(
            timestamp=entry.timestamp,
            project=entry.project,
            session_id=entry.session_id,
            prompt=entry.display,
            pasted_contents=pasted_contents,
            images=images,
        )

    async def process_entry(self, entry: RawEntry) -> ArchivedRecord | None:
        """Archive a validated entry and fan out the live update.

        Returns:
            The archived record, or None if the write failed
        """
        record = await self.build_record(entry)
        partition_key = PartitionKey.for_record(record)

        try:
            await self.store.append(partition_key, record)
        except ArchiveIOError as e:
            logger.error(f"Failed to save record: {e.message}")
            metrics.lines_dropped_total.labels(reason="write_failed").inc()
            return None

        metrics.records_archived_total.labels(project=partition_key.project_name).inc()
        logger.debug(f"Archived record {record.timestamp} to {partition_key.filename}")

        await self._notify(record)
        return record

    async def _notify(self, record: ArchivedRecord) -> None:
        for callback in list(self._callbacks):
            try:
                result = callback(record)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"New-record callback {callback!r} failed: {e}", exc_info=True)
