"""Session query layer: session and record views over the archive.

Every call re-scans the archive; nothing is cached, so results are never
stale.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING

from promptkeep.artifacts.images import find_image_markers, is_image_file, is_valid_session_id
from promptkeep.errors import ArtifactResolutionError
from promptkeep.models import (
    ArchivedRecord,
    CachedImage,
    PasteRef,
    SessionPaste,
    SessionSummary,
    parse_timestamp,
)

if TYPE_CHECKING:
    from promptkeep.artifacts import ImageResolver, PasteCache
    from promptkeep.storage.archive_store import ArchiveStore

logger = logging.getLogger(__name__)

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".png": "image/png",
}


def natural_sort_key(name: str) -> list[int | str]:
    """Sort key ordering embedded numbers numerically (``2.png`` before ``10.png``)."""
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def to_data_url(path: Path, data: bytes) -> str:
    """Encode image bytes as a ``data:`` URL typed by the file extension."""
    mime = MIME_TYPES.get(path.suffix.lower(), "image/png")
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


class SessionQuery:
    """Reconstructs sessions and records from the flat archive."""

    MAX_RECORDS = 1000

    def __init__(
        self,
        store: ArchiveStore,
        paste_cache: PasteCache,
        image_resolver: ImageResolver,
        source_log_path: Path | str | None = None,
    ) -> None:
        """Initialize session query layer.

        Args:
            store: Archive store to read
            paste_cache: Re-expands pastes stored unexpanded
            image_resolver: Re-resolves images missing from stored records
            source_log_path: Source log, used for session paste lookups
        """
        self.store = store
        self.paste_cache = paste_cache
        self.image_resolver = image_resolver
        self.source_log_path = Path(source_log_path).expanduser() if source_log_path else None

    def list_sessions(self) -> list[SessionSummary]:
        """Summarize every session in the archive.

        Records without a session id each form their own synthetic session.

        Returns:
            Summaries sorted by latest timestamp, newest first
        """
        sessions: dict[str, SessionSummary] = {}
        for record in self.store.scan():
            session_id = record.derived_session_id
            summary = sessions.get(session_id)
            if summary is None:
                summary = SessionSummary(
                    session_id=session_id,
                    project=record.project,
                    first_timestamp=record.timestamp,
                    latest_timestamp=record.timestamp,
                )
                sessions[session_id] = summary
            summary.record_count += 1
            summary.first_timestamp = min(summary.first_timestamp, record.timestamp)
            summary.latest_timestamp = max(summary.latest_timestamp, record.timestamp)

        return sorted(sessions.values(), key=lambda s: s.latest_timestamp, reverse=True)

    def get_session_detail(self, session_id: str, ascending: bool = False) -> list[ArchivedRecord]:
        """Fetch every record of one session.

        Pastes stored unexpanded are re-expanded, and records whose prompt
        references images but carry none get another transcript lookup.

        Args:
            session_id: Real or synthetic session id
            ascending: Oldest first instead of newest first

        Returns:
            Records of the session ordered by timestamp
        """
        records = [self._heal(r) for r in self.store.scan(lambda r: r.derived_session_id == session_id)]
        records.sort(key=lambda r: r.timestamp, reverse=not ascending)
        return records

    def list_records(self, limit: int = MAX_RECORDS) -> list[ArchivedRecord]:
        """Flat record listing across partitions, capped at ``limit``.

        Returns:
            Records in partition order
        """
        records: list[ArchivedRecord] = []
        for record in self.store.scan():
            if len(records) >= limit:
                break
            records.append(self._heal(record))
        return records

    def _heal(self, record: ArchivedRecord) -> ArchivedRecord:
        updates: dict[str, object] = {}

        if any(ref.needs_expansion for ref in record.pasted_contents.values()):
            updates["pasted_contents"] = self.paste_cache.expand_all(record.pasted_contents)

        if not record.images and record.session_id and find_image_markers(record.prompt):
            try:
                images = self.image_resolver.extract_from_transcript(
                    record.session_id, record.project, record.prompt
                )
            except Exception as e:
                logger.error(f"Image re-resolution failed for session {record.session_id}: {e}")
                images = []
            if images:
                updates["images"] = images

        return record.model_copy(update=updates) if updates else record

    async def delete_record(self, session_id: str, timestamp: int) -> bool:
        """Delete one archived record and the image files it references.

        Args:
            session_id: Real or synthetic session id of the record
            timestamp: Record timestamp in epoch milliseconds

        Returns:
            True if a record was removed
        """
        removed = await self.store.remove_where(
            lambda r: r.derived_session_id == session_id and r.timestamp == timestamp
        )
        if not removed:
            logger.info(f"No record {timestamp} in session {session_id} to delete")
            return False

        images = [path for record in removed for path in record.images]
        if images:
            await self.store.remove_images(images)
        logger.info(f"Deleted {len(removed)} record(s) from session {session_id}")
        return True

    def read_session_image_cache(self, session_id: str) -> list[CachedImage]:
        """List a session's images in the source tool's image cache as data URLs.

        A file name present in both cache directories is returned once.

        Args:
            session_id: Session identifier

        Returns:
            Images ordered naturally by file name
        """
        if not is_valid_session_id(session_id):
            raise ArtifactResolutionError("Invalid session id", {"session_id": session_id})

        images: dict[str, CachedImage] = {}
        for cache_dir in self.image_resolver.image_cache_dirs(session_id):
            if not cache_dir.is_dir():
                continue
            for path in cache_dir.iterdir():
                if path.name in images or not is_image_file(path):
                    continue
                try:
                    data = path.read_bytes()
                except OSError as e:
                    logger.error(f"Failed to read cached image {path}: {e}")
                    continue
                images[path.name] = CachedImage(filename=path.name, data_url=to_data_url(path, data))

        return [images[name] for name in sorted(images, key=natural_sort_key)]

    def read_archived_image(self, relative_path: str) -> str:
        """Load an archived image as a data URL.

        Args:
            relative_path: Path as stored on a record, like ``images/<sessionId>/1.png``

        Returns:
            ``data:`` URL of the image

        Raises:
            ArtifactResolutionError: If the path leaves the archive or cannot be read
        """
        root = self.store.root.resolve()
        target = (self.store.root / relative_path).resolve()
        if not target.is_relative_to(root):
            raise ArtifactResolutionError("Image path outside the archive", {"path": relative_path})
        if not target.is_file():
            raise ArtifactResolutionError("Image file does not exist", {"path": relative_path})

        try:
            data = target.read_bytes()
        except OSError as e:
            raise ArtifactResolutionError(f"Failed to read image: {e}", {"path": relative_path}) from e
        return to_data_url(target, data)

    def read_session_paste_cache(self, session_id: str) -> list[SessionPaste]:
        """Collect a session's pasted texts from the source log.

        Hash references are expanded from the paste cache; a hash seen twice
        is returned once.

        Args:
            session_id: Session identifier

        Returns:
            Pastes in source-log order
        """
        pastes: list[SessionPaste] = []
        if not session_id or self.source_log_path is None or not self.source_log_path.is_file():
            return pastes

        seen_hashes: set[str] = set()
        with open(self.source_log_path, encoding="utf-8", errors="replace") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(entry, dict) or entry.get("sessionId") != session_id:
                    continue
                pasted = entry.get("pastedContents")
                if not isinstance(pasted, dict):
                    continue

                try:
                    timestamp: int | None = parse_timestamp(entry.get("timestamp"))
                except ValueError:
                    timestamp = None

                for key, value in pasted.items():
                    if not isinstance(value, dict):
                        continue
                    ref = self.paste_cache.expand(PasteRef.model_validate(value))
                    if ref.content_hash:
                        if ref.content_hash in seen_hashes:
                            continue
                        seen_hashes.add(ref.content_hash)
                    if ref.content:
                        pastes.append(
                            SessionPaste(
                                key=str(key),
                                filename=ref.basename or str(key),
                                content=ref.content,
                                content_hash=ref.content_hash,
                                timestamp=timestamp,
                            )
                        )
        return pastes
