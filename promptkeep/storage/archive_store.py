"""Archive store: append-only, day/project partitioned JSONL files."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from promptkeep.errors import ArchiveIOError
from promptkeep.models import ArchivedRecord

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

logger = logging.getLogger(__name__)

PARTITION_PATTERN = re.compile(r"^(?P<project>.+)_(?P<day>\d{4}-\d{2}-\d{2})\.jsonl$")
UNKNOWN_PROJECT = "unknown"
IMAGES_DIRNAME = "images"


@dataclass(frozen=True)
class PartitionKey:
    """Identifies one archive partition: a project on a UTC calendar day."""

    project_name: str
    day: str

    @property
    def filename(self) -> str:
        """File name following ``{projectBasename}_{YYYY-MM-DD}.jsonl``."""
        return f"{self.project_name}_{self.day}.jsonl"

    @classmethod
    def for_record(cls, record: ArchivedRecord) -> PartitionKey:
        """Derive the partition a record belongs to.

        Args:
            record: Archived record

        Returns:
            Partition key from the project basename and the record's UTC day
        """
        project_name = record.project.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]
        day = datetime.fromtimestamp(record.timestamp / 1000, tz=UTC).strftime("%Y-%m-%d")
        return cls(project_name=project_name or UNKNOWN_PROJECT, day=day)

    @classmethod
    def from_filename(cls, filename: str) -> PartitionKey | None:
        """Parse a partition file name, or None if it doesn't follow the convention."""
        match = PARTITION_PATTERN.match(filename)
        if not match:
            return None
        return cls(project_name=match.group("project"), day=match.group("day"))


class ArchiveStore:
    """Partitioned JSONL archive.

    Appends add one line to a partition file. Deletions rewrite a partition
    wholesale (read fully, filter, write to a temp file, atomic replace), so
    a file is always the unit of atomicity. All mutations are serialized
    through a single lock: an ingestion append and a retention rewrite never
    interleave.
    """

    def __init__(self, root: Path | str) -> None:
        """Initialize archive store.

        Args:
            root: Archive root directory (partitions plus ``images/``)
        """
        self.root = Path(root).expanduser()
        self.images_root = self.root / IMAGES_DIRNAME
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the archive root if needed."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArchiveIOError(f"Cannot create archive root {self.root}: {e}", {"path": str(self.root)}) from e
        logger.info(f"Archive store initialized at {self.root}")

    def partition_path(self, partition_key: PartitionKey) -> Path:
        """Path of a partition file."""
        return self.root / partition_key.filename

    async def append(self, partition_key: PartitionKey, record: ArchivedRecord) -> Path:
        """Append one record as a JSON line, creating the partition if needed.

        Args:
            partition_key: Target partition
            record: Record to write

        Returns:
            Path of the partition file

        Raises:
            ArchiveIOError: If the write fails
        """
        path = self.partition_path(partition_key)
        line = record.to_json_line()

        async with self._lock:
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
            except OSError as e:
                raise ArchiveIOError(f"Failed to append to {path.name}: {e}", {"path": str(path)}) from e

        logger.debug(f"Appended record {record.timestamp} to {path.name}")
        return path

    def partition_files(self) -> list[Path]:
        """List partition files following the naming convention, sorted by name."""
        if not self.root.is_dir():
            return []
        return sorted(
            p for p in self.root.iterdir() if p.is_file() and PartitionKey.from_filename(p.name) is not None
        )

    @staticmethod
    def parse_line(line: str) -> ArchivedRecord | None:
        """Parse one archive line, returning None for corrupt or invalid lines."""
        text = line.strip()
        if not text:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        try:
            return ArchivedRecord.model_validate(data)
        except ValidationError:
            return None

    def iter_partition(self, path: Path) -> Iterator[ArchivedRecord]:
        """Yield valid records of one partition; corrupt lines are skipped.

        Args:
            path: Partition file

        Yields:
            Archived records in file order
        """
        try:
            with open(path, encoding="utf-8") as f:
                lines = f.readlines()
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read partition {path.name}: {e}")
            return

        for line_no, line in enumerate(lines, 1):
            record = self.parse_line(line)
            if record is None:
                if line.strip():
                    logger.debug(f"Skipping corrupt line {line_no} in {path.name}")
                continue
            yield record

    def scan(self, predicate: Callable[[ArchivedRecord], bool] | None = None) -> Iterator[ArchivedRecord]:
        """Stream every record across all partitions, filtering lazily.

        Args:
            predicate: Optional filter applied to each record

        Yields:
            Matching records
        """
        for path in self.partition_files():
            for record in self.iter_partition(path):
                if predicate is None or predicate(record):
                    yield record

    async def remove_where(
        self,
        predicate: Callable[[ArchivedRecord], bool],
        errors: list[ArchiveIOError] | None = None,
    ) -> list[ArchivedRecord]:
        """Rewrite every partition keeping only records for which ``predicate`` is false.

        Corrupt lines are kept verbatim. A partition left empty is removed.
        A failure on one partition is logged and the others are still processed.

        Args:
            predicate: Selects records to remove
            errors: Collects the failure of each partition that could not be rewritten

        Returns:
            The removed records
        """
        removed: list[ArchivedRecord] = []
        async with self._lock:
            for path in self.partition_files():
                try:
                    removed.extend(self._rewrite_partition(path, predicate))
                except ArchiveIOError as e:
                    logger.error(e.message)
                    if errors is not None:
                        errors.append(e)
        return removed

    async def delete_where(
        self,
        predicate: Callable[[ArchivedRecord], bool],
        errors: list[ArchiveIOError] | None = None,
    ) -> int:
        """Remove matching records from every partition.

        Args:
            predicate: Selects records to remove
            errors: Collects per-partition failures, see ``remove_where``

        Returns:
            Number of records removed
        """
        return len(await self.remove_where(predicate, errors))

    def _rewrite_partition(
        self, path: Path, predicate: Callable[[ArchivedRecord], bool]
    ) -> list[ArchivedRecord]:
        try:
            with open(path, encoding="utf-8") as f:
                lines = f.readlines()
        except (OSError, UnicodeDecodeError) as e:
            raise ArchiveIOError(f"Failed to read partition {path.name}: {e}", {"path": str(path)}) from e

        kept: list[str] = []
        removed: list[ArchivedRecord] = []
        for line in lines:
            if not line.strip():
                continue
            record = self.parse_line(line)
            if record is not None and predicate(record):
                removed.append(record)
            else:
                kept.append(line if line.endswith("\n") else line + "\n")

        if not removed:
            return removed

        try:
            if kept:
                self._write_atomic(path, kept)
            else:
                path.unlink()
        except OSError as e:
            raise ArchiveIOError(f"Failed to rewrite partition {path.name}: {e}", {"path": str(path)}) from e

        logger.debug(f"Removed {len(removed)} records from {path.name}")
        return removed

    def _write_atomic(self, path: Path, lines: list[str]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}_", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.writelines(lines)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    async def clear(self) -> int:
        """Delete every partition file and the images directory.

        Returns:
            Number of partition files deleted
        """
        deleted = 0
        async with self._lock:
            for path in self.partition_files():
                try:
                    path.unlink()
                    deleted += 1
                except OSError as e:
                    logger.error(f"Failed to delete partition {path.name}: {e}")
            if self.images_root.is_dir():
                shutil.rmtree(self.images_root, ignore_errors=True)

        logger.info(f"Cleared archive: {deleted} partition files deleted")
        return deleted

    async def remove_image_dirs_older_than(self, cutoff_ms: int) -> int:
        """Remove per-session image directories whose mtime is before ``cutoff_ms``.

        Args:
            cutoff_ms: Epoch milliseconds

        Returns:
            Number of directories removed
        """
        if not self.images_root.is_dir():
            return 0

        removed = 0
        async with self._lock:
            for session_dir in self.images_root.iterdir():
                try:
                    if not session_dir.is_dir():
                        continue
                    if session_dir.stat().st_mtime * 1000 < cutoff_ms:
                        shutil.rmtree(session_dir)
                        removed += 1
                except OSError as e:
                    logger.error(f"Failed to remove image directory {session_dir.name}: {e}")
        return removed

    async def remove_images(self, relative_paths: list[str]) -> int:
        """Delete image files referenced by a record.

        Args:
            relative_paths: Paths like ``images/<sessionId>/<file>``

        Returns:
            Number of files deleted
        """
        deleted = 0
        root = self.root.resolve()
        async with self._lock:
            for rel in relative_paths:
                target = (self.root / rel).resolve()
                if not target.is_relative_to(root):
                    logger.warning(f"Refusing to delete image outside archive: {rel}")
                    continue
                try:
                    if target.is_file():
                        target.unlink()
                        deleted += 1
                except OSError as e:
                    logger.error(f"Failed to delete image {rel}: {e}")
        return deleted
