"""Tail watcher: emits complete lines appended to a growing file."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from promptkeep.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


@dataclass
class TailEvent:
    """One change event: the complete lines read, or the error that stopped the read."""

    lines: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TailWatcher:
    """Incrementally reads bytes appended to a file since the last read.

    The initial offset is the file size when watching starts, so lines that
    existed before are never replayed. An unterminated trailing line is held
    back and prefixed onto the next delta. The offset only advances once a
    read has completed, and no file handle is kept open between reads.

    Attributes:
        path: Watched file
        last_read_offset: Bytes consumed so far
    """

    def __init__(self, path: Path | str, poll_interval_seconds: float = 0.5) -> None:
        """Initialize tail watcher.

        Args:
            path: File to watch
            poll_interval_seconds: Interval between change checks
        """
        self.path = Path(path).expanduser()
        self.poll_interval_seconds = poll_interval_seconds
        self.last_read_offset = 0
        self._remainder = b""
        self._signature: tuple[int, int] | None = None
        self._running = False
        self._started = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending_bytes(self) -> int:
        """Size of the buffered, not yet terminated line."""
        return len(self._remainder)

    def start(self) -> None:
        """Anchor the offset at the current end of file.

        Raises:
            ConfigurationError: If the file does not exist
        """
        try:
            stat = self.path.stat()
        except FileNotFoundError as e:
            raise ConfigurationError(f"Source log not found: {self.path}", {"path": str(self.path)}) from e

        self.last_read_offset = stat.st_size
        self._remainder = b""
        self._signature = (stat.st_size, stat.st_mtime_ns)
        self._started = True
        logger.info(f"Watching {self.path} from offset {self.last_read_offset}")

    def read_delta(self) -> list[str]:
        """Read bytes appended since the last read and split them into lines.

        A file that did not grow (or was truncated) is a no-op.

        Returns:
            Complete, non-blank lines in file order

        Raises:
            OSError: If the file can't be read; the offset is left unchanged
        """
        current_size = os.stat(self.path).st_size
        if current_size <= self.last_read_offset:
            return []

        with open(self.path, "rb") as f:
            f.seek(self.last_read_offset)
            chunk = f.read(current_size - self.last_read_offset)

        parts = (self._remainder + chunk).split(b"\n")
        self._remainder = parts.pop()
        self.last_read_offset += len(chunk)

        lines: list[str] = []
        for raw in parts:
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            if line.strip():
                lines.append(line)
        return lines

    def _current_signature(self) -> tuple[int, int] | None:
        try:
            stat = self.path.stat()
        except OSError:
            return None
        return (stat.st_size, stat.st_mtime_ns)

    async def events(self) -> AsyncIterator[TailEvent]:
        """Stream change events until ``stop()`` is called.

        A change is detected when the file's size or mtime differs from the
        last observation. Read errors are logged and delivered as an error
        event; watching continues afterwards.

        Yields:
            TailEvent per change that produced lines or failed
        """
        if not self._started:
            self.start()

        self._running = True
        try:
            while self._running:
                signature = self._current_signature()
                if signature is not None and signature != self._signature:
                    self._signature = signature
                    try:
                        lines = self.read_delta()
                    except OSError as e:
                        logger.error(f"Error reading new lines from {self.path}: {e}")
                        yield TailEvent(error=e)
                    else:
                        if lines:
                            yield TailEvent(lines=lines)
                await asyncio.sleep(self.poll_interval_seconds)
        finally:
            self._running = False
            logger.debug(f"Stopped watching {self.path}")

    def stop(self) -> None:
        """End the event stream after the current poll."""
        self._running = False
