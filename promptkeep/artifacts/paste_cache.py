"""Content-addressed paste cache lookups."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from promptkeep.errors import ArtifactResolutionError
from promptkeep.models import PasteRef
from promptkeep.monitoring import metrics

logger = logging.getLogger(__name__)

# Hashes are used as file names; anything else is treated as a miss
VALID_HASH_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class PasteCache:
    """Expands paste references whose text was stored by hash."""

    def __init__(self, content_cache_root: Path | str) -> None:
        """Initialize paste cache.

        Args:
            content_cache_root: Source tool home containing ``paste-cache/``
        """
        self.cache_dir = Path(content_cache_root).expanduser() / "paste-cache"

    def path_for(self, content_hash: str) -> Path | None:
        """Cache file for a hash, or None if the hash is not a safe file name."""
        if not VALID_HASH_PATTERN.match(content_hash):
            return None
        return self.cache_dir / f"{content_hash}.txt"

    def read(self, content_hash: str) -> str | None:
        """Read cached text.

        Args:
            content_hash: Content hash from a paste reference

        Returns:
            Cached text, or None when no cache file exists

        Raises:
            ArtifactResolutionError: If the cache file exists but can't be read
        """
        path = self.path_for(content_hash)
        if path is None or not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ArtifactResolutionError(
                f"Failed to read paste cache {content_hash}: {e}", {"content_hash": content_hash}
            ) from e

    def expand(self, ref: PasteRef) -> PasteRef:
        """Attach cached text to a reference that only carries a hash.

        References that already have content, or whose cache file is missing
        or unreadable, are returned unchanged.

        Args:
            ref: Paste reference

        Returns:
            Expanded reference
        """
        if not ref.needs_expansion:
            return ref

        try:
            content = self.read(ref.content_hash or "")
        except ArtifactResolutionError as e:
            logger.error(e.message)
            metrics.pastes_expanded_total.labels(status="error").inc()
            return ref

        if content is None:
            logger.debug(f"Paste cache miss for {ref.content_hash}")
            metrics.pastes_expanded_total.labels(status="miss").inc()
            return ref

        metrics.pastes_expanded_total.labels(status="hit").inc()
        return ref.model_copy(update={"content": content})

    def expand_all(self, pasted_contents: dict[str, PasteRef]) -> dict[str, PasteRef]:
        """Expand every reference of a ``pastedContents`` map, keeping all keys."""
        return {key: self.expand(ref) for key, ref in pasted_contents.items()}
