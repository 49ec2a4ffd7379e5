"""Image resolution for archived prompts.

Two strategies are tried in order and the first non-empty result wins:

1. Transcript extraction: base64 image blocks are pulled out of the session
   transcript (``projects/<project>/<sessionId>.jsonl``) and the ones named by
   ``[Image #k]`` markers are written to ``images/<sessionId>/<k>.png``.
2. Image-cache copy: the source tool's per-session image-cache directory is
   awaited briefly (it can appear just after the log line), then matched
   files are copied into ``images/<sessionId>/``.

Existing output files are never overwritten, so resolving the same reference
twice returns the same path without touching the disk.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any

from promptkeep.errors import ArtifactResolutionError
from promptkeep.monitoring import metrics

logger = logging.getLogger(__name__)

IMAGE_MARKER_PATTERN = re.compile(r"\[Image #(\d+)\]")
ORDINAL_PATTERN = re.compile(r"\d+")
IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp"})
# Session ids become directory names
VALID_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")

STRATEGY_TRANSCRIPT = "transcript"
STRATEGY_IMAGE_CACHE = "image_cache"


def find_image_markers(text: str) -> list[int]:
    """Ordinals of ``[Image #k]`` markers in order of first appearance."""
    return list(dict.fromkeys(int(m) for m in IMAGE_MARKER_PATTERN.findall(text or "")))


def embedded_ordinal(filename: str) -> int:
    """First number embedded in a file name, 0 if there is none."""
    match = ORDINAL_PATTERN.search(filename)
    return int(match.group()) if match else 0


def is_image_file(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() in IMAGE_EXTENSIONS


def is_valid_session_id(session_id: str | None) -> bool:
    return bool(session_id) and VALID_SESSION_ID_PATTERN.match(session_id) is not None and session_id not in {".", ".."}


def project_folder_names(project: str) -> list[str]:
    """Candidate transcript folder names for a project path.

    The source tool flattens the project path into one directory name; older
    releases only replaced slashes, newer ones replace every non-alphanumeric
    character.
    """
    candidates = [project.replace("/", "-"), re.sub(r"[^A-Za-z0-9]", "-", project)]
    return list(dict.fromkeys(candidates))


class ImageResolver:
    """Materializes images referenced by a prompt into the archive."""

    def __init__(
        self,
        content_cache_root: Path | str,
        archive_root: Path | str,
        wait_attempts: int = 30,
        wait_interval_seconds: float = 0.1,
        settle_seconds: float = 0.3,
        match_window_ms: int = 5000,
    ) -> None:
        """Initialize image resolver.

        Args:
            content_cache_root: Source tool home (``projects/``, ``image-cache/``, ``images/``)
            archive_root: Archive root; images are written below ``images/``
            wait_attempts: Polls for the image-cache directory to appear
            wait_interval_seconds: Delay between polls
            settle_seconds: Delay before listing a found image-cache directory
            match_window_ms: Max mtime distance when matching unmarked prompts
        """
        self.content_cache_root = Path(content_cache_root).expanduser()
        self.archive_root = Path(archive_root).expanduser()
        self.wait_attempts = wait_attempts
        self.wait_interval_seconds = wait_interval_seconds
        self.settle_seconds = settle_seconds
        self.match_window_ms = match_window_ms

    def session_images_dir(self, session_id: str) -> Path:
        return self.archive_root / "images" / session_id

    @staticmethod
    def relative_path(session_id: str, filename: str) -> str:
        return f"images/{session_id}/{filename}"

    # ------------------------------------------------------------------
    # Strategy 1: transcript extraction
    # ------------------------------------------------------------------

    def transcript_path(self, session_id: str, project: str) -> Path | None:
        """Locate the session transcript, or None if it doesn't exist."""
        projects_dir = self.content_cache_root / "projects"
        for folder in project_folder_names(project):
            candidate = projects_dir / folder / f"{session_id}.jsonl"
            if candidate.is_file():
                return candidate
        return None

    @staticmethod
    def collect_transcript_images(transcript: Path) -> list[str]:
        """Collect base64 payloads of user-submitted images in arrival order.

        The payload at list index ``i`` is image ordinal ``i + 1``.

        Args:
            transcript: Session transcript file

        Returns:
            Base64 payloads
        """
        payloads: list[str] = []
        with open(transcript, encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                payloads.extend(_user_image_payloads(entry))
        return payloads

    def extract_from_transcript(self, session_id: str, project: str, prompt: str) -> list[str]:
        """Write the images named by the prompt's markers from the transcript.

        Args:
            session_id: Session identifier
            project: Project path of the record
            prompt: Prompt text containing ``[Image #k]`` markers

        Returns:
            Relative paths of the resolved images (possibly partial)
        """
        images: list[str] = []
        ordinals = find_image_markers(prompt)
        if not ordinals or not is_valid_session_id(session_id):
            return images

        logger.debug(f"Prompt in session {session_id} references images {ordinals}")

        transcript = self.transcript_path(session_id, project)
        if transcript is None:
            logger.debug(f"No transcript for session {session_id}, skipping extraction")
            return images

        try:
            payloads = self.collect_transcript_images(transcript)
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read transcript {transcript}: {e}")
            return images

        logger.debug(f"Transcript for session {session_id} holds {len(payloads)} images")

        images_dir = self.session_images_dir(session_id)
        for ordinal in ordinals:
            if not 1 <= ordinal <= len(payloads):
                logger.warning(f"Image #{ordinal} not found in transcript for session {session_id}")
                continue

            filename = f"{ordinal}.png"
            try:
                self._write_payload(images_dir / filename, payloads[ordinal - 1])
            except ArtifactResolutionError as e:
                logger.error(e.message)
                continue
            images.append(self.relative_path(session_id, filename))

        if images:
            metrics.images_resolved_total.labels(strategy=STRATEGY_TRANSCRIPT).inc(len(images))
            logger.info(f"Extracted {len(images)} images from transcript for session {session_id}")
        return images

    @staticmethod
    def _write_payload(target: Path, payload: str) -> None:
        if target.exists():
            return
        try:
            data = base64.b64decode(payload)
        except (binascii.Error, ValueError) as e:
            raise ArtifactResolutionError(f"Failed to decode {target.name}: {e}", {"path": str(target)}) from e
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "xb") as f:
                f.write(data)
        except FileExistsError:
            return
        except OSError as e:
            raise ArtifactResolutionError(f"Failed to write {target}: {e}", {"path": str(target)}) from e

    # ------------------------------------------------------------------
    # Strategy 2: image-cache copy
    # ------------------------------------------------------------------

    def image_cache_dirs(self, session_id: str) -> list[Path]:
        """Image-cache directories of a session, current layout first."""
        return [
            self.content_cache_root / "image-cache" / session_id,
            self.content_cache_root / "images" / session_id,
        ]

    async def wait_for_image_cache(self, session_id: str) -> bool:
        """Poll until an image-cache directory for the session exists.

        Returns:
            True if a directory appeared within the wait budget
        """
        dirs = self.image_cache_dirs(session_id)
        for _ in range(self.wait_attempts):
            if any(d.is_dir() for d in dirs):
                return True
            await asyncio.sleep(self.wait_interval_seconds)
        return any(d.is_dir() for d in dirs)

    async def copy_from_image_cache(self, session_id: str, prompt: str, timestamp_ms: int) -> list[str]:
        """Copy images for a record out of the source tool's image cache.

        With ``[Image #k]`` markers, marker k maps to the file whose embedded
        ordinal is k, falling back to the k-th file by ordinal order. Without
        markers, files modified within the match window of the record's
        timestamp are taken.

        Args:
            session_id: Session identifier
            prompt: Prompt text
            timestamp_ms: Record timestamp in epoch milliseconds

        Returns:
            Relative paths of the copied images (possibly partial)
        """
        images: list[str] = []
        if not is_valid_session_id(session_id):
            return images

        await self.wait_for_image_cache(session_id)

        for cache_dir in self.image_cache_dirs(session_id):
            if not cache_dir.is_dir():
                continue

            await asyncio.sleep(self.settle_seconds)

            try:
                files = [p for p in cache_dir.iterdir() if is_image_file(p)]
            except OSError as e:
                logger.error(f"Failed to list image cache {cache_dir}: {e}")
                continue
            if not files:
                continue

            ordinals = find_image_markers(prompt)
            if ordinals:
                selected = self._match_by_marker(files, ordinals)
            else:
                logger.debug(f"No image markers in session {session_id}, matching by timestamp")
                selected = self._match_by_mtime(files, timestamp_ms)

            images_dir = self.session_images_dir(session_id)
            for source in selected:
                try:
                    self._copy_file(source, images_dir / source.name)
                except ArtifactResolutionError as e:
                    logger.error(e.message)
                    continue
                images.append(self.relative_path(session_id, source.name))

            if images:
                break

        if images:
            metrics.images_resolved_total.labels(strategy=STRATEGY_IMAGE_CACHE).inc(len(images))
            logger.info(f"Copied {len(images)} images from image cache for session {session_id}")
        return images

    @staticmethod
    def _match_by_marker(files: list[Path], ordinals: list[int]) -> list[Path]:
        ordered = sorted(files, key=lambda p: (embedded_ordinal(p.name), p.name))
        selected: list[Path] = []
        for ordinal in ordinals:
            match = next((p for p in ordered if embedded_ordinal(p.name) == ordinal), None)
            if match is None and 1 <= ordinal <= len(ordered):
                match = ordered[ordinal - 1]
            if match is None:
                logger.warning(f"Image #{ordinal} not found in image cache")
                continue
            if match not in selected:
                selected.append(match)
        return selected

    def _match_by_mtime(self, files: list[Path], timestamp_ms: int) -> list[Path]:
        selected: list[Path] = []
        for path in sorted(files, key=lambda p: p.name):
            try:
                mtime_ms = path.stat().st_mtime * 1000
            except OSError as e:
                logger.error(f"Failed to stat {path}: {e}")
                continue
            if abs(mtime_ms - timestamp_ms) <= self.match_window_ms:
                selected.append(path)
        return selected

    @staticmethod
    def _copy_file(source: Path, target: Path) -> None:
        if target.exists():
            return
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
        except OSError as e:
            raise ArtifactResolutionError(f"Failed to copy image {source.name}: {e}", {"path": str(source)}) from e

    # ------------------------------------------------------------------

    async def resolve(self, session_id: str, project: str, prompt: str, timestamp_ms: int) -> list[str]:
        """Resolve a record's images, transcript first, image cache as fallback.

        Args:
            session_id: Session identifier
            project: Project path of the record
            prompt: Prompt text
            timestamp_ms: Record timestamp in epoch milliseconds

        Returns:
            Relative image paths, empty if nothing was found
        """
        # Transcript reads run off the event loop
        images = await asyncio.to_thread(self.extract_from_transcript, session_id, project, prompt)
        if not images:
            images = await self.copy_from_image_cache(session_id, prompt, timestamp_ms)

        if not images and find_image_markers(prompt):
            logger.warning(f"Session {session_id} references images but no image files were found")
        return images


def _user_image_payloads(entry: Any) -> list[str]:
    if not isinstance(entry, dict):
        return []
    message = entry.get("message")
    if not isinstance(message, dict) or message.get("role") != "user":
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []

    payloads: list[str] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "image":
            continue
        source = block.get("source")
        if isinstance(source, dict) and source.get("type") == "base64" and source.get("data"):
            payloads.append(source["data"])
    return payloads
