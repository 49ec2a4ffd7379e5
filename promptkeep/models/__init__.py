"""promptkeep data models."""

from __future__ import annotations

import json
import logging
import math
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

SYNTHETIC_SESSION_PREFIX = "single-"


def parse_timestamp(value: Any) -> int:
    """Convert a wall-clock value into epoch milliseconds.

    Accepts ISO-8601 strings (naive values are read as UTC) and numeric
    epoch-millisecond values.

    Args:
        value: Raw timestamp from a source or archive line

    Returns:
        Epoch milliseconds

    Raises:
        ValueError: If the value is missing, unparseable, not finite or out of range
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"Timestamp is not finite: {value!r}")
        return _representable(int(value))

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Empty timestamp")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValueError(f"Invalid timestamp: {value!r}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return _representable(int(parsed.timestamp() * 1000))

    raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")


def _representable(timestamp_ms: int) -> int:
    try:
        datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError) as e:
        raise ValueError(f"Timestamp out of range: {timestamp_ms}") from e
    return timestamp_ms


def format_timestamp(timestamp_ms: int) -> str:
    """Format epoch milliseconds as an ISO-8601 UTC string."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).isoformat().replace("+00:00", "Z")


class CamelModel(BaseModel):
    """Base model that reads and writes the source tool's camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PasteRef(CamelModel):
    """Reference to pasted text.

    When ``content`` is absent the text lives in the content-addressed paste
    cache under ``content_hash``. Unknown keys written by the source tool
    (``id``, ``type``, ...) are kept as-is.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    content_hash: str | None = None
    content: str | None = None
    basename: str | None = None

    @property
    def needs_expansion(self) -> bool:
        """Whether the text must be fetched from the paste cache."""
        return not self.content and bool(self.content_hash)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the source tool's key names."""
        return self.model_dump(by_alias=True, exclude_none=True)


def _coerce_pasted_contents(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        return {}
    kept: dict[str, Any] = {}
    for key, ref in value.items():
        if isinstance(ref, (dict, PasteRef)):
            kept[str(key)] = ref
        else:
            logger.debug(f"Ignoring non-object pasted content entry {key!r}")
    return kept


class RawEntry(CamelModel):
    """One JSON object appended to the source log."""

    timestamp: int
    project: str = ""
    session_id: str | None = None
    display: str = ""
    pasted_contents: dict[str, PasteRef] = Field(default_factory=dict)

    @field_validator("timestamp", mode="before")
    @classmethod
    def validate_timestamp(cls, v: Any) -> int:
        """Normalize the wall-clock string to epoch milliseconds."""
        return parse_timestamp(v)

    @field_validator("project", "display", mode="before")
    @classmethod
    def validate_text(cls, v: Any) -> str:
        """Treat null text fields as empty."""
        return "" if v is None else str(v)

    @field_validator("session_id", mode="before")
    @classmethod
    def validate_session_id(cls, v: Any) -> str | None:
        """Treat empty session ids as absent."""
        return str(v) if v else None

    @field_validator("pasted_contents", mode="before")
    @classmethod
    def validate_pasted_contents(cls, v: Any) -> dict[str, Any]:
        """Keep only object-valued paste references."""
        return _coerce_pasted_contents(v)


class ArchivedRecord(CamelModel):
    """The durable unit written to an archive partition."""

    timestamp: int
    project: str = ""
    session_id: str | None = None
    prompt: str = ""
    pasted_contents: dict[str, PasteRef] = Field(default_factory=dict)
    images: list[str] = Field(default_factory=list)

    @field_validator("timestamp", mode="before")
    @classmethod
    def validate_timestamp(cls, v: Any) -> int:
        """Accept epoch milliseconds as well as ISO strings from older archives."""
        return parse_timestamp(v)

    @field_validator("project", "prompt", mode="before")
    @classmethod
    def validate_text(cls, v: Any) -> str:
        """Treat null text fields as empty."""
        return "" if v is None else str(v)

    @field_validator("session_id", mode="before")
    @classmethod
    def validate_session_id(cls, v: Any) -> str | None:
        """Treat empty session ids as absent."""
        return str(v) if v else None

    @field_validator("pasted_contents", mode="before")
    @classmethod
    def validate_pasted_contents(cls, v: Any) -> dict[str, Any]:
        """Keep only object-valued paste references."""
        return _coerce_pasted_contents(v)

    @field_validator("images", mode="before")
    @classmethod
    def validate_images(cls, v: Any) -> list[str]:
        """Treat a missing image list like an empty one."""
        if not v:
            return []
        return [str(path) for path in v]

    @property
    def derived_session_id(self) -> str:
        """Session id, or a synthetic one so unattributed prompts don't collide."""
        return self.session_id or f"{SYNTHETIC_SESSION_PREFIX}{self.timestamp}"

    @property
    def has_image_markers(self) -> bool:
        """Whether the prompt references images with ``[Image #k]`` markers."""
        return "[Image #" in self.prompt

    def to_archive_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk shape.

        ``images`` is omitted entirely when empty, as is a missing session id.
        """
        data: dict[str, Any] = {
            "timestamp": self.timestamp,
            "project": self.project,
        }
        if self.session_id:
            data["sessionId"] = self.session_id
        data["prompt"] = self.prompt
        data["pastedContents"] = {key: ref.to_dict() for key, ref in self.pasted_contents.items()}
        if self.images:
            data["images"] = list(self.images)
        return data

    def to_json_line(self) -> str:
        """Serialize to one newline-terminated JSON line."""
        return json.dumps(self.to_archive_dict(), ensure_ascii=False) + "\n"


class SessionSummary(CamelModel):
    """Session-level view derived from archived records."""

    session_id: str
    project: str
    first_timestamp: int
    latest_timestamp: int
    record_count: int = 0


class CleanupResult(CamelModel):
    """Outcome of one retention pass."""

    deleted_count: int
    next_cleanup_time: int | None = None


class CleanupStatus(CamelModel):
    """Retention countdown as seen by collaborators."""

    enabled: bool
    next_cleanup_time: int | None = None
    remaining_ms: int | None = None


class CachedImage(CamelModel):
    """Image found in the source tool's image cache."""

    filename: str
    data_url: str


class SessionPaste(CamelModel):
    """Pasted text belonging to a session, expanded from the paste cache."""

    key: str
    filename: str
    content: str
    content_hash: str | None = None
    timestamp: int | None = None


__all__ = [
    "ArchivedRecord",
    "CachedImage",
    "CleanupResult",
    "CleanupStatus",
    "PasteRef",
    "RawEntry",
    "SessionPaste",
    "SessionSummary",
    "SYNTHETIC_SESSION_PREFIX",
    "format_timestamp",
    "parse_timestamp",
]
