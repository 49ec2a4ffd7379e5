"""Error taxonomy for promptkeep.

Every error is contained at the smallest possible scope: a ``ParseError``
drops one line, an ``ArtifactResolutionError`` degrades one field, an
``ArchiveIOError`` aborts one file or record, and a ``ConfigurationError``
keeps one subsystem from running. None of them stop the watcher or the
retention loop.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "ArchiveIOError",
    "ArtifactResolutionError",
    "ConfigurationError",
    "ParseError",
    "PromptKeepError",
    "RetentionDisabledError",
]


class PromptKeepError(Exception):
    """Base exception for promptkeep errors."""

    error_code = "promptkeep_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize error.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary.

        Returns:
            Error dictionary with code, message and details
        """
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ParseError(PromptKeepError):
    """Raised for a malformed source line or an unparseable timestamp."""

    error_code = "parse_error"


class ArtifactResolutionError(PromptKeepError):
    """Raised when a paste or image reference cannot be materialized."""

    error_code = "artifact_resolution_error"


class ArchiveIOError(PromptKeepError):
    """Raised when a partition or artifact file cannot be read or written."""

    error_code = "archive_io_error"


class ConfigurationError(PromptKeepError):
    """Raised when a subsystem cannot run with the current configuration."""

    error_code = "configuration_error"


class RetentionDisabledError(ConfigurationError):
    """Raised when a cleanup is requested while retention is disabled."""

    error_code = "retention_disabled"

    def __init__(self, details: dict[str, Any] | None = None):
        super().__init__("Automatic cleanup is not enabled", details)
