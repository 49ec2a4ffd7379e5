"""Pytest configuration and fixtures for promptkeep tests."""

from __future__ import annotations

import base64
import json
from pathlib import Path
from typing import Any

import pytest

from promptkeep.artifacts import ImageResolver, PasteCache
from promptkeep.config import SettingsStore
from promptkeep.storage.archive_store import ArchiveStore

# 1x1 transparent PNG
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


def _write_jsonl(path: Path, entries: list[Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for entry in entries:
            f.write((entry if isinstance(entry, str) else json.dumps(entry)) + "\n")


def _transcript_image_entry(data: bytes = PNG_BYTES) -> dict[str, Any]:
    return {
        "type": "user",
        "message": {
            "role": "user",
            "content": [
                {"type": "text", "text": "look"},
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": "image/png",
                        "data": base64.b64encode(data).decode("ascii"),
                    },
                },
            ],
        },
    }


@pytest.fixture
def write_jsonl():
    """Write entries (dicts or raw strings) as JSON lines."""
    return _write_jsonl


@pytest.fixture
def transcript_image_entry():
    """Build a transcript line holding one user-submitted base64 image."""
    return _transcript_image_entry


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def content_root(tmp_path: Path) -> Path:
    """Source tool home with an empty history log."""
    root = tmp_path / "claude"
    root.mkdir()
    (root / "history.jsonl").touch()
    return root


@pytest.fixture
def archive_root(tmp_path: Path) -> Path:
    return tmp_path / "archive"


@pytest.fixture
async def archive_store(archive_root: Path) -> ArchiveStore:
    store = ArchiveStore(archive_root)
    await store.initialize()
    return store


@pytest.fixture
def paste_cache(content_root: Path) -> PasteCache:
    return PasteCache(content_root)


@pytest.fixture
def image_resolver(content_root: Path, archive_root: Path) -> ImageResolver:
    """Image resolver with waits short enough for tests."""
    return ImageResolver(
        content_root,
        archive_root,
        wait_attempts=2,
        wait_interval_seconds=0.01,
        settle_seconds=0,
    )


@pytest.fixture
def settings_store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "config" / "settings.yaml")
