"""Integration tests for the promptkeep ingestion pipeline.

Appends to a real history log and checks what reaches the archive: pastes
from the paste cache and images from session transcripts.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from promptkeep.artifacts import ImageResolver, PasteCache
from promptkeep.ingestion import IngestionPipeline, IngestionWorker
from promptkeep.models import ArchivedRecord
from promptkeep.storage.archive_store import ArchiveStore

BASE = 1704067200000


def _append(path: Path, *entries: dict) -> None:
    with open(path, "a", encoding="utf-8") as f:
        for entry in entries:
            f.write(json.dumps(entry) + "\n")


async def _wait_for(records: list[ArchivedRecord], count: int) -> None:
    for _ in range(500):
        if len(records) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"expected {count} archived records, got {len(records)}")


@pytest.fixture
async def running_worker(
    content_root: Path, archive_store: ArchiveStore, paste_cache: PasteCache, image_resolver: ImageResolver
):
    """Worker tailing the test history log, with archived records collected."""
    pipeline = IngestionPipeline(archive_store, paste_cache, image_resolver)
    archived: list[ArchivedRecord] = []
    pipeline.on_new_record(archived.append)
    worker = IngestionWorker(content_root / "history.jsonl", pipeline, poll_interval_seconds=0.01)
    await worker.start()
    yield worker, archived
    await worker.stop()


@pytest.mark.asyncio
async def test_appended_prompt_is_archived(running_worker, content_root: Path, archive_root: Path) -> None:
    worker, archived = running_worker

    _append(
        content_root / "history.jsonl",
        {"timestamp": "2024-01-01T00:00:00Z", "project": "/a/b/proj", "sessionId": "s1", "display": "hello"},
    )
    await _wait_for(archived, 1)

    lines = (archive_root / "proj_2024-01-01.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["prompt"] == "hello"


@pytest.mark.asyncio
async def test_pre_existing_history_is_ignored(
    content_root: Path, archive_store: ArchiveStore, paste_cache: PasteCache, image_resolver: ImageResolver
) -> None:
    _append(content_root / "history.jsonl", {"timestamp": BASE, "display": "before"})
    pipeline = IngestionPipeline(archive_store, paste_cache, image_resolver)
    worker = IngestionWorker(content_root / "history.jsonl", pipeline, poll_interval_seconds=0.01)

    await worker.start()
    _append(content_root / "history.jsonl", {"timestamp": BASE + 1, "display": "after"})
    for _ in range(500):
        if list(archive_store.scan()):
            break
        await asyncio.sleep(0.01)
    await worker.stop()

    assert [r.prompt for r in archive_store.scan()] == ["after"]


@pytest.mark.asyncio
async def test_malformed_line_does_not_block_batch(running_worker, content_root: Path) -> None:
    worker, archived = running_worker

    with open(content_root / "history.jsonl", "a", encoding="utf-8") as f:
        f.write("{broken\n")
        f.write(json.dumps({"timestamp": BASE, "display": "valid"}) + "\n")
    await _wait_for(archived, 1)

    assert [r.prompt for r in archived] == ["valid"]


@pytest.mark.asyncio
async def test_paste_and_transcript_image(
    running_worker, content_root: Path, archive_root: Path, write_jsonl, transcript_image_entry, png_bytes
) -> None:
    worker, archived = running_worker
    (content_root / "paste-cache").mkdir()
    (content_root / "paste-cache" / "abc.txt").write_text("long pasted text", encoding="utf-8")
    write_jsonl(content_root / "projects" / "-a-b-proj" / "s1.jsonl", [transcript_image_entry()])

    _append(
        content_root / "history.jsonl",
        {
            "timestamp": BASE,
            "project": "/a/b/proj",
            "sessionId": "s1",
            "display": "[Pasted text #1] and [Image #1]",
            "pastedContents": {"1": {"id": 1, "type": "text", "contentHash": "abc"}},
        },
    )
    await _wait_for(archived, 1)

    [record] = archived
    assert record.pasted_contents["1"].content == "long pasted text"
    assert record.images == ["images/s1/1.png"]
    assert (archive_root / "images" / "s1" / "1.png").read_bytes() == png_bytes


@pytest.mark.asyncio
async def test_lines_appended_in_separate_writes(running_worker, content_root: Path) -> None:
    worker, archived = running_worker
    line = json.dumps({"timestamp": BASE, "display": "split write"}) + "\n"

    with open(content_root / "history.jsonl", "a", encoding="utf-8") as f:
        f.write(line[:10])
    await asyncio.sleep(0.05)
    with open(content_root / "history.jsonl", "a", encoding="utf-8") as f:
        f.write(line[10:])
    await _wait_for(archived, 1)

    assert [r.prompt for r in archived] == ["split write"]
