"""Integration tests for PromptKeepApplication.

Drives the application the way a front end would: record toggle, live
record callbacks, session views and retention.
"""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Any

import pytest

from promptkeep.config import HOUR_MS, IngestionConfig, PromptKeepConfig, SettingsStore
from promptkeep.errors import ConfigurationError, RetentionDisabledError
from promptkeep.main import PromptKeepApplication
from promptkeep.models import ArchivedRecord
from promptkeep.storage.archive_store import PartitionKey
from promptkeep.storage.retention import EVENT_EXECUTED, now_ms


def _append(path: Path, *entries: dict) -> None:
    with open(path, "a", encoding="utf-8") as f:
        for entry in entries:
            f.write(json.dumps(entry) + "\n")


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def app_config(tmp_path: Path, content_root: Path, archive_root: Path) -> PromptKeepConfig:
    """Configuration with every path inside the test directory."""
    return PromptKeepConfig(
        archive_root_path=archive_root,
        content_cache_root=content_root,
        source_log_path=content_root / "history.jsonl",
        settings_path=tmp_path / "config" / "settings.yaml",
        ingestion=IngestionConfig(
            poll_interval_seconds=0.01,
            image_wait_attempts=2,
            image_wait_interval_seconds=0.01,
            image_settle_seconds=0,
        ),
    )


@pytest.fixture
async def app(app_config: PromptKeepConfig):
    application = PromptKeepApplication(config=app_config)
    await application.initialize()
    yield application
    await application.stop()


class TestMonitoring:
    """Test suite for the record toggle and live updates."""

    @pytest.mark.asyncio
    async def test_new_record_callback(self, app: PromptKeepApplication, content_root: Path) -> None:
        received: list[ArchivedRecord] = []
        app.on_new_record(received.append)

        assert await app.start_monitoring()
        _append(content_root / "history.jsonl", {"timestamp": 1704067200000, "sessionId": "s1", "display": "hi"})
        await _wait_until(lambda: received)

        assert received[0].prompt == "hi"
        assert [s.session_id for s in app.list_sessions()] == ["s1"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, app: PromptKeepApplication, content_root: Path) -> None:
        received: list[ArchivedRecord] = []
        unsubscribe = app.on_new_record(received.append)
        unsubscribe()

        await app.start_monitoring()
        _append(content_root / "history.jsonl", {"timestamp": 1704067200000, "display": "hi"})
        await _wait_until(lambda: app.list_records())

        assert received == []

    @pytest.mark.asyncio
    async def test_missing_source_does_not_start(self, app: PromptKeepApplication, tmp_path: Path) -> None:
        assert not await app.start_monitoring(tmp_path / "missing.jsonl")
        assert not app.monitoring

    @pytest.mark.asyncio
    async def test_save_record_config_toggles_monitoring(self, app: PromptKeepApplication) -> None:
        assert await app.save_record_config(True)
        assert app.monitoring
        assert app.settings.record_config()[0] is True

        assert not await app.save_record_config(False)
        assert not app.monitoring
        assert app.settings.record_config()[0] is False

    @pytest.mark.asyncio
    async def test_new_archive_root_keeps_callbacks(
        self, app: PromptKeepApplication, content_root: Path, tmp_path: Path
    ) -> None:
        received: list[ArchivedRecord] = []
        app.on_new_record(received.append)
        new_root = tmp_path / "moved"

        await app.save_record_config(True, new_root)
        _append(content_root / "history.jsonl", {"timestamp": 1704067200000, "project": "/x/p", "display": "hi"})
        await _wait_until(lambda: received)

        assert app.archive_root == new_root
        assert (new_root / "p_2024-01-01.jsonl").exists()
        assert SettingsStore(app.settings.path).archive_root() == new_root

    @pytest.mark.asyncio
    async def test_uncreatable_archive_root(self, app: PromptKeepApplication, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")

        with pytest.raises(ConfigurationError):
            await app.save_record_config(True, blocker / "archive")

    @pytest.mark.asyncio
    async def test_start_runs_until_shutdown(self, app: PromptKeepApplication) -> None:
        previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            runner = asyncio.create_task(app.start())
            await _wait_until(lambda: app.monitoring)

            app._handle_shutdown(signal.SIGTERM)
            await asyncio.wait_for(runner, timeout=5)
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        await app.stop()
        assert not app.monitoring


class TestSessionsAndRetention:
    """Test suite for queries and cleanup through the application."""

    async def _archive(self, app: PromptKeepApplication, *records: ArchivedRecord) -> None:
        for record in records:
            await app.store.append(PartitionKey.for_record(record), record)

    @pytest.mark.asyncio
    async def test_delete_record(self, app: PromptKeepApplication) -> None:
        await self._archive(
            app,
            ArchivedRecord(timestamp=1, session_id="s1", prompt="a"),
            ArchivedRecord(timestamp=2, session_id="s1", prompt="b"),
        )

        assert await app.delete_record("s1", 1)
        assert [r.prompt for r in app.get_session_detail("s1")] == ["b"]

    @pytest.mark.asyncio
    async def test_read_archived_image(self, app: PromptKeepApplication) -> None:
        image = app.store.images_root / "s1" / "1.png"
        image.parent.mkdir(parents=True)
        image.write_bytes(b"png")

        assert app.read_archived_image("images/s1/1.png").startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_clear_archive(self, app: PromptKeepApplication) -> None:
        await self._archive(app, ArchivedRecord(timestamp=1, project="/a/one"), ArchivedRecord(timestamp=2, project="/a/two"))

        assert await app.clear_archive() == 2
        assert app.list_sessions() == []

    @pytest.mark.asyncio
    async def test_clean_by_age(self, app: PromptKeepApplication) -> None:
        await self._archive(
            app,
            ArchivedRecord(timestamp=now_ms() - 5 * HOUR_MS, session_id="old"),
            ArchivedRecord(timestamp=now_ms(), session_id="new"),
        )

        assert await app.clean_by_age(HOUR_MS) == 1
        assert [s.session_id for s in app.list_sessions()] == ["new"]

    @pytest.mark.asyncio
    async def test_run_cleanup_now_requires_policy(self, app: PromptKeepApplication) -> None:
        with pytest.raises(RetentionDisabledError):
            await app.run_cleanup_now()

    @pytest.mark.asyncio
    async def test_retention_pass_with_events(self, app: PromptKeepApplication) -> None:
        events: list[dict[str, Any]] = []
        app.on_cleanup_event(EVENT_EXECUTED, events.append)
        await app.update_retention_policy(enabled=True, retain_ms=HOUR_MS, interval_ms=24 * HOUR_MS)
        await self._archive(
            app,
            ArchivedRecord(timestamp=now_ms() - 2 * HOUR_MS, session_id="s1", prompt="expired"),
            ArchivedRecord(timestamp=now_ms() - 60_000, session_id="s1", prompt="kept"),
        )

        result = await app.run_cleanup_now()

        assert result.deleted_count == 1
        assert [r.prompt for r in app.get_session_detail("s1")] == ["kept"]
        assert events == [{"deleted_count": 1, "next_cleanup_time": result.next_cleanup_time}]
        status = app.get_cleanup_status()
        assert status.enabled
        assert status.next_cleanup_time == result.next_cleanup_time

    @pytest.mark.asyncio
    async def test_policy_update_rearms_running_scheduler(self, app: PromptKeepApplication) -> None:
        await app.scheduler.start()
        assert not app.scheduler.timer_armed

        await app.update_retention_policy(enabled=True)

        assert app.scheduler.timer_armed
        assert app.get_cleanup_status().next_cleanup_time is not None

        await app.update_retention_policy(enabled=False)

        assert not app.scheduler.timer_armed
