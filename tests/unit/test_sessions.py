"""Tests for the session query layer."""

from __future__ import annotations

import base64
from pathlib import Path

import pytest

from promptkeep.artifacts import ImageResolver, PasteCache
from promptkeep.errors import ArtifactResolutionError
from promptkeep.models import ArchivedRecord, PasteRef
from promptkeep.query import SessionQuery, natural_sort_key
from promptkeep.storage.archive_store import ArchiveStore, PartitionKey

BASE = 1704067200000


async def _store(store: ArchiveStore, *records: ArchivedRecord) -> None:
    for record in records:
        await store.append(PartitionKey.for_record(record), record)


class TestSessionQuery:
    """Test suite for SessionQuery."""

    @pytest.fixture
    def query(
        self,
        archive_store: ArchiveStore,
        paste_cache: PasteCache,
        image_resolver: ImageResolver,
        content_root: Path,
    ) -> SessionQuery:
        return SessionQuery(archive_store, paste_cache, image_resolver, source_log_path=content_root / "history.jsonl")

    @pytest.mark.asyncio
    async def test_list_sessions(self, query: SessionQuery, archive_store: ArchiveStore) -> None:
        await _store(
            archive_store,
            ArchivedRecord(timestamp=BASE, project="/a/one", session_id="s1", prompt="a"),
            ArchivedRecord(timestamp=BASE + 5000, project="/a/one", session_id="s1", prompt="b"),
            ArchivedRecord(timestamp=BASE + 1000, project="/a/two", session_id="s2", prompt="c"),
            ArchivedRecord(timestamp=BASE + 9000, project="/a/two", prompt="no session"),
        )

        summaries = query.list_sessions()

        assert [s.session_id for s in summaries] == [f"single-{BASE + 9000}", "s1", "s2"]
        s1 = summaries[1]
        assert s1.record_count == 2
        assert s1.first_timestamp == BASE
        assert s1.latest_timestamp == BASE + 5000
        assert s1.project == "/a/one"

    @pytest.mark.asyncio
    async def test_session_spans_partitions(self, query: SessionQuery, archive_store: ArchiveStore) -> None:
        day = 24 * 3600 * 1000
        await _store(
            archive_store,
            ArchivedRecord(timestamp=BASE, project="/a/one", session_id="s1"),
            ArchivedRecord(timestamp=BASE + day, project="/a/one", session_id="s1"),
        )

        assert [s.record_count for s in query.list_sessions()] == [2]

    @pytest.mark.asyncio
    async def test_empty_archive(self, query: SessionQuery) -> None:
        assert query.list_sessions() == []
        assert query.get_session_detail("s1") == []

    @pytest.mark.asyncio
    async def test_get_session_detail_newest_first(self, query: SessionQuery, archive_store: ArchiveStore) -> None:
        await _store(
            archive_store,
            ArchivedRecord(timestamp=BASE, session_id="s1", prompt="first"),
            ArchivedRecord(timestamp=BASE + 1, session_id="s2", prompt="other"),
            ArchivedRecord(timestamp=BASE + 2, session_id="s1", prompt="second"),
        )

        assert [r.prompt for r in query.get_session_detail("s1")] == ["second", "first"]
        assert [r.prompt for r in query.get_session_detail("s1", ascending=True)] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_synthetic_session_detail(self, query: SessionQuery, archive_store: ArchiveStore) -> None:
        await _store(archive_store, ArchivedRecord(timestamp=BASE, prompt="alone"))

        assert [r.prompt for r in query.get_session_detail(f"single-{BASE}")] == ["alone"]

    @pytest.mark.asyncio
    async def test_detail_expands_unexpanded_pastes(
        self, query: SessionQuery, archive_store: ArchiveStore, paste_cache: PasteCache
    ) -> None:
        await _store(
            archive_store,
            ArchivedRecord(timestamp=BASE, session_id="s1", pasted_contents={"1": PasteRef(content_hash="late")}),
        )
        paste_cache.cache_dir.mkdir(parents=True)
        (paste_cache.cache_dir / "late.txt").write_text("arrived later", encoding="utf-8")

        [record] = query.get_session_detail("s1")

        assert record.pasted_contents["1"].content == "arrived later"

    @pytest.mark.asyncio
    async def test_detail_re_resolves_images(
        self,
        query: SessionQuery,
        archive_store: ArchiveStore,
        content_root: Path,
        write_jsonl,
        transcript_image_entry,
    ) -> None:
        await _store(archive_store, ArchivedRecord(timestamp=BASE, project="/a/proj", session_id="s1", prompt="[Image #1]"))
        write_jsonl(content_root / "projects" / "-a-proj" / "s1.jsonl", [transcript_image_entry()])

        [record] = query.get_session_detail("s1")

        assert record.images == ["images/s1/1.png"]

    @pytest.mark.asyncio
    async def test_list_records_limit(self, query: SessionQuery, archive_store: ArchiveStore) -> None:
        await _store(archive_store, *(ArchivedRecord(timestamp=BASE + i, session_id="s1") for i in range(5)))

        assert len(query.list_records(limit=3)) == 3
        assert len(query.list_records()) == 5

    @pytest.mark.asyncio
    async def test_delete_record_removes_images(self, query: SessionQuery, archive_store: ArchiveStore) -> None:
        image = archive_store.images_root / "s1" / "1.png"
        image.parent.mkdir(parents=True)
        image.write_bytes(b"png")
        await _store(
            archive_store,
            ArchivedRecord(timestamp=BASE, session_id="s1", prompt="[Image #1]", images=["images/s1/1.png"]),
            ArchivedRecord(timestamp=BASE + 1, session_id="s1", prompt="keep"),
        )

        assert await query.delete_record("s1", BASE)
        assert [r.prompt for r in query.get_session_detail("s1")] == ["keep"]
        assert not image.exists()

    @pytest.mark.asyncio
    async def test_delete_missing_record(self, query: SessionQuery, archive_store: ArchiveStore) -> None:
        await _store(archive_store, ArchivedRecord(timestamp=BASE, session_id="s1"))

        assert not await query.delete_record("s1", BASE + 1)
        assert len(query.get_session_detail("s1")) == 1


class TestSessionCaches:
    """Test suite for reads from the source tool's caches."""

    @pytest.fixture
    def query(
        self,
        archive_store: ArchiveStore,
        paste_cache: PasteCache,
        image_resolver: ImageResolver,
        content_root: Path,
    ) -> SessionQuery:
        return SessionQuery(archive_store, paste_cache, image_resolver, source_log_path=content_root / "history.jsonl")

    def test_natural_sort_key(self) -> None:
        assert sorted(["10.png", "2.png", "1.png"], key=natural_sort_key) == ["1.png", "2.png", "10.png"]

    @pytest.mark.asyncio
    async def test_read_session_image_cache(self, query: SessionQuery, content_root: Path) -> None:
        current = content_root / "image-cache" / "s1"
        legacy = content_root / "images" / "s1"
        current.mkdir(parents=True)
        legacy.mkdir(parents=True)
        (current / "10.png").write_bytes(b"ten")
        (current / "2.jpg").write_bytes(b"two")
        (legacy / "2.jpg").write_bytes(b"legacy two")
        (legacy / "3.webp").write_bytes(b"three")
        (current / "notes.txt").write_text("x")

        images = query.read_session_image_cache("s1")

        assert [i.filename for i in images] == ["2.jpg", "3.webp", "10.png"]
        assert images[0].data_url == "data:image/jpeg;base64," + base64.b64encode(b"two").decode()
        assert images[1].data_url.startswith("data:image/webp;base64,")

    @pytest.mark.asyncio
    async def test_read_session_image_cache_invalid_id(self, query: SessionQuery) -> None:
        with pytest.raises(ArtifactResolutionError):
            query.read_session_image_cache("../etc")

    @pytest.mark.asyncio
    async def test_read_session_paste_cache(
        self, query: SessionQuery, content_root: Path, paste_cache: PasteCache, write_jsonl
    ) -> None:
        paste_cache.cache_dir.mkdir(parents=True)
        (paste_cache.cache_dir / "h1.txt").write_text("from cache", encoding="utf-8")
        write_jsonl(
            content_root / "history.jsonl",
            [
                {"timestamp": BASE, "sessionId": "s1", "pastedContents": {"1": {"contentHash": "h1"}}},
                "{corrupt",
                {"timestamp": BASE + 1, "sessionId": "s2", "pastedContents": {"1": {"content": "other"}}},
                {"timestamp": BASE + 2, "sessionId": "s1", "pastedContents": {"2": {"contentHash": "h1"}}},
                {"timestamp": BASE + 3, "sessionId": "s1", "pastedContents": {"3": {"content": "inline"}}},
                {"timestamp": BASE + 4, "sessionId": "s1", "pastedContents": {"4": {"contentHash": "gone"}}},
            ],
        )

        pastes = query.read_session_paste_cache("s1")

        assert [(p.key, p.content) for p in pastes] == [("1", "from cache"), ("3", "inline")]
        assert pastes[0].timestamp == BASE

    @pytest.mark.asyncio
    async def test_read_session_paste_cache_without_log(
        self, archive_store: ArchiveStore, paste_cache: PasteCache, image_resolver: ImageResolver
    ) -> None:
        assert SessionQuery(archive_store, paste_cache, image_resolver).read_session_paste_cache("s1") == []

    @pytest.mark.asyncio
    async def test_read_archived_image(self, query: SessionQuery, archive_store: ArchiveStore) -> None:
        image = archive_store.images_root / "s1" / "2.jpg"
        image.parent.mkdir(parents=True)
        image.write_bytes(b"jpeg bytes")

        data_url = query.read_archived_image("images/s1/2.jpg")

        assert data_url == "data:image/jpeg;base64," + base64.b64encode(b"jpeg bytes").decode()

    @pytest.mark.asyncio
    async def test_read_archived_image_outside_archive(
        self, query: SessionQuery, archive_store: ArchiveStore, tmp_path: Path
    ) -> None:
        (tmp_path / "secret.png").write_bytes(b"png")

        with pytest.raises(ArtifactResolutionError):
            query.read_archived_image("../secret.png")

    @pytest.mark.asyncio
    async def test_read_archived_image_missing(self, query: SessionQuery) -> None:
        with pytest.raises(ArtifactResolutionError):
            query.read_archived_image("images/s1/404.png")
