import json
from datetime import datetime, timedelta, timezone

import pytest

from exporting.bookmarks.checkpointer import STATE_FILE, Checkpointer, ExportCheckpoint
from exporting.bookmarks.error_log import ERRORS_FILE, ErrorLog
from exporting.bookmarks.metadata_cache import CACHE_FILE, MetadataCache

from conftest import make_post


@pytest.mark.asyncio
async def test_checkpointer_roundtrip(tmp_path):
    cp = Checkpointer(str(tmp_path))

    fresh = await cp.load_progress()
    assert fresh == ExportCheckpoint()
    assert fresh.has_pagination_state is False

    state = ExportCheckpoint(
        next_cursor="c2",
        current_page_remainder=[make_post("3"), make_post("4", author="bob")],
        current_page_number=2,
        this_run_boundary_id="1",
    )
    await cp.save_progress(state)

    loaded = await cp.load_progress()
    assert loaded.next_cursor == "c2"
    assert [p.id for p in loaded.current_page_remainder] == ["3", "4"]
    assert loaded.current_page_remainder[1].author.username == "bob"
    assert loaded.this_run_boundary_id == "1"
    assert loaded.has_pagination_state is True

    # unset fields are omitted from the document
    doc = json.loads((tmp_path / STATE_FILE).read_text())
    assert "completed" not in doc
    assert not (tmp_path / (STATE_FILE + ".tmp")).exists()


@pytest.mark.asyncio
async def test_checkpointer_finish_run(tmp_path):
    cp = Checkpointer(str(tmp_path))
    state = ExportCheckpoint(next_cursor="c9", current_page_number=9, this_run_boundary_id="100")

    await cp.finish_run(state, completed_full_scan=False)
    loaded = await cp.load_progress()
    assert loaded.previous_run_boundary_id == "100"
    assert loaded.this_run_boundary_id is None
    assert loaded.next_cursor is None
    assert loaded.current_page_number is None
    assert loaded.completed is None

    state = ExportCheckpoint(previous_run_boundary_id="100", this_run_boundary_id="200")
    await cp.finish_run(state, completed_full_scan=True, promote_boundary=False)
    loaded = await cp.load_progress()
    assert loaded.previous_run_boundary_id == "100"
    assert loaded.completed is True
    assert loaded.completed_at is not None


@pytest.mark.asyncio
async def test_checkpointer_corrupt_document_starts_fresh(tmp_path):
    (tmp_path / STATE_FILE).write_text("{not json", encoding="utf-8")
    cp = Checkpointer(str(tmp_path))
    assert await cp.load_progress() == ExportCheckpoint()


@pytest.mark.asyncio
async def test_clear_pagination_keeps_boundary(tmp_path):
    cp = Checkpointer(str(tmp_path))
    await cp.save_progress(
        ExportCheckpoint(next_cursor="c3", current_page_number=3, previous_run_boundary_id="42")
    )
    cleared = await cp.clear_pagination()
    assert cleared.next_cursor is None
    assert (await cp.load_progress()).previous_run_boundary_id == "42"


@pytest.mark.asyncio
async def test_error_log_appends(tmp_path):
    log = ErrorLog(str(tmp_path))
    assert await log.load() == []

    await log.record("1", "boom", context="Processing bookmark from @alice")
    await log.record("2", "bang")

    errors = await log.load()
    assert [e.post_id for e in errors] == ["1", "2"]
    assert errors[0].context == "Processing bookmark from @alice"
    assert errors[1].timestamp

    doc = json.loads((tmp_path / ERRORS_FILE).read_text())
    assert isinstance(doc, list) and len(doc) == 2


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.mark.asyncio
async def test_metadata_cache_ttl(tmp_path):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    clock = _Clock(start)
    calls = []

    async def fetcher(url):
        calls.append(url)
        return {"title": f"title {len(calls)}"}

    cache = MetadataCache(str(tmp_path), clock=clock)
    first = await cache.get_or_fetch("https://example.com/a", fetcher)
    assert first == {"title": "title 1"}

    clock.now = start + timedelta(days=6)
    assert await cache.get_or_fetch("https://example.com/a", fetcher) == {"title": "title 1"}
    assert len(calls) == 1

    clock.now = start + timedelta(days=8)
    assert await cache.get("https://example.com/a") is None
    assert await cache.get_or_fetch("https://example.com/a", fetcher) == {"title": "title 2"}
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_metadata_cache_flushes_each_write(tmp_path):
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    cache = MetadataCache(str(tmp_path), clock=lambda: now)
    await cache.put("https://example.com/x", {"title": "x"})

    doc = json.loads((tmp_path / CACHE_FILE).read_text())
    assert doc["https://example.com/x"]["value"] == {"title": "x"}

    # a second instance sees the flushed entry
    other = MetadataCache(str(tmp_path), clock=lambda: now + timedelta(days=1))
    assert await other.get("https://example.com/x") == {"title": "x"}


@pytest.mark.asyncio
async def test_metadata_cache_loads_once(tmp_path):
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    cache = MetadataCache(str(tmp_path), clock=lambda: now)
    assert await cache.get("https://example.com/missing") is None

    # written behind the loaded instance's back; not re-read
    (tmp_path / CACHE_FILE).write_text(
        json.dumps({"https://example.com/late": {"value": 1, "fetched_at": now.isoformat()}})
    )
    assert await cache.get("https://example.com/late") is None


@pytest.mark.asyncio
async def test_metadata_cache_corrupt_document(tmp_path):
    (tmp_path / CACHE_FILE).write_text("[1, 2", encoding="utf-8")
    cache = MetadataCache(str(tmp_path))
    assert await cache.get("https://example.com") is None


@pytest.mark.asyncio
async def test_error_log_moves_unreadable_document_aside(tmp_path):
    (tmp_path / ERRORS_FILE).write_text('[{"post_id": "1", "message": "old"', encoding="utf-8")
    log = ErrorLog(str(tmp_path))

    await log.record("2", "new")

    assert [e.post_id for e in await log.load()] == ["2"]
    assert (tmp_path / (ERRORS_FILE + ".corrupt")).read_text(encoding="utf-8") == '[{"post_id": "1", "message": "old"'


@pytest.mark.asyncio
async def test_metadata_cache_keeps_empty_results(tmp_path):
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    calls = []

    async def fetcher(url):
        calls.append(url)
        return None

    cache = MetadataCache(str(tmp_path), clock=lambda: now)
    assert await cache.get_or_fetch("https://example.com/none", fetcher) is None
    assert await cache.get_or_fetch("https://example.com/none", fetcher) is None
    assert calls == ["https://example.com/none"]
