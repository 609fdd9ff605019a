"""Tests for the upload history store."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from PIL import Image

from snapto.config import HistorySettings
from snapto.errors import StoreError
from snapto.history import HistoryEntry, HistoryStore, make_thumbnail, sanitize_filename

from conftest import png_bytes


def make_entry(i: int = 0, **overrides) -> HistoryEntry:
    fields = dict(
        filename=f"test_{i}.png",
        remote_path=f"/screenshots/test_{i}.png",
        url=f"https://example.com/test_{i}.png",
        destination="my-server",
        size=12345,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=i),
    )
    fields.update(overrides)
    return HistoryEntry(**fields)


@pytest.fixture
def store(history_settings: HistorySettings):
    with HistoryStore(history_settings) as s:
        yield s


def store_with(history_settings: HistorySettings, **changes) -> HistoryStore:
    return HistoryStore(replace(history_settings, **changes))


class TestAdd:
    def test_add_and_get(self, store: HistoryStore):
        entry_id = store.add(make_entry())
        assert entry_id > 0
        entries = store.get_recent(10)
        assert len(entries) == 1
        assert entries[0].filename == "test_0.png"
        assert entries[0].id == entry_id
        assert entries[0].created_at == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_ids_are_monotonic(self, store: HistoryStore):
        ids = [store.add(make_entry(i)) for i in range(3)]
        assert ids == sorted(ids)

    def test_disabled_is_noop(self, history_settings: HistorySettings):
        with store_with(history_settings, enabled=False) as s:
            assert s.add(make_entry()) == 0
            assert s.count() == 0

    def test_metadata_mode_writes_no_files(self, store: HistoryStore):
        store.add(make_entry(), png_bytes())
        entry = store.get_recent(1)[0]
        assert entry.thumbnail_path is None
        assert entry.local_copy_path is None

    def test_thumbnail_mode(self, history_settings: HistorySettings):
        with store_with(history_settings, mode="thumbnails") as s:
            s.add(make_entry(filename="a:b.png"), png_bytes((800, 400)))
            entry = s.get_recent(1)[0]
        assert entry.local_copy_path is None
        thumb = Path(entry.thumbnail_path)
        assert thumb.name.startswith("thumb_")
        assert thumb.name.endswith("_a_b.png.png")
        with Image.open(thumb) as image:
            assert image.format == "PNG"
            assert image.size == (200, 100)

    def test_full_mode_keeps_copy(self, history_settings: HistorySettings):
        data = png_bytes()
        with store_with(history_settings, mode="full") as s:
            s.add(make_entry(), data)
            entry = s.get_recent(1)[0]
        assert Path(entry.thumbnail_path).exists()
        assert Path(entry.local_copy_path).read_bytes() == data

    def test_same_filename_keeps_separate_files(self, history_settings: HistorySettings):
        with store_with(history_settings, mode="full", max_entries=1) as s:
            s.add(make_entry(0, filename="shot.png"), png_bytes(color="red"))
            first_thumb = Path(s.get_recent(1)[0].thumbnail_path)
            s.add(make_entry(1, filename="shot.png"), png_bytes(color="blue"))
            survivor = s.get_recent(1)[0]
            assert s.count() == 1
        assert not first_thumb.exists()
        assert Path(survivor.thumbnail_path).exists()
        assert Path(survivor.local_copy_path).read_bytes() == png_bytes(color="blue")
        assert Path(survivor.local_copy_path).name.endswith("_shot.png")

    def test_deleting_duplicate_name_spares_other_entry(self, history_settings: HistorySettings):
        with store_with(history_settings, mode="full") as s:
            first = s.add(make_entry(0, filename="shot.png"), png_bytes())
            s.add(make_entry(1, filename="shot.png"), png_bytes())
            assert s.delete(first)
            remaining = s.get_recent(1)[0]
        assert Path(remaining.thumbnail_path).exists()
        assert Path(remaining.local_copy_path).exists()

    def test_undecodable_image(self, history_settings: HistorySettings):
        with store_with(history_settings, mode="thumbnails") as s:
            with pytest.raises(StoreError, match="thumbnail"):
                s.add(make_entry(), b"not an image")
            assert s.count() == 0


class TestQueries:
    def test_recent_newest_first(self, store: HistoryStore):
        for i in range(5):
            store.add(make_entry(i))
        names = [e.filename for e in store.get_recent(3)]
        assert names == ["test_4.png", "test_3.png", "test_2.png"]

    def test_search_filename_and_url(self, store: HistoryStore):
        store.add(make_entry(1, filename="screenshot_test.png", url=None))
        store.add(make_entry(2, filename="other.png", url="https://cdn.example.com/screenshot/x"))
        store.add(make_entry(3, filename="unrelated.png", url=None))
        found = {e.filename for e in store.search("screenshot")}
        assert found == {"screenshot_test.png", "other.png"}

    def test_search_is_case_sensitive(self, store: HistoryStore):
        store.add(make_entry(filename="Screenshot.png", url=None))
        assert store.search("screenshot") == []
        assert len(store.search("Screen")) == 1

    def test_search_caps_results(self, history_settings: HistorySettings):
        with store_with(history_settings, max_entries=0) as s:
            for i in range(105):
                s.add(make_entry(i))
            assert len(s.search("test_")) == 100

    def test_get_by_id(self, store: HistoryStore):
        entry_id = store.add(make_entry())
        assert store.get_by_id(entry_id).filename == "test_0.png"
        assert store.get_by_id(entry_id + 100) is None


class TestDelete:
    def test_delete_removes_row_and_files(self, history_settings: HistorySettings):
        with store_with(history_settings, mode="full") as s:
            entry_id = s.add(make_entry(), png_bytes())
            entry = s.get_by_id(entry_id)
            assert s.delete(entry_id)
            assert s.get_by_id(entry_id) is None
        assert not Path(entry.thumbnail_path).exists()
        assert not Path(entry.local_copy_path).exists()

    def test_delete_with_missing_files(self, history_settings: HistorySettings):
        with store_with(history_settings, mode="full") as s:
            entry_id = s.add(make_entry(), png_bytes())
            entry = s.get_by_id(entry_id)
            Path(entry.thumbnail_path).unlink()
            assert s.delete(entry_id)
            assert s.count() == 0

    def test_delete_unknown(self, store: HistoryStore):
        assert not store.delete(42)

    def test_clear_all(self, store: HistoryStore):
        for i in range(3):
            store.add(make_entry(i))
        assert store.clear_all() == 3
        assert store.count() == 0


class TestRetention:
    def test_count_bounded(self, history_settings: HistorySettings):
        with store_with(history_settings, max_entries=5) as s:
            for i in range(10):
                s.add(make_entry(i))
            assert s.count() == 5
            names = [e.filename for e in s.get_recent(10)]
        assert names == [f"test_{i}.png" for i in range(9, 4, -1)]

    def test_evicted_files_removed(self, history_settings: HistorySettings):
        with store_with(history_settings, mode="full", max_entries=2) as s:
            for i in range(2):
                s.add(make_entry(i), png_bytes())
            oldest = s.get_recent(2)[-1]
            s.add(make_entry(2), png_bytes())
            assert s.count() == 2
        assert not Path(oldest.thumbnail_path).exists()
        assert not Path(oldest.local_copy_path).exists()

    def test_equal_timestamps_evict_first_inserted(self, history_settings: HistorySettings):
        stamp = datetime(2026, 3, 1, tzinfo=timezone.utc)
        with store_with(history_settings, max_entries=2) as s:
            for i in range(3):
                s.add(make_entry(i, created_at=stamp))
            names = {e.filename for e in s.get_recent(5)}
        assert names == {"test_1.png", "test_2.png"}

    def test_cleanup_idempotent(self, history_settings: HistorySettings):
        with store_with(history_settings, max_entries=0) as s:
            for i in range(6):
                s.add(make_entry(i))
            s.settings.max_entries = 3
            assert s.cleanup() == 3
            assert s.cleanup() == 0

    def test_unbounded(self, history_settings: HistorySettings):
        with store_with(history_settings, max_entries=0) as s:
            for i in range(20):
                s.add(make_entry(i))
            assert s.cleanup() == 0
            assert s.count() == 20

    def test_purge_expired(self, store: HistoryStore):
        now = datetime.now(timezone.utc)
        store.add(make_entry(1, created_at=now - timedelta(days=40)))
        store.add(make_entry(2, created_at=now - timedelta(days=1)))
        assert store.purge_expired(30) == 1
        assert [e.filename for e in store.get_recent(5)] == ["test_2.png"]
        assert store.purge_expired(0) == 0


class TestHelpers:
    def test_sanitize_filename(self):
        assert sanitize_filename('a/b\\c:d*e?f"g<h>i|j') == "a_b_c_d_e_f_g_h_i_j"

    def test_thumbnail_preserves_aspect_ratio(self):
        import io
        thumb = make_thumbnail(png_bytes((300, 900)))
        with Image.open(io.BytesIO(thumb)) as image:
            assert image.size == (67, 200)
