"""
Upload history.

Every successful upload is appended to a SQLite table. Depending on the
history mode a PNG thumbnail and/or a verbatim copy of the screenshot is
kept next to the database. The table never grows past ``max_entries``
rows; the oldest rows and their files are evicted first.
"""

import io
import logging
import re
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from PIL import Image, UnidentifiedImageError

from .config import HistorySettings
from .errors import StoreError

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE = (200, 200)
SEARCH_LIMIT = 100
DATABASE_NAME = "history.db"

_UNSAFE_CHARS = re.compile(r'[/\\:*?"<>|]')

_COLUMNS = ("id, filename, remote_path, url, destination, size, created_at, "
            "thumbnail_path, local_copy_path")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    filename TEXT NOT NULL,
    remote_path TEXT NOT NULL,
    url TEXT,
    destination TEXT NOT NULL,
    size INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    thumbnail_path TEXT,
    local_copy_path TEXT
);
CREATE INDEX IF NOT EXISTS idx_created_at ON history(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_filename ON history(filename);
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class HistoryEntry:
    """One completed upload."""
    filename: str
    remote_path: str
    destination: str
    size: int
    url: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    thumbnail_path: Optional[str] = None
    local_copy_path: Optional[str] = None
    id: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "HistoryEntry":
        try:
            created_at = datetime.fromisoformat(row["created_at"])
        except ValueError:
            logger.warning("Unparseable timestamp %r in history row %s", row["created_at"], row["id"])
            created_at = utc_now()
        return cls(
            id=row["id"],
            filename=row["filename"],
            remote_path=row["remote_path"],
            url=row["url"],
            destination=row["destination"],
            size=row["size"],
            created_at=created_at,
            thumbnail_path=row["thumbnail_path"],
            local_copy_path=row["local_copy_path"],
        )


def sanitize_filename(filename: str) -> str:
    """Replace characters that are unsafe in file names with underscores."""
    return _UNSAFE_CHARS.sub("_", filename)


def unique_name(filename: str) -> str:
    """Sanitized filename with a random prefix, so entries never share files."""
    return f"{uuid.uuid4().hex[:12]}_{sanitize_filename(filename)}"


def make_thumbnail(image_data: bytes) -> bytes:
    """Shrink an image to fit in THUMBNAIL_SIZE and return it as PNG bytes."""
    try:
        with Image.open(io.BytesIO(image_data)) as image:
            thumb = image.copy()
    except (UnidentifiedImageError, OSError) as e:
        raise StoreError(f"Failed to load image for thumbnail: {e}") from e

    thumb.thumbnail(THUMBNAIL_SIZE, Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    thumb.save(buffer, format="PNG")
    return buffer.getvalue()


def _remove_files(paths: Iterable[Optional[str]]):
    for path in paths:
        if not path:
            continue
        try:
            Path(path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug("Could not remove %s: %s", path, e)


class HistoryStore:
    """SQLite-backed upload history owned by a single instance."""

    def __init__(self, settings: HistorySettings):
        self.settings = settings
        self.directory = settings.directory
        self._lock = threading.Lock()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # The lock serializes access, so the connection can cross threads
            self._conn = sqlite3.connect(str(self.directory / DATABASE_NAME), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Failed to open history database in {self.directory}: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        with self._lock:
            self._conn.close()

    @property
    def thumbnails_dir(self) -> Path:
        return self.directory / "thumbnails"

    @property
    def images_dir(self) -> Path:
        return self.directory / "images"

    def _save_thumbnail(self, image_data: bytes, stored_name: str) -> str:
        thumbnail = make_thumbnail(image_data)
        path = self.thumbnails_dir / f"thumb_{stored_name}.png"
        try:
            self.thumbnails_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(thumbnail)
        except OSError as e:
            raise StoreError(f"Failed to save thumbnail {path}: {e}") from e
        return str(path)

    def _save_full_image(self, image_data: bytes, stored_name: str) -> str:
        path = self.images_dir / stored_name
        try:
            self.images_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(image_data)
        except OSError as e:
            raise StoreError(f"Failed to save image copy {path}: {e}") from e
        return str(path)

    def add(self, entry: HistoryEntry, image_data: Optional[bytes] = None) -> int:
        """Record an upload and return its id (0 when history is disabled)."""
        if not self.settings.enabled:
            return 0

        thumbnail_path = None
        local_copy_path = None
        if image_data is not None:
            stored_name = unique_name(entry.filename)
            if self.settings.mode in ("thumbnails", "full"):
                thumbnail_path = self._save_thumbnail(image_data, stored_name)
            if self.settings.mode == "full":
                try:
                    local_copy_path = self._save_full_image(image_data, stored_name)
                except StoreError:
                    _remove_files((thumbnail_path,))
                    raise

        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(
                    "INSERT INTO history (filename, remote_path, url, destination, size, "
                    "created_at, thumbnail_path, local_copy_path) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        entry.filename,
                        entry.remote_path,
                        entry.url,
                        entry.destination,
                        entry.size,
                        format_timestamp(entry.created_at),
                        thumbnail_path,
                        local_copy_path,
                    ),
                )
                entry_id = cursor.lastrowid
        except sqlite3.Error as e:
            _remove_files((thumbnail_path, local_copy_path))
            raise StoreError(f"Failed to record {entry.filename} in history: {e}") from e

        logger.debug("Recorded history entry %d for %s", entry_id, entry.filename)
        self.cleanup()
        return entry_id

    def _query(self, sql: str, params=()) -> List[HistoryEntry]:
        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"History query failed: {e}") from e
        return [HistoryEntry.from_row(row) for row in rows]

    def get_recent(self, limit: int) -> List[HistoryEntry]:
        """Newest entries first."""
        return self._query(
            f"SELECT {_COLUMNS} FROM history ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        )

    def search(self, query: str) -> List[HistoryEntry]:
        """Case-sensitive substring match on filename or URL."""
        return self._query(
            f"SELECT {_COLUMNS} FROM history "
            "WHERE instr(filename, ?1) > 0 OR instr(COALESCE(url, ''), ?1) > 0 "
            "ORDER BY created_at DESC, id DESC LIMIT ?2",
            (query, SEARCH_LIMIT),
        )

    def get_by_id(self, entry_id: int) -> Optional[HistoryEntry]:
        entries = self._query(f"SELECT {_COLUMNS} FROM history WHERE id = ?", (entry_id,))
        return entries[0] if entries else None

    def count(self) -> int:
        try:
            with self._lock:
                return self._conn.execute("SELECT COUNT(*) FROM history").fetchone()[0]
        except sqlite3.Error as e:
            raise StoreError(f"History query failed: {e}") from e

    def _delete_rows(self, rows) -> int:
        """Remove files first, then the rows themselves."""
        for row in rows:
            _remove_files((row["thumbnail_path"], row["local_copy_path"]))
        ids = [(row["id"],) for row in rows]
        try:
            with self._lock, self._conn:
                self._conn.executemany("DELETE FROM history WHERE id = ?", ids)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete history rows: {e}") from e
        return len(ids)

    def _select_files(self, sql: str, params=()) -> list:
        try:
            with self._lock:
                return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"History query failed: {e}") from e

    def delete(self, entry_id: int) -> bool:
        rows = self._select_files(
            "SELECT id, thumbnail_path, local_copy_path FROM history WHERE id = ?", (entry_id,)
        )
        return self._delete_rows(rows) > 0

    def cleanup(self) -> int:
        """Evict everything beyond the newest max_entries rows."""
        if self.settings.max_entries <= 0:
            return 0
        rows = self._select_files(
            "SELECT id, thumbnail_path, local_copy_path FROM history "
            "ORDER BY created_at DESC, id DESC LIMIT -1 OFFSET ?",
            (self.settings.max_entries,),
        )
        removed = self._delete_rows(rows)
        if removed:
            logger.info("Evicted %d old history entries", removed)
        return removed

    def purge_expired(self, retention_days: Optional[int] = None) -> int:
        """Remove entries older than retention_days (0 keeps everything)."""
        days = self.settings.retention_days if retention_days is None else retention_days
        if days <= 0:
            return 0
        cutoff = format_timestamp(utc_now() - timedelta(days=days))
        rows = self._select_files(
            "SELECT id, thumbnail_path, local_copy_path FROM history WHERE created_at < ?",
            (cutoff,),
        )
        return self._delete_rows(rows)

    def clear_all(self) -> int:
        rows = self._select_files("SELECT id, thumbnail_path, local_copy_path FROM history")
        return self._delete_rows(rows)


def record_upload(store: HistoryStore, destination: str, filename: str, result,
                  image_data: Optional[bytes] = None) -> int:
    """Build a HistoryEntry from an UploadResult and add it."""
    entry = HistoryEntry(
        filename=filename,
        remote_path=result.remote_path,
        url=result.url,
        destination=destination,
        size=result.size,
    )
    return store.add(entry, image_data)
