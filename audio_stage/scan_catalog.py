from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Iterator, Optional, Sequence

from .models import AlbumGroup, ScannedEntry, ValidationReason

logger = logging.getLogger(__name__)

ENTRY_COLUMNS = (
    "path",
    "size_bytes",
    "checksum",
    "mtime_ns",
    "artist",
    "album_artist",
    "album",
    "title",
    "track_number",
    "track_total",
    "disc_number",
    "disc_total",
    "year",
    "genre",
    "duration_seconds",
    "bitrate_kbps",
    "sample_rate",
    "metadata_source",
    "is_valid",
    "validation_reason",
    "validation_detail",
    "grouping_hash",
    "group_id",
    "group_year",
)


def new_scan_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return now.strftime("scan_%Y%m%d_%H%M%S_%f")


class ScanCatalog:
    """Ephemeral SQLite catalog holding one row per scanned file for a single scan session."""

    def __init__(self, path: Path, scan_id: Optional[str] = None, source_root: Optional[Path] = None) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS session (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT NOT NULL UNIQUE,
                size_bytes INTEGER NOT NULL,
                checksum TEXT,
                mtime_ns INTEGER NOT NULL,
                artist TEXT,
                album_artist TEXT,
                album TEXT,
                title TEXT,
                track_number INTEGER,
                track_total INTEGER,
                disc_number INTEGER,
                disc_total INTEGER,
                year INTEGER,
                genre TEXT,
                duration_seconds REAL,
                bitrate_kbps INTEGER,
                sample_rate INTEGER,
                metadata_source TEXT,
                is_valid INTEGER NOT NULL,
                validation_reason TEXT,
                validation_detail TEXT,
                grouping_hash TEXT,
                group_id TEXT,
                group_year INTEGER
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_group ON entries(group_id)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS album_groups (
                group_id TEXT PRIMARY KEY,
                artist TEXT NOT NULL,
                album TEXT NOT NULL,
                year INTEGER,
                is_valid INTEGER NOT NULL
            )
            """
        )
        if scan_id is not None:
            self._set_meta("scan_id", scan_id)
            self._set_meta("created_at", datetime.now(timezone.utc).isoformat())
        if source_root is not None:
            self._set_meta("source_root", str(source_root))
        self._conn.commit()
        stored = self._get_meta("scan_id")
        self.scan_id = stored or scan_id or path.stem

    @classmethod
    def create(cls, catalog_dir: Path, source_root: Optional[Path] = None) -> "ScanCatalog":
        scan_id = new_scan_id()
        path = catalog_dir / f"{scan_id}.sqlite3"
        if path.exists():
            raise FileExistsError(f"Catalog already exists: {path}")
        logger.info("Creating scan catalog %s", path)
        return cls(path, scan_id=scan_id, source_root=source_root)

    @classmethod
    def open(cls, path: Path) -> "ScanCatalog":
        if not path.exists():
            raise FileNotFoundError(f"Catalog not found: {path}")
        return cls(path)

    def __enter__(self) -> "ScanCatalog":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def source_root(self) -> Optional[Path]:
        value = self._get_meta("source_root")
        return Path(value) if value else None

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def discard(self) -> None:
        self.close()
        for candidate in (self.path, Path(f"{self.path}-wal"), Path(f"{self.path}-shm")):
            try:
                candidate.unlink()
            except FileNotFoundError:
                continue
        logger.debug("Discarded scan catalog %s", self.path)

    def insert_batch(self, entries: Sequence[ScannedEntry]) -> int:
        if not entries:
            return 0
        placeholders = ", ".join("?" for _ in ENTRY_COLUMNS)
        rows = [self._entry_row(entry) for entry in entries]
        with self._lock:
            before = self._conn.total_changes
            self._conn.executemany(
                f"""
                INSERT INTO entries({", ".join(ENTRY_COLUMNS)})
                VALUES({placeholders})
                ON CONFLICT(path) DO NOTHING
                """,
                rows,
            )
            self._conn.commit()
            inserted = self._conn.total_changes - before
        if inserted != len(rows):
            logger.warning("Ignored %d duplicate catalog paths", len(rows) - inserted)
        return inserted

    def update_grouping(self, updates: Iterable[tuple[int, str, str, Optional[int]]]) -> None:
        """Apply ``(entry_id, grouping_hash, group_id, group_year)`` tuples in one transaction."""
        with self._lock:
            with self._conn:
                self._conn.executemany(
                    "UPDATE entries SET grouping_hash = ?, group_id = ?, group_year = ? WHERE id = ?",
                    [(hash_value, group_id, year, entry_id) for entry_id, hash_value, group_id, year in updates],
                )

    def replace_groups(self, groups: Iterable[AlbumGroup]) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM album_groups")
                self._conn.executemany(
                    "INSERT INTO album_groups(group_id, artist, album, year, is_valid) VALUES(?, ?, ?, ?, ?)",
                    [
                        (group.group_id, group.artist, group.album, group.year, int(group.is_valid))
                        for group in groups
                    ],
                )

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM entries").fetchone()
        return int(row[0])

    def iter_entries(self, valid: Optional[bool] = None) -> Iterator[ScannedEntry]:
        query = f"SELECT id, {', '.join(ENTRY_COLUMNS)} FROM entries"
        params: tuple[Any, ...] = ()
        if valid is not None:
            query += " WHERE is_valid = ?"
            params = (int(valid),)
        query += " ORDER BY path"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        for row in rows:
            yield self._row_entry(row)

    def get_entry(self, path: Path) -> Optional[ScannedEntry]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT id, {', '.join(ENTRY_COLUMNS)} FROM entries WHERE path = ?",
                (str(path),),
            ).fetchone()
        if not row:
            return None
        return self._row_entry(row)

    def album_groups(self, valid_only: bool = False) -> list[AlbumGroup]:
        with self._lock:
            group_rows = self._conn.execute(
                "SELECT group_id, artist, album, year, is_valid FROM album_groups ORDER BY group_id"
            ).fetchall()
            entry_rows = self._conn.execute(
                f"""
                SELECT id, {', '.join(ENTRY_COLUMNS)} FROM entries
                WHERE group_id IS NOT NULL
                ORDER BY group_id, disc_number, track_number, path
                """
            ).fetchall()
        members: dict[str, list[ScannedEntry]] = {}
        for row in entry_rows:
            entry = self._row_entry(row)
            members.setdefault(entry.group_id or "", []).append(entry)
        groups = []
        for group_id, artist, album, year, is_valid in group_rows:
            if valid_only and not is_valid:
                continue
            groups.append(AlbumGroup(group_id, artist, album, year, members.get(group_id, [])))
        return groups

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total, valid = self._conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(is_valid), 0) FROM entries"
            ).fetchone()
            reason_rows = self._conn.execute(
                "SELECT validation_reason, COUNT(*) FROM entries WHERE is_valid = 0 GROUP BY validation_reason"
            ).fetchall()
            group_total, group_valid = self._conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(is_valid), 0) FROM album_groups"
            ).fetchone()
        reasons = Counter({reason or "unknown": count for reason, count in reason_rows})
        return {
            "scan_id": self.scan_id,
            "files": int(total),
            "valid": int(valid),
            "invalid": int(total) - int(valid),
            "reasons": dict(reasons),
            "album_groups": int(group_total),
            "valid_album_groups": int(group_valid),
        }

    def _set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            """
            INSERT INTO session(key, value) VALUES(?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """,
            (key, value),
        )

    def _get_meta(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM session WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    @staticmethod
    def _entry_row(entry: ScannedEntry) -> tuple[Any, ...]:
        values = []
        for column in ENTRY_COLUMNS:
            value = getattr(entry, column)
            if column == "path":
                value = str(value)
            elif column == "is_valid":
                value = int(bool(value))
            elif column == "validation_reason" and value is not None:
                value = ValidationReason(value).value
            values.append(value)
        return tuple(values)

    @staticmethod
    def _row_entry(row: Sequence[Any]) -> ScannedEntry:
        data = dict(zip(("id",) + ENTRY_COLUMNS, row))
        data["path"] = Path(data["path"])
        data["is_valid"] = bool(data["is_valid"])
        if data["validation_reason"]:
            data["validation_reason"] = ValidationReason(data["validation_reason"])
        return ScannedEntry(**data)
