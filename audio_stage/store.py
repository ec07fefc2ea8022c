from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Iterator, Optional

from .errors import RecordNotFoundError, StoreUnavailableError
from .models import Album, Artist, ReviewStatus, StagingRecord, Track

logger = logging.getLogger(__name__)

RECORD_COLUMNS = (
    "id",
    "scan_id",
    "staging_path",
    "metadata_file",
    "artist_name",
    "album_name",
    "track_count",
    "total_size",
    "checksum",
    "processed_at",
    "status",
    "reviewed_by",
    "reviewed_at",
    "notes",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LibraryStore:
    """Durable SQLite store for staging records and the production catalog."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = RLock()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False, timeout=30, isolation_level=None)
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._create_schema()
        except (OSError, sqlite3.Error) as exc:
            raise StoreUnavailableError(f"Cannot open store {path}: {exc}") from exc

    def _create_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS staging_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scan_id TEXT NOT NULL,
                staging_path TEXT NOT NULL UNIQUE,
                metadata_file TEXT NOT NULL,
                artist_name TEXT NOT NULL,
                album_name TEXT NOT NULL,
                track_count INTEGER NOT NULL,
                total_size INTEGER NOT NULL,
                checksum TEXT NOT NULL,
                processed_at TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending_review'
                    CHECK (status IN ('pending_review', 'approved', 'rejected')),
                reviewed_by TEXT,
                reviewed_at TEXT,
                notes TEXT,
                promotion_claim TEXT,
                claimed_at TEXT
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_staging_status ON staging_records(status)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_staging_scan ON staging_records(scan_id)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS artists (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                name_normalized TEXT NOT NULL UNIQUE,
                directory_code TEXT NOT NULL,
                sort_name TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS albums (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                artist_id INTEGER NOT NULL REFERENCES artists(id),
                name TEXT NOT NULL,
                name_normalized TEXT NOT NULL,
                directory TEXT NOT NULL UNIQUE,
                year INTEGER,
                genres TEXT NOT NULL DEFAULT '[]',
                track_count INTEGER NOT NULL DEFAULT 0,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tracks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                album_id INTEGER NOT NULL REFERENCES albums(id),
                artist_id INTEGER NOT NULL REFERENCES artists(id),
                title TEXT NOT NULL,
                name_normalized TEXT NOT NULL,
                relative_path TEXT NOT NULL UNIQUE,
                checksum TEXT NOT NULL,
                track_number INTEGER,
                disc_number INTEGER,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                bitrate_kbps INTEGER,
                sample_rate INTEGER,
                file_size INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator["LibraryStore"]:
        """Hold the store lock and run the body inside ``BEGIN IMMEDIATE``."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self
                self._conn.execute("COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    # Staging records

    def insert_record(self, record: StagingRecord) -> int:
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO staging_records(
                    scan_id, staging_path, metadata_file, artist_name, album_name,
                    track_count, total_size, checksum, processed_at, status
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.scan_id,
                    str(record.staging_path),
                    str(record.metadata_file),
                    record.artist_name,
                    record.album_name,
                    record.track_count,
                    record.total_size,
                    record.checksum,
                    record.processed_at.isoformat(),
                    record.status.value,
                ),
            )
            record.id = int(cursor.lastrowid)
        return record.id

    def has_staging_path(self, staging_path: Path) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM staging_records WHERE staging_path = ?", (str(staging_path),)
            ).fetchone()
        return row is not None

    def get_record(self, record_id: int) -> StagingRecord:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {', '.join(RECORD_COLUMNS)} FROM staging_records WHERE id = ?", (record_id,)
            ).fetchone()
        if not row:
            raise RecordNotFoundError(f"Staging record {record_id} not found")
        return _row_record(row)

    def list_records(
        self,
        status: Optional[ReviewStatus] = None,
        scan_id: Optional[str] = None,
    ) -> list[StagingRecord]:
        query = f"SELECT {', '.join(RECORD_COLUMNS)} FROM staging_records"
        clauses = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(ReviewStatus(status).value)
        if scan_id is not None:
            clauses.append("scan_id = ?")
            params.append(scan_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY processed_at, id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_record(row) for row in rows]

    def record_stats(self) -> dict[str, Any]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) FROM staging_records GROUP BY status"
            ).fetchall()
            tracks, size = self._conn.execute(
                """
                SELECT COALESCE(SUM(track_count), 0), COALESCE(SUM(total_size), 0)
                FROM staging_records WHERE status != 'rejected'
                """
            ).fetchone()
        by_status = {status.value: 0 for status in ReviewStatus}
        for status, count in rows:
            by_status[status] = int(count)
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "total_tracks": int(tracks),
            "total_size": int(size),
        }

    def transition(
        self,
        record_id: int,
        allowed_from: tuple[ReviewStatus, ...],
        status: ReviewStatus,
        reviewer: Optional[str],
        notes: Optional[str],
    ) -> bool:
        """Check-and-set the review status. Claimed records never transition."""
        placeholders = ", ".join("?" for _ in allowed_from)
        with self._lock:
            cursor = self._conn.execute(
                f"""
                UPDATE staging_records
                SET status = ?, reviewed_by = ?, reviewed_at = ?, notes = ?
                WHERE id = ? AND status IN ({placeholders}) AND promotion_claim IS NULL
                """,
                (
                    status.value,
                    reviewer,
                    utcnow().isoformat() if reviewer else None,
                    notes,
                    record_id,
                    *(item.value for item in allowed_from),
                ),
            )
        return cursor.rowcount == 1

    def claim_promotion(self, record_id: int, token: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE staging_records SET promotion_claim = ?, claimed_at = ?
                WHERE id = ? AND status = 'approved' AND promotion_claim IS NULL
                """,
                (token, utcnow().isoformat(), record_id),
            )
        return cursor.rowcount == 1

    def release_claim(self, record_id: int, token: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE staging_records SET promotion_claim = NULL, claimed_at = NULL
                WHERE id = ? AND promotion_claim = ?
                """,
                (record_id, token),
            )

    def claim_of(self, record_id: int) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT promotion_claim FROM staging_records WHERE id = ?", (record_id,)
            ).fetchone()
        return row[0] if row else None

    def clear_stale_claims(self, older_than_seconds: float = 3600.0) -> int:
        """Release claims left behind by promotions that died mid-flight."""
        cutoff = (utcnow() - timedelta(seconds=older_than_seconds)).isoformat()
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE staging_records SET promotion_claim = NULL, claimed_at = NULL
                WHERE promotion_claim IS NOT NULL AND claimed_at < ?
                """,
                (cutoff,),
            )
        return cursor.rowcount

    def delete_record(self, record_id: int) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM staging_records WHERE id = ?", (record_id,))
        return cursor.rowcount == 1

    # Production catalog

    def find_artist(self, name_normalized: str) -> Optional[Artist]:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, name, name_normalized, directory_code, sort_name FROM artists WHERE name_normalized = ?",
                (name_normalized,),
            ).fetchone()
        if not row:
            return None
        artist_id, name, normalized, code, sort_name = row
        return Artist(name=name, name_normalized=normalized, directory_code=code, sort_name=sort_name, id=artist_id)

    def find_or_create_artist(self, artist: Artist) -> tuple[Artist, bool]:
        with self._lock:
            existing = self.find_artist(artist.name_normalized)
            if existing:
                return existing, False
            cursor = self._conn.execute(
                """
                INSERT INTO artists(name, name_normalized, directory_code, sort_name, created_at)
                VALUES(?, ?, ?, ?, ?)
                """,
                (artist.name, artist.name_normalized, artist.directory_code, artist.sort_name, utcnow().isoformat()),
            )
            artist.id = int(cursor.lastrowid)
        return artist, True

    def create_album(self, album: Album) -> int:
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO albums(
                    artist_id, name, name_normalized, directory, year, genres,
                    track_count, duration_ms, created_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    album.artist_id,
                    album.name,
                    album.name_normalized,
                    album.directory,
                    album.year,
                    json.dumps(album.genres),
                    album.track_count,
                    album.duration_ms,
                    utcnow().isoformat(),
                ),
            )
            album.id = int(cursor.lastrowid)
        return album.id

    def create_track(self, track: Track) -> int:
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO tracks(
                    album_id, artist_id, title, name_normalized, relative_path, checksum,
                    track_number, disc_number, duration_ms, bitrate_kbps, sample_rate,
                    file_size, created_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    track.album_id,
                    track.artist_id,
                    track.title,
                    track.name_normalized,
                    track.relative_path,
                    track.checksum,
                    track.track_number,
                    track.disc_number,
                    track.duration_ms,
                    track.bitrate_kbps,
                    track.sample_rate,
                    track.file_size,
                    utcnow().isoformat(),
                ),
            )
            track.id = int(cursor.lastrowid)
        return track.id

    def album_by_directory(self, directory: str) -> Optional[Album]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT id, artist_id, name, name_normalized, directory, year, genres, track_count, duration_ms
                FROM albums WHERE directory = ?
                """,
                (directory,),
            ).fetchone()
        if not row:
            return None
        album_id, artist_id, name, normalized, directory, year, genres, track_count, duration_ms = row
        return Album(
            artist_id=artist_id,
            name=name,
            name_normalized=normalized,
            directory=directory,
            year=year,
            genres=json.loads(genres or "[]"),
            track_count=track_count,
            duration_ms=duration_ms,
            id=album_id,
        )

    def tracks_for_album(self, album_id: int) -> list[Track]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, album_id, artist_id, title, name_normalized, relative_path, checksum,
                       track_number, disc_number, duration_ms, bitrate_kbps, sample_rate, file_size
                FROM tracks WHERE album_id = ? ORDER BY disc_number, track_number, relative_path
                """,
                (album_id,),
            ).fetchall()
        return [
            Track(
                id=row[0],
                album_id=row[1],
                artist_id=row[2],
                title=row[3],
                name_normalized=row[4],
                relative_path=row[5],
                checksum=row[6],
                track_number=row[7],
                disc_number=row[8],
                duration_ms=row[9],
                bitrate_kbps=row[10],
                sample_rate=row[11],
                file_size=row[12],
            )
            for row in rows
        ]

    def catalog_counts(self) -> dict[str, int]:
        with self._lock:
            counts = {
                table: int(self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
                for table in ("artists", "albums", "tracks")
            }
        return counts


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _row_record(row: tuple[Any, ...]) -> StagingRecord:
    data = dict(zip(RECORD_COLUMNS, row))
    return StagingRecord(
        id=data["id"],
        scan_id=data["scan_id"],
        staging_path=Path(data["staging_path"]),
        metadata_file=Path(data["metadata_file"]),
        artist_name=data["artist_name"],
        album_name=data["album_name"],
        track_count=data["track_count"],
        total_size=data["total_size"],
        checksum=data["checksum"],
        processed_at=_parse_time(data["processed_at"]) or utcnow(),
        status=ReviewStatus(data["status"]),
        reviewed_by=data["reviewed_by"],
        reviewed_at=_parse_time(data["reviewed_at"]),
        notes=data["notes"],
    )
