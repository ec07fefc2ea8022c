from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional


class ValidationReason(str, Enum):
    EMPTY_FILE = "empty_file"
    IO_ERROR = "io_error"
    UNREADABLE_CONTAINER = "unreadable_container"
    UNSUPPORTED_TYPE = "unsupported_type"
    DURATION_OUT_OF_BOUNDS = "duration_out_of_bounds"
    BITRATE_OUT_OF_BOUNDS = "bitrate_out_of_bounds"
    FILE_TOO_LARGE = "file_too_large"
    MISSING_METADATA = "missing_metadata"


class ReviewStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(slots=True)
class TrackTags:
    """Best-effort tag values produced by a metadata source."""

    artist: Optional[str] = None
    album_artist: Optional[str] = None
    album: Optional[str] = None
    title: Optional[str] = None
    track_number: Optional[int] = None
    track_total: Optional[int] = None
    disc_number: Optional[int] = None
    disc_total: Optional[int] = None
    year: Optional[int] = None
    genre: Optional[str] = None
    duration_seconds: Optional[float] = None
    bitrate_kbps: Optional[int] = None
    sample_rate: Optional[int] = None

    TAG_FIELDS = (
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
    )

    def has_tags(self) -> bool:
        return any(getattr(self, name) not in (None, "") for name in self.TAG_FIELDS)

    def fill_missing(self, other: "TrackTags") -> None:
        for name in self.__dataclass_fields__:
            if getattr(self, name) in (None, "") and getattr(other, name) not in (None, ""):
                setattr(self, name, getattr(other, name))


@dataclass(slots=True)
class ScannedEntry:
    path: Path
    size_bytes: int = 0
    checksum: Optional[str] = None
    mtime_ns: int = 0
    artist: Optional[str] = None
    album_artist: Optional[str] = None
    album: Optional[str] = None
    title: Optional[str] = None
    track_number: Optional[int] = None
    track_total: Optional[int] = None
    disc_number: Optional[int] = None
    disc_total: Optional[int] = None
    year: Optional[int] = None
    genre: Optional[str] = None
    duration_seconds: Optional[float] = None
    bitrate_kbps: Optional[int] = None
    sample_rate: Optional[int] = None
    metadata_source: Optional[str] = None
    is_valid: bool = True
    validation_reason: Optional[ValidationReason] = None
    validation_detail: Optional[str] = None
    grouping_hash: Optional[str] = None
    group_id: Optional[str] = None
    group_year: Optional[int] = None
    id: Optional[int] = None

    def apply_tags(self, tags: TrackTags) -> None:
        for name in tags.__dataclass_fields__:
            setattr(self, name, getattr(tags, name))

    def mark_invalid(self, reason: ValidationReason, detail: Optional[str] = None) -> None:
        self.is_valid = False
        self.validation_reason = reason
        self.validation_detail = detail

    @property
    def artist_signal(self) -> Optional[str]:
        return self.album_artist or self.artist


@dataclass(slots=True)
class AlbumGroup:
    group_id: str
    artist: str
    album: str
    year: Optional[int]
    entries: List[ScannedEntry] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return bool(self.entries) and all(entry.is_valid for entry in self.entries)

    @property
    def track_count(self) -> int:
        return len(self.entries)

    @property
    def total_bytes(self) -> int:
        return sum(entry.size_bytes for entry in self.entries)


@dataclass(slots=True)
class StagingRecord:
    scan_id: str
    staging_path: Path
    metadata_file: Path
    artist_name: str
    album_name: str
    track_count: int
    total_size: int
    checksum: str
    processed_at: datetime
    status: ReviewStatus = ReviewStatus.PENDING_REVIEW
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    notes: Optional[str] = None
    id: Optional[int] = None

    def to_record(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "scan_id": self.scan_id,
            "staging_path": str(self.staging_path),
            "metadata_file": str(self.metadata_file),
            "artist_name": self.artist_name,
            "album_name": self.album_name,
            "track_count": self.track_count,
            "total_size": self.total_size,
            "checksum": self.checksum,
            "processed_at": self.processed_at.isoformat(),
            "status": self.status.value,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "notes": self.notes,
        }


@dataclass(slots=True)
class Artist:
    name: str
    name_normalized: str
    directory_code: str
    sort_name: Optional[str] = None
    id: Optional[int] = None


@dataclass(slots=True)
class Album:
    artist_id: int
    name: str
    name_normalized: str
    directory: str
    year: Optional[int] = None
    genres: List[str] = field(default_factory=list)
    track_count: int = 0
    duration_ms: int = 0
    id: Optional[int] = None


@dataclass(slots=True)
class Track:
    album_id: int
    artist_id: int
    title: str
    name_normalized: str
    relative_path: str
    checksum: str
    track_number: Optional[int] = None
    disc_number: Optional[int] = None
    duration_ms: int = 0
    bitrate_kbps: Optional[int] = None
    sample_rate: Optional[int] = None
    file_size: int = 0
    id: Optional[int] = None


def parse_int(value: object) -> Optional[int]:
    """Parse tag numbers like ``"3"``, ``"3/12"`` or ``(3, 12)``."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, (tuple, list)):
        return parse_int(value[0]) if value else None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    cleaned = str(value).strip()
    if "/" in cleaned:
        cleaned = cleaned.split("/", 1)[0].strip()
    if cleaned.isdigit():
        return int(cleaned)
    return None


def parse_total(value: object) -> Optional[int]:
    if isinstance(value, (tuple, list)) and len(value) > 1:
        total = parse_int(value[1])
        return total or None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str) and "/" in value:
        return parse_int(value.split("/", 1)[1])
    return None
