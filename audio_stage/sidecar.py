"""
Album metadata sidecar.

The sidecar written at the root of every staged album is the canonical input
for promotion; staging records only point at it and remember its checksum.
"""
from __future__ import annotations

import hashlib
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import SidecarError

SCHEMA_VERSION = 1


class SidecarArtist(BaseModel):
    name: str
    name_normalized: str
    directory_code: str
    sort_name: Optional[str] = None


class SidecarAlbum(BaseModel):
    name: str
    name_normalized: str
    year: Optional[int] = None
    genres: List[str] = Field(default_factory=list)
    album_type: str = "album"
    is_compilation: bool = False
    disc_count: int = 1


class SidecarTrack(BaseModel):
    title: str
    track_number: Optional[int] = None
    disc_number: Optional[int] = None
    duration_seconds: Optional[float] = None
    checksum: str
    bitrate_kbps: Optional[int] = None
    sample_rate: Optional[int] = None
    size_bytes: int = 0
    file_name: str
    original_path: str
    artist: Optional[str] = None
    genre: Optional[str] = None


class SidecarChecksums(BaseModel):
    algorithm: str = "sha256"
    aggregate: str


class SidecarValidation(BaseModel):
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class AlbumSidecar(BaseModel):
    schema_version: int = SCHEMA_VERSION
    scan_id: str
    group_id: str
    processed_at: datetime
    artist: SidecarArtist
    album: SidecarAlbum
    tracks: List[SidecarTrack]
    checksums: SidecarChecksums
    validation: SidecarValidation = Field(default_factory=SidecarValidation)

    @property
    def total_size(self) -> int:
        return sum(track.size_bytes for track in self.tracks)

    @property
    def duration_seconds(self) -> float:
        return sum(track.duration_seconds or 0.0 for track in self.tracks)


def aggregate_checksum(tracks: List[SidecarTrack]) -> str:
    digest = hashlib.sha256()
    for track in sorted(tracks, key=lambda item: item.file_name):
        digest.update(f"{track.file_name}\0{track.checksum}\n".encode("utf-8"))
    return digest.hexdigest()


def render(sidecar: AlbumSidecar) -> bytes:
    return (sidecar.model_dump_json(indent=2) + "\n").encode("utf-8")


def bytes_checksum(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def write_sidecar(path: Path, sidecar: AlbumSidecar) -> str:
    """Write ``sidecar`` atomically and return the sha256 of the written bytes."""
    payload = render(sidecar)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = path.with_name(f".{path.name}.tmp")
    temp.write_bytes(payload)
    os.replace(temp, path)
    return bytes_checksum(payload)


def read_sidecar(path: Path, expected_checksum: Optional[str] = None) -> AlbumSidecar:
    try:
        payload = path.read_bytes()
    except OSError as exc:
        raise SidecarError(f"Cannot read sidecar {path}: {exc}") from exc
    if expected_checksum and bytes_checksum(payload) != expected_checksum:
        raise SidecarError(f"Sidecar checksum mismatch for {path}")
    try:
        sidecar = AlbumSidecar.model_validate_json(payload)
    except ValidationError as exc:
        raise SidecarError(f"Invalid sidecar {path}: {exc}") from exc
    if sidecar.schema_version > SCHEMA_VERSION:
        raise SidecarError(f"Unsupported sidecar schema version {sidecar.schema_version} in {path}")
    return sidecar
