from __future__ import annotations

import asyncio
import wave
from pathlib import Path
from typing import Optional

from mutagen.id3 import TALB, TDRC, TIT2, TPE1, TPE2, TRCK
from mutagen.wave import WAVE

from audio_stage.config import GroupingSettings, ProcessorSettings, ValidationSettings
from audio_stage.directory_codes import DirectoryCodeAllocator
from audio_stage.fs_utils import file_checksum
from audio_stage.grouping import GroupingEngine
from audio_stage.models import ScannedEntry
from audio_stage.processor import ProcessReport, Processor
from audio_stage.scan_catalog import ScanCatalog
from audio_stage.store import LibraryStore


def write_wav(path: Path, seconds: float = 1.0, framerate: int = 8000) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(path), "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(framerate)
        handle.writeframes(b"\x00\x00" * int(seconds * framerate))
    return path


def tag_wav(
    path: Path,
    *,
    artist: Optional[str] = None,
    album_artist: Optional[str] = None,
    album: Optional[str] = None,
    title: Optional[str] = None,
    track: Optional[str] = None,
    year: Optional[str] = None,
) -> Path:
    audio = WAVE(path)
    if audio.tags is None:
        audio.add_tags()
    for frame_type, value in (
        (TPE1, artist),
        (TPE2, album_artist),
        (TALB, album),
        (TIT2, title),
        (TRCK, track),
        (TDRC, year),
    ):
        if value is not None:
            audio.tags.add(frame_type(encoding=3, text=[value]))
    audio.save()
    return path


def make_track(
    root: Path,
    relative: str,
    *,
    artist: Optional[str] = "Led Zeppelin",
    album: Optional[str] = "Led Zeppelin IV",
    title: Optional[str] = None,
    track: Optional[int] = None,
    year: Optional[int] = None,
    content: Optional[bytes] = None,
    **extra: object,
) -> ScannedEntry:
    """Write a fake audio file and return a valid catalog entry describing it."""
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content if content is not None else f"audio:{relative}".encode("utf-8") * 8)
    stat = path.stat()
    entry = ScannedEntry(
        path=path,
        size_bytes=stat.st_size,
        checksum=file_checksum(path),
        mtime_ns=stat.st_mtime_ns,
        artist=artist,
        album=album,
        title=title or Path(relative).stem,
        track_number=track,
        year=year,
        duration_seconds=180.0,
        bitrate_kbps=320,
        sample_rate=44100,
        metadata_source="tags",
    )
    for name, value in extra.items():
        setattr(entry, name, value)
    return entry


def build_catalog(
    catalog_dir: Path,
    source_root: Path,
    entries: list[ScannedEntry],
    grouping: Optional[GroupingSettings] = None,
) -> ScanCatalog:
    catalog = ScanCatalog.create(catalog_dir, source_root=source_root)
    catalog.insert_batch(entries)
    GroupingEngine(grouping).apply(catalog)
    return catalog


def lenient_validation() -> ValidationSettings:
    return ValidationSettings(min_duration_seconds=0.5)


def processor_settings(staging_root: Path, **overrides: object) -> ProcessorSettings:
    return ProcessorSettings(staging_root=staging_root, workers=2, **overrides)


def snapshot(root: Path) -> dict[str, bytes]:
    if not root.exists():
        return {}
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def led_zeppelin_tracks(inbound: Path) -> list[ScannedEntry]:
    album = "Led Zeppelin/1971 - Led Zeppelin IV"
    return [
        make_track(inbound, f"{album}/01 Black Dog.mp3", title="Black Dog", track=1, year=1971),
        make_track(inbound, f"{album}/02 Rock and Roll.mp3", title="Rock and Roll", track=2, year=1971),
        make_track(inbound, f"{album}/03 Evermore.mp3", title="The Battle of Evermore", track=3),
    ]


def stage_albums(
    root: Path,
    store: LibraryStore,
    allocator: DirectoryCodeAllocator,
    entries: list[ScannedEntry],
) -> ProcessReport:
    """Run the processor over ``entries`` so ``root / "staging"`` holds real staged albums."""
    catalog = build_catalog(root / "scans", root / "inbound", entries)
    try:
        processor = Processor(processor_settings(root / "staging"), catalog, allocator, store=store)
        return asyncio.run(processor.run())
    finally:
        catalog.close()
