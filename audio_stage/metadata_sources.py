"""
Per-file metadata extraction.

Extraction is a chain of ``MetadataSource`` strategies tried in order. Each
source only fills fields that earlier sources left empty, so adding a new
strategy (acoustic fingerprinting, sidecar cue sheets, ...) never touches the
scanner loop.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol, Sequence

from mutagen import File as MutagenFile
from mutagen import MutagenError

from .heuristics import guess_metadata_from_path
from .models import TrackTags, parse_int, parse_total

logger = logging.getLogger(__name__)

YEAR_PATTERN = re.compile(r"(?<!\d)(\d{4})(?!\d)")

TAG_ALIASES: dict[str, tuple[str, ...]] = {
    "title": ("title", "TIT2", "Title", "\xa9nam"),
    "artist": ("artist", "TPE1", "Artist", "Author", "\xa9ART"),
    "album_artist": ("albumartist", "album artist", "TPE2", "Album Artist", "WM/AlbumArtist", "aART"),
    "album": ("album", "TALB", "Album", "WM/AlbumTitle", "\xa9alb"),
    "genre": ("genre", "TCON", "Genre", "WM/Genre", "\xa9gen"),
    "date": ("date", "originaldate", "year", "TDRC", "TYER", "TORY", "Year", "WM/Year", "\xa9day"),
    "tracknumber": ("tracknumber", "TRCK", "Track", "WM/TrackNumber", "trkn"),
    "discnumber": ("discnumber", "TPOS", "Disc", "WM/PartOfSet", "disk"),
    "tracktotal": ("tracktotal", "totaltracks"),
    "disctotal": ("disctotal", "totaldiscs"),
}


@dataclass(slots=True)
class SourceResult:
    tags: TrackTags
    container_readable: Optional[bool] = None
    container_error: Optional[str] = None


@dataclass(slots=True)
class ExtractionResult:
    tags: TrackTags = field(default_factory=TrackTags)
    container_readable: bool = False
    container_error: Optional[str] = None
    sources: list[str] = field(default_factory=list)

    @property
    def primary_source(self) -> Optional[str]:
        return self.sources[0] if self.sources else None


class MetadataSource(Protocol):
    name: str

    def read(self, path: Path) -> Optional[SourceResult]: ...


class TagMetadataSource:
    """Reads embedded tags and stream information through mutagen."""

    name = "tags"

    def read(self, path: Path) -> Optional[SourceResult]:
        try:
            audio = MutagenFile(path, easy=True)
        except MutagenError as exc:
            logger.debug("Unreadable container %s: %s", path, exc)
            return SourceResult(TrackTags(), container_readable=False, container_error=str(exc))
        if audio is None:
            return SourceResult(
                TrackTags(),
                container_readable=False,
                container_error="unrecognised container",
            )
        tags = TrackTags()
        info = getattr(audio, "info", None)
        if info is not None:
            length = getattr(info, "length", None)
            if length:
                tags.duration_seconds = float(length)
            bitrate = getattr(info, "bitrate", None)
            if bitrate:
                tags.bitrate_kbps = int(bitrate) // 1000
            sample_rate = getattr(info, "sample_rate", None)
            if sample_rate:
                tags.sample_rate = int(sample_rate)
        if audio.tags:
            self._apply_tags(tags, audio.tags)
        return SourceResult(tags, container_readable=True)

    def _apply_tags(self, tags: TrackTags, raw: Any) -> None:
        tags.title = _text(_lookup(raw, TAG_ALIASES["title"]))
        tags.artist = _text(_lookup(raw, TAG_ALIASES["artist"]))
        tags.album_artist = _text(_lookup(raw, TAG_ALIASES["album_artist"]))
        tags.album = _text(_lookup(raw, TAG_ALIASES["album"]))
        tags.genre = _text(_lookup(raw, TAG_ALIASES["genre"]))
        tags.year = _parse_year(_text(_lookup(raw, TAG_ALIASES["date"])))
        track = _first(_lookup(raw, TAG_ALIASES["tracknumber"]))
        disc = _first(_lookup(raw, TAG_ALIASES["discnumber"]))
        tags.track_number = parse_int(_plain(track))
        tags.track_total = parse_total(_plain(track)) or parse_int(
            _text(_lookup(raw, TAG_ALIASES["tracktotal"]))
        )
        tags.disc_number = parse_int(_plain(disc))
        tags.disc_total = parse_total(_plain(disc)) or parse_int(
            _text(_lookup(raw, TAG_ALIASES["disctotal"]))
        )


class PathMetadataSource:
    """Falls back to filename and folder naming conventions."""

    name = "path"

    def read(self, path: Path) -> Optional[SourceResult]:
        guess = guess_metadata_from_path(path)
        tags = TrackTags(
            artist=guess.artist,
            album=guess.album,
            title=guess.title,
            track_number=guess.track_number,
            disc_number=guess.disc_number,
            year=guess.year,
        )
        if not tags.has_tags():
            return None
        return SourceResult(tags)


class MetadataChain:
    def __init__(self, sources: Optional[Sequence[MetadataSource]] = None) -> None:
        self.sources: list[MetadataSource] = list(
            sources if sources is not None else (TagMetadataSource(), PathMetadataSource())
        )

    def extract(self, path: Path) -> ExtractionResult:
        result = ExtractionResult()
        for source in self.sources:
            try:
                outcome = source.read(path)
            except OSError:
                raise
            except Exception as exc:  # pragma: no cover - third-party parser bugs
                logger.warning("Metadata source %s failed for %s: %s", source.name, path, exc)
                continue
            if outcome is None:
                continue
            if outcome.container_readable is not None and not result.container_readable:
                result.container_readable = outcome.container_readable
                result.container_error = outcome.container_error
            if outcome.tags.has_tags():
                result.sources.append(source.name)
            result.tags.fill_missing(outcome.tags)
        return result


def _lookup(raw: Any, keys: Iterable[str]) -> Any:
    for key in keys:
        try:
            if key not in raw:
                continue
            value = raw[key]
        except (KeyError, ValueError, TypeError):
            continue
        if value:
            return value
    return None


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    text = getattr(value, "text", None)
    if isinstance(text, list):
        return text[0] if text else None
    return value


def _plain(value: Any) -> Any:
    if value is None or isinstance(value, (int, str, bytes, tuple)):
        return value
    inner = getattr(value, "value", None)
    if inner is not None:
        return inner
    return str(value)


def _text(value: Any) -> Optional[str]:
    first = _plain(_first(value))
    if first is None:
        return None
    if isinstance(first, bytes):
        first = first.decode("utf-8", errors="replace")
    cleaned = str(first).strip()
    return cleaned or None


def _parse_year(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = YEAR_PATTERN.search(value)
    if not match:
        return None
    year = int(match.group(1))
    if year < 1000:
        return None
    return year
