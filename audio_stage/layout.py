from __future__ import annotations

import re
import unicodedata
from pathlib import Path
from typing import Optional

from .fs_utils import MAX_BASENAME_BYTES, fit_destination_path
from .heuristics import guess_metadata_from_path, ordinal_prefix
from .models import ScannedEntry

UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_ALBUM = "Unknown Album"
UNKNOWN_TITLE = "Unknown Title"

INVALID_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')
SEPARATORS = re.compile(r"[\\/]+")
WHITESPACE = re.compile(r"\s+")
RESERVED_NAMES = {
    "CON",
    "PRN",
    "AUX",
    "NUL",
    *(f"COM{i}" for i in range(1, 10)),
    *(f"LPT{i}" for i in range(1, 10)),
}


def safe_segment(value: Optional[str], fallback: str) -> str:
    if not value:
        return fallback
    cleaned = unicodedata.normalize("NFC", value).strip()
    cleaned = SEPARATORS.sub("-", cleaned)
    cleaned = INVALID_CHARS.sub("_", cleaned)
    cleaned = WHITESPACE.sub(" ", cleaned).strip(" .")
    if not cleaned:
        return fallback
    if cleaned.upper() in RESERVED_NAMES:
        cleaned = f"{cleaned}_"
    encoded = cleaned.encode("utf-8")
    if len(encoded) > MAX_BASENAME_BYTES:
        cleaned = encoded[:MAX_BASENAME_BYTES].decode("utf-8", errors="ignore").rstrip(" .")
    return cleaned or fallback


def album_dir_name(album: Optional[str], year: Optional[int], unknown_year_label: str = "Unknown Year") -> str:
    prefix = str(year) if year else unknown_year_label
    return safe_segment(f"{prefix} - {safe_segment(album, UNKNOWN_ALBUM)}", UNKNOWN_ALBUM)


def album_relative_dir(
    code: str,
    artist: Optional[str],
    album: Optional[str],
    year: Optional[int],
    unknown_year_label: str = "Unknown Year",
) -> Path:
    """``<code>/<artist>/<year> - <album>`` relative to a staging or production root."""
    return (
        Path(safe_segment(code, "UNK"))
        / safe_segment(artist, UNKNOWN_ARTIST)
        / album_dir_name(album, year, unknown_year_label)
    )


def track_filename(entry: ScannedEntry, max_bytes: int = MAX_BASENAME_BYTES) -> str:
    """
    ``NN - Title.ext`` (``D-NN - Title.ext`` past the first disc). Without a
    track number tag the original ordinal prefix is kept; without either the
    original name is kept.
    """
    suffix = entry.path.suffix.lower()
    title = entry.title or guess_metadata_from_path(entry.path).title
    clean_title = safe_segment(title, UNKNOWN_TITLE)
    if entry.track_number:
        if entry.disc_number and entry.disc_number > 1:
            name = f"{entry.disc_number}-{entry.track_number:02d} - {clean_title}{suffix}"
        else:
            name = f"{entry.track_number:02d} - {clean_title}{suffix}"
    else:
        prefix = ordinal_prefix(entry.path.name)
        if prefix:
            name = f"{prefix} - {clean_title}{suffix}"
        else:
            name = safe_segment(entry.path.name, f"{UNKNOWN_TITLE}{suffix}")
    return fit_destination_path(Path(name), max_bytes).name


def dedupe_filename(name: str, taken: set[str]) -> str:
    if name.casefold() not in taken:
        taken.add(name.casefold())
        return name
    path = Path(name)
    counter = 2
    while True:
        candidate = f"{path.stem} ({counter}){path.suffix}"
        if candidate.casefold() not in taken:
            taken.add(candidate.casefold())
            return candidate
        counter += 1
