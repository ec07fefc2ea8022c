from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

TRACK_PATTERN = re.compile(r"^(?:track\s*)?(?P<num>\d{1,3})(?:[\s._-]+)(?P<title>.+)$", re.IGNORECASE)
DISC_TRACK_PATTERN = re.compile(r"^(?P<disc>\d{1,2})[-.](?P<num>\d{2,3})(?:[\s._-]+)(?P<title>.+)$")
ORDINAL_PREFIX = re.compile(r"^(?P<prefix>(?:\d{1,2}[-.])?\d{1,3})(?=[\s._-])")
ARTIST_ALBUM_PATTERN = re.compile(r"^(?P<artist>[^/]+?)\s+[-–]\s+(?P<album>.+)$")
YEAR_ALBUM_PATTERN = re.compile(r"^[\[(]?(?P<year>(?:19|20)\d{2})[\])]?\s*[-–.]?\s+(?P<album>.+)$")
ALBUM_YEAR_PATTERN = re.compile(r"^(?P<album>.+?)\s*[\[(](?P<year>(?:19|20)\d{2})[\])]$")
DISC_FOLDER_PATTERN = re.compile(r"^(?:cd|disc|disk)\s*[-_ ]?\s*(?P<num>\d{1,2})$", re.IGNORECASE)


@dataclass(slots=True)
class PathGuess:
    artist: Optional[str] = None
    album: Optional[str] = None
    title: Optional[str] = None
    track_number: Optional[int] = None
    disc_number: Optional[int] = None
    year: Optional[int] = None

    def confidence(self) -> float:
        score = 0.0
        if self.artist:
            score += 0.25
        if self.album:
            score += 0.25
        if self.title:
            score += 0.25
        if self.track_number is not None:
            score += 0.25
        return score


@dataclass(slots=True)
class DirectoryGuess:
    artist: Optional[str] = None
    album: Optional[str] = None
    year: Optional[int] = None
    disc_number: Optional[int] = None


def guess_metadata_from_path(path: Path) -> PathGuess:
    guess = PathGuess()
    filename = path.stem
    disc_match = DISC_TRACK_PATTERN.match(filename)
    track_match = None if disc_match else TRACK_PATTERN.match(filename)
    embedded_match = None
    if not disc_match and not track_match:
        embedded_match = _embedded_track_match(filename)
    if disc_match:
        guess.disc_number = int(disc_match.group("disc"))
        guess.track_number = int(disc_match.group("num"))
        guess.title = _clean(disc_match.group("title"))
    elif track_match:
        guess.track_number = int(track_match.group("num"))
        guess.title = _clean(track_match.group("title"))
    elif embedded_match:
        guess.track_number = embedded_match[0]
        guess.title = _clean(embedded_match[1])
    else:
        guess.title = _clean(filename)

    directory = guess_from_directory(path.parent)
    guess.artist = directory.artist
    guess.album = directory.album
    guess.year = directory.year
    if guess.disc_number is None:
        guess.disc_number = directory.disc_number
    return guess


def guess_from_directory(directory: Path) -> DirectoryGuess:
    """Derive artist/album/year from folder names such as ``Artist/1971 - Album``."""
    guess = DirectoryGuess()
    parts = list(directory.parts)
    if parts and parts[0] == directory.anchor:
        parts = parts[1:]
    if not parts:
        return guess
    disc_match = DISC_FOLDER_PATTERN.match(parts[-1])
    if disc_match and len(parts) >= 2:
        guess.disc_number = int(disc_match.group("num"))
        parts = parts[:-1]
    album_dir = parts[-1]
    artist_dir = parts[-2] if len(parts) >= 2 else None

    year_match = YEAR_ALBUM_PATTERN.match(album_dir)
    if year_match:
        guess.year = int(year_match.group("year"))
        guess.album = _clean(year_match.group("album"))
        guess.artist = _clean(artist_dir)
        return guess
    match = ARTIST_ALBUM_PATTERN.match(album_dir)
    if match:
        guess.artist = _clean(match.group("artist"))
        album = match.group("album")
        album_year = ALBUM_YEAR_PATTERN.match(album)
        if album_year:
            guess.year = int(album_year.group("year"))
            album = album_year.group("album")
        guess.album = _clean(album)
        return guess
    album_year = ALBUM_YEAR_PATTERN.match(album_dir)
    if album_year:
        guess.year = int(album_year.group("year"))
        album_dir = album_year.group("album")
    guess.album = _clean(album_dir)
    guess.artist = _clean(artist_dir)
    return guess


def ordinal_prefix(filename: str) -> Optional[str]:
    match = ORDINAL_PREFIX.match(Path(filename).stem)
    if not match:
        return None
    return match.group("prefix")


def looks_like_disc_folder(name: str) -> bool:
    return bool(DISC_FOLDER_PATTERN.match(name.strip()))


def _clean(value: str | None) -> Optional[str]:
    if not value:
        return None
    cleaned = value.replace("_", " ").strip(" ._-")
    return cleaned or None


def _embedded_track_match(filename: str) -> Optional[tuple[int, str]]:
    parts = filename.split(" - ")
    if len(parts) < 3:
        return None
    for idx, part in enumerate(parts[:-1]):
        num_part = part.strip()
        if num_part.isdigit():
            num = int(num_part)
            title = " - ".join(parts[idx + 1 :]).strip()
            if title:
                return num, title
    return None
