"""
Album grouping.

Entries are first clustered by a hash over the normalised (artist, album)
pair. Each provisional group then resolves a single year by majority vote and
is split when its members carry several substantial year clusters, so two
releases that share a title do not end up in one staged album.
"""
from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .config import GroupingSettings
from .heuristics import guess_from_directory
from .models import AlbumGroup, ScannedEntry
from .scan_catalog import ScanCatalog

logger = logging.getLogger(__name__)

UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_ALBUM = "Unknown Album"
HASH_LENGTH = 16

PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)
WHITESPACE = re.compile(r"\s+")
EDITION_BRACKETS = re.compile(
    r"[\(\[][^\)\]]*\b(?:remaster(?:ed)?|deluxe|expanded|anniversary|special|collector'?s|bonus|edition)\b[^\)\]]*[\)\]]",
    re.IGNORECASE,
)
EDITION_SUFFIX = re.compile(
    r"\s+[-–]\s+(?:\d{4}\s+)?(?:remaster(?:ed)?|deluxe|expanded)(?:\s+(?:edition|version|\d{4}))*\s*$",
    re.IGNORECASE,
)


def normalize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    folded = stripped.casefold().replace("_", " ")
    folded = PUNCTUATION.sub(" ", folded)
    return WHITESPACE.sub(" ", folded).strip()


def normalize_album(value: Optional[str]) -> str:
    if not value:
        return ""
    cleaned = EDITION_BRACKETS.sub(" ", value)
    cleaned = EDITION_SUFFIX.sub("", cleaned)
    normalized = normalize_text(cleaned)
    return normalized or normalize_text(value)


def grouping_hash(artist: str, album: str) -> str:
    digest = hashlib.sha1(f"{artist}\x1f{album}".encode("utf-8"))
    return digest.hexdigest()[:HASH_LENGTH]


def directory_artist(path: Path) -> Optional[str]:
    guess = guess_from_directory(path.parent)
    if guess.artist:
        return guess.artist
    return path.parent.name or None


def vote_year(years: Iterable[Optional[int]]) -> Optional[int]:
    """Most common year; ties go to the earliest; ``None`` when nothing voted."""
    counts = Counter(year for year in years if year)
    if not counts:
        return None
    return min(counts, key=lambda year: (-counts[year], year))


@dataclass
class GroupingReport:
    groups: List[AlbumGroup] = field(default_factory=list)
    split_groups: List[str] = field(default_factory=list)
    entries: int = 0

    @property
    def valid_groups(self) -> int:
        return sum(1 for group in self.groups if group.is_valid)

    @property
    def invalid_groups(self) -> int:
        return len(self.groups) - self.valid_groups


class GroupingEngine:
    def __init__(self, settings: Optional[GroupingSettings] = None) -> None:
        self.settings = settings or GroupingSettings()

    def apply(self, catalog: ScanCatalog) -> GroupingReport:
        entries = list(catalog.iter_entries())
        report = self.group(entries)
        updates = []
        for group in report.groups:
            for entry in group.entries:
                if entry.id is None:
                    continue
                updates.append((entry.id, entry.grouping_hash, entry.group_id, entry.group_year))
        catalog.update_grouping(updates)
        catalog.replace_groups(report.groups)
        logger.info(
            "Grouped %d entries into %d albums (%d invalid clusters, %d split)",
            report.entries,
            report.valid_groups,
            report.invalid_groups,
            len(report.split_groups),
        )
        return report

    def group(self, entries: List[ScannedEntry]) -> GroupingReport:
        report = GroupingReport(entries=len(entries))
        provisional: Dict[str, List[ScannedEntry]] = defaultdict(list)
        invalid: Dict[str, List[ScannedEntry]] = defaultdict(list)
        for entry in sorted(entries, key=lambda item: str(item.path)):
            if entry.is_valid:
                key = grouping_hash(normalize_text(self.artist_signal(entry)), normalize_album(entry.album))
                entry.grouping_hash = key
                provisional[key].append(entry)
            else:
                key = hashlib.sha1(str(entry.path.parent).encode("utf-8")).hexdigest()[:HASH_LENGTH]
                entry.grouping_hash = key
                invalid[key].append(entry)

        for key in sorted(provisional):
            report.groups.extend(self._refine(key, provisional[key], report))
        for key in sorted(invalid):
            report.groups.append(self._invalid_group(key, invalid[key]))
        return report

    def artist_signal(self, entry: ScannedEntry) -> str:
        return entry.artist_signal or directory_artist(entry.path) or UNKNOWN_ARTIST

    def _refine(self, key: str, members: List[ScannedEntry], report: GroupingReport) -> List[AlbumGroup]:
        counts = Counter(entry.year for entry in members if entry.year)
        winner = vote_year(entry.year for entry in members)
        clusters = sorted(year for year, count in counts.items() if count >= self.settings.min_year_cluster_size)
        if len(clusters) <= self.settings.split_threshold:
            return [self._build(key, winner, members)]

        logger.warning(
            "Splitting album group %s (%s) into year clusters %s",
            key,
            members[0].album,
            ", ".join(str(year) for year in clusters),
        )
        report.split_groups.append(key)
        buckets: Dict[int, List[ScannedEntry]] = {year: [] for year in clusters}
        leftovers: List[ScannedEntry] = []
        for entry in members:
            if entry.year in buckets:
                buckets[entry.year].append(entry)
            else:
                leftovers.append(entry)
        for entry in leftovers:
            buckets[self._nearest_cluster(entry, buckets, winner)].append(entry)
        return [self._build(key, year, buckets[year]) for year in clusters]

    def _nearest_cluster(
        self,
        entry: ScannedEntry,
        buckets: Dict[int, List[ScannedEntry]],
        winner: Optional[int],
    ) -> int:
        directory = entry.path.parent
        shared = {
            year: sum(1 for member in bucket if member.path.parent == directory)
            for year, bucket in buckets.items()
        }
        best = max(shared.values()) if shared else 0
        if best:
            return min(year for year, count in shared.items() if count == best)
        if winner in buckets:
            return winner
        return min(buckets)

    def _build(self, key: str, year: Optional[int], members: List[ScannedEntry]) -> AlbumGroup:
        group_id = f"{key}-{year if year else 'unknown'}"
        for entry in members:
            entry.group_id = group_id
            entry.group_year = year
        artist = _most_common(self.artist_signal(entry) for entry in members) or UNKNOWN_ARTIST
        album = _most_common(entry.album for entry in members) or UNKNOWN_ALBUM
        return AlbumGroup(group_id=group_id, artist=artist, album=album, year=year, entries=_ordered(members))

    def _invalid_group(self, key: str, members: List[ScannedEntry]) -> AlbumGroup:
        group_id = f"invalid-{key}"
        for entry in members:
            entry.group_id = group_id
            entry.group_year = None
        sample = members[0].path
        guess = guess_from_directory(sample.parent)
        artist = guess.artist or UNKNOWN_ARTIST
        album = guess.album or sample.parent.name or UNKNOWN_ALBUM
        return AlbumGroup(group_id=group_id, artist=artist, album=album, year=None, entries=_ordered(members))


def _most_common(values: Iterable[Optional[str]]) -> Optional[str]:
    counts = Counter(value for value in values if value)
    if not counts:
        return None
    return min(counts, key=lambda value: (-counts[value], value))


def _ordered(members: List[ScannedEntry]) -> List[ScannedEntry]:
    return sorted(
        members,
        key=lambda entry: (entry.disc_number or 1, entry.track_number or 0, str(entry.path)),
    )
