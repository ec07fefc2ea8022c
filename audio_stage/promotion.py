from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import PreconditionError, PromotionError, PromotionInProgressError, StageError
from .fs_utils import MoveStrategy, cleanup_partials, discard_sources, remove_empty_dirs, safe_move
from .grouping import normalize_album, normalize_text
from .layout import album_relative_dir
from .models import Album, Artist, ReviewStatus, Track
from .sidecar import read_sidecar
from .store import LibraryStore

logger = logging.getLogger(__name__)


@dataclass
class PromotionResult:
    record_id: int
    artist_id: int
    album_id: int
    tracks: int
    production_path: Path
    artist_created: bool


class Promoter:
    """Moves approved staging records into the production tree and catalog, all or nothing."""

    def __init__(self, store: LibraryStore, production_root: Path, unknown_year_label: str = "Unknown Year") -> None:
        self.store = store
        self.production_root = production_root
        self.unknown_year_label = unknown_year_label

    def promote(self, record_id: int) -> PromotionResult:
        record = self.store.get_record(record_id)
        if record.status is not ReviewStatus.APPROVED:
            raise PreconditionError(
                f"Staging record {record_id} is {record.status.value}; only approved records can be promoted"
            )
        token = uuid.uuid4().hex
        if not self.store.claim_promotion(record_id, token):
            current = self.store.get_record(record_id)
            if current.status is not ReviewStatus.APPROVED:
                raise PreconditionError(f"Staging record {record_id} is {current.status.value}")
            raise PromotionInProgressError(f"Staging record {record_id} is already being promoted")

        moved: list[tuple[Path, Path]] = []
        # Sources whose identical copy was already in production; deleted after commit.
        resumed: list[Path] = []
        try:
            sidecar = read_sidecar(record.metadata_file, record.checksum)
            relative_dir = album_relative_dir(
                sidecar.artist.directory_code,
                sidecar.artist.name,
                sidecar.album.name,
                sidecar.album.year,
                self.unknown_year_label,
            )
            production_dir = self.production_root / relative_dir
            if self.store.album_by_directory(str(relative_dir)) is not None:
                raise PromotionError(f"Album directory {relative_dir} is already in the catalog")
            with self.store.transaction() as store:
                artist, created = store.find_or_create_artist(
                    Artist(
                        name=sidecar.artist.name,
                        name_normalized=sidecar.artist.name_normalized or normalize_text(sidecar.artist.name),
                        directory_code=sidecar.artist.directory_code,
                        sort_name=sidecar.artist.sort_name,
                    )
                )
                album = Album(
                    artist_id=artist.id,
                    name=sidecar.album.name,
                    name_normalized=sidecar.album.name_normalized or normalize_album(sidecar.album.name),
                    directory=str(relative_dir),
                    year=sidecar.album.year,
                    genres=list(sidecar.album.genres),
                    track_count=len(sidecar.tracks),
                    duration_ms=int(sidecar.duration_seconds * 1000),
                )
                store.create_album(album)
                for track in sidecar.tracks:
                    store.create_track(
                        Track(
                            album_id=album.id,
                            artist_id=artist.id,
                            title=track.title,
                            name_normalized=normalize_text(track.title),
                            relative_path=str(relative_dir / track.file_name),
                            checksum=track.checksum,
                            track_number=track.track_number,
                            disc_number=track.disc_number,
                            duration_ms=int((track.duration_seconds or 0) * 1000),
                            bitrate_kbps=track.bitrate_kbps,
                            sample_rate=track.sample_rate,
                            file_size=track.size_bytes,
                        )
                    )
                cleanup_partials(production_dir)
                planned = [
                    (record.staging_path / track.file_name, production_dir / track.file_name, track.checksum or None)
                    for track in sidecar.tracks
                ]
                planned.append((record.metadata_file, production_dir / record.metadata_file.name, None))
                for source, target, checksum in planned:
                    outcome = safe_move(source, target, checksum, keep_source=True)
                    if outcome.strategy is MoveStrategy.RESUMED:
                        resumed.append(source)
                    else:
                        moved.append((source, target))
                store.delete_record(record_id)
        except Exception as exc:
            self._compensate(moved)
            self.store.release_claim(record_id, token)
            logger.error("Promotion of staging record %s rolled back: %s", record_id, exc)
            if isinstance(exc, PromotionError):
                raise
            raise PromotionError(f"Promotion of staging record {record_id} failed: {exc}") from exc

        discard_sources(resumed)
        self._remove_staging_dirs(record.staging_path)
        logger.info(
            "Promoted %s - %s (%d tracks) to %s",
            sidecar.artist.name,
            sidecar.album.name,
            len(sidecar.tracks),
            production_dir,
        )
        return PromotionResult(
            record_id=record_id,
            artist_id=artist.id,
            album_id=album.id,
            tracks=len(sidecar.tracks),
            production_path=production_dir,
            artist_created=created,
        )

    def _compensate(self, moved: list[tuple[Path, Path]]) -> None:
        for source, target in reversed(moved):
            try:
                safe_move(target, source)
            except (OSError, StageError) as exc:
                logger.error("Could not move %s back to %s: %s", target, source, exc)
        if moved:
            remove_empty_dirs(moved[0][1].parent, self.production_root)

    def _remove_staging_dirs(self, staging_path: Path) -> None:
        stop_at = _staging_root(staging_path)
        if stop_at is not None:
            remove_empty_dirs(staging_path, stop_at)


def _staging_root(staging_path: Path) -> Optional[Path]:
    # Staged albums live at <root>/<code>/<artist>/<album>.
    parents = staging_path.parents
    if len(parents) < 3:
        return None
    return parents[2]
