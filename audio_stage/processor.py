from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

from .config import ProcessorSettings
from .directory_codes import DirectoryCodeAllocator
from .errors import ConflictError, RelocationError, StageError
from .fs_utils import (
    MoveOutcome,
    MoveStrategy,
    cleanup_partials,
    discard_sources,
    file_checksum,
    path_exists,
    remove_empty_dirs,
    safe_move,
)
from .grouping import normalize_album, normalize_text
from .layout import album_relative_dir, dedupe_filename, track_filename
from .models import AlbumGroup, ReviewStatus, ScannedEntry, StagingRecord
from .rate_limit import RateLimiter
from .scan_catalog import ScanCatalog
from .sidecar import (
    AlbumSidecar,
    SidecarAlbum,
    SidecarArtist,
    SidecarChecksums,
    SidecarTrack,
    SidecarValidation,
    aggregate_checksum,
    bytes_checksum,
    render,
    write_sidecar,
)
from .store import LibraryStore, utcnow

logger = logging.getLogger(__name__)


class AlbumStatus(str, Enum):
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class PlannedMove:
    entry: ScannedEntry
    target: Path
    resumed: bool = False


@dataclass
class AlbumPlan:
    group: AlbumGroup
    directory_code: str
    album_dir: Path
    moves: List[PlannedMove]


@dataclass
class AlbumResult:
    group_id: str
    artist: str
    album: str
    year: Optional[int]
    status: AlbumStatus
    staging_path: Optional[Path] = None
    tracks: int = 0
    bytes: int = 0
    record_id: Optional[int] = None
    error: Optional[str] = None
    strategies: Counter[str] = field(default_factory=Counter)
    dry_run: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "artist": self.artist,
            "album": self.album,
            "year": self.year,
            "status": self.status.value,
            "staging_path": str(self.staging_path) if self.staging_path else None,
            "tracks": self.tracks,
            "bytes": self.bytes,
            "record_id": self.record_id,
            "error": self.error,
            "strategies": dict(self.strategies),
            "dry_run": self.dry_run,
        }


@dataclass
class ProcessReport:
    scan_id: str
    dry_run: bool = False
    results: List[AlbumResult] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    cancelled: bool = False

    def _count(self, status: AlbumStatus) -> int:
        return sum(1 for result in self.results if result.status is status)

    @property
    def processed(self) -> int:
        return self._count(AlbumStatus.PROCESSED)

    @property
    def failed(self) -> int:
        return self._count(AlbumStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(AlbumStatus.SKIPPED)

    @property
    def cancelled_albums(self) -> int:
        return self._count(AlbumStatus.CANCELLED)

    @property
    def tracks_moved(self) -> int:
        return sum(result.tracks for result in self.results if result.status is AlbumStatus.PROCESSED)

    @property
    def total_bytes(self) -> int:
        return sum(result.bytes for result in self.results if result.status is AlbumStatus.PROCESSED)

    def as_dict(self) -> dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "dry_run": self.dry_run,
            "albums_processed": self.processed,
            "albums_failed": self.failed,
            "albums_skipped": self.skipped,
            "albums_cancelled": self.cancelled_albums,
            "tracks_moved": self.tracks_moved,
            "total_bytes": self.total_bytes,
            "cancelled": self.cancelled,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "albums": [result.as_dict() for result in self.results],
        }


class Processor:
    """Moves every valid album group into the staging tree, one album per worker."""

    def __init__(
        self,
        settings: ProcessorSettings,
        catalog: ScanCatalog,
        allocator: DirectoryCodeAllocator,
        store: Optional[LibraryStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        if settings.staging_root is None:
            raise StageError("processor.staging_root is not configured")
        self.settings = settings
        self.catalog = catalog
        self.allocator = allocator
        self.store = store
        self.staging_root = settings.staging_root
        self.dry_run = settings.dry_run
        self.rate_limiter = rate_limiter or RateLimiter(settings.rate_limit)
        self.cancel_event = cancel_event or threading.Event()
        self.source_root = catalog.source_root

    async def run(self) -> ProcessReport:
        started = time.monotonic()
        report = ProcessReport(scan_id=self.catalog.scan_id, dry_run=self.dry_run)
        if not self.dry_run:
            cleanup_partials(self.staging_root)
        groups = self.catalog.album_groups()
        queue: asyncio.Queue[AlbumGroup] = asyncio.Queue()
        for group in groups:
            if not group.is_valid:
                report.results.append(self._result(group, AlbumStatus.SKIPPED, error="group contains invalid files"))
                continue
            queue.put_nowait(group)
        logger.info(
            "Processing %d album groups into %s%s",
            queue.qsize(),
            self.staging_root,
            " (dry-run)" if self.dry_run else "",
        )
        workers = self._start_workers(queue, report)
        await queue.join()
        await self._stop_workers(workers)
        report.results.sort(key=lambda result: result.group_id)
        report.cancelled = self.cancel_event.is_set()
        report.elapsed_seconds = time.monotonic() - started
        logger.info(
            "Processed %d albums, %d failed, %d skipped, %d cancelled, %d tracks",
            report.processed,
            report.failed,
            report.skipped,
            report.cancelled_albums,
            report.tracks_moved,
        )
        return report

    def _start_workers(self, queue: asyncio.Queue[AlbumGroup], report: ProcessReport) -> list[asyncio.Task[None]]:
        concurrency = max(1, self.settings.workers)
        return [asyncio.create_task(self._worker(i, queue, report)) for i in range(concurrency)]

    async def _stop_workers(self, workers: list[asyncio.Task[None]]) -> None:
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    async def _worker(self, worker_id: int, queue: asyncio.Queue[AlbumGroup], report: ProcessReport) -> None:
        while True:
            group = await queue.get()
            try:
                result = await asyncio.get_running_loop().run_in_executor(None, self.process_album, group)
            except Exception as exc:  # pragma: no cover - process_album reports its own failures
                logger.exception("Worker %s failed on album %s", worker_id, group.group_id)
                result = self._result(group, AlbumStatus.FAILED, error=str(exc))
            finally:
                queue.task_done()
            report.results.append(result)

    def process_album(self, group: AlbumGroup) -> AlbumResult:
        if self.cancel_event.is_set():
            return self._result(group, AlbumStatus.CANCELLED)
        try:
            plan = self.plan(group)
            self.preflight(plan)
        except StageError as exc:
            logger.warning("Album %s - %s failed pre-flight: %s", group.artist, group.album, exc)
            return self._result(group, AlbumStatus.FAILED, error=str(exc))
        if self.dry_run:
            return self._dry_run(plan)
        return self._execute(plan)

    def plan(self, group: AlbumGroup) -> AlbumPlan:
        code = self.allocator.peek(group.artist) if self.dry_run else self.allocator.allocate(group.artist)
        album_dir = self.staging_root / album_relative_dir(
            code, group.artist, group.album, group.year, self.settings.unknown_year_label
        )
        taken: set[str] = {self.settings.sidecar_name.casefold()}
        moves = []
        for entry in group.entries:
            name = dedupe_filename(track_filename(entry, self.settings.max_filename_length), taken)
            moves.append(PlannedMove(entry=entry, target=album_dir / name))
        return AlbumPlan(group=group, directory_code=code, album_dir=album_dir, moves=moves)

    def preflight(self, plan: AlbumPlan) -> None:
        if self.store is not None and self.store.has_staging_path(plan.album_dir):
            raise ConflictError(f"A staging record already exists for {plan.album_dir}", target=plan.album_dir)
        for move in plan.moves:
            entry = move.entry
            target_exists = path_exists(move.target)
            source_exists = path_exists(entry.path)
            if target_exists:
                if entry.checksum and file_checksum(move.target) == entry.checksum:
                    move.resumed = True
                    continue
                raise ConflictError(
                    f"Destination exists with different content: {move.target}", entry.path, move.target
                )
            if not source_exists:
                raise RelocationError(f"Source file disappeared: {entry.path}", entry.path, move.target)

    def _dry_run(self, plan: AlbumPlan) -> AlbumResult:
        for move in plan.moves:
            logger.info("Dry-run would move %s -> %s", move.entry.path, move.target)
        sidecar = self.build_sidecar(plan)
        logger.info(
            "Dry-run would write %s (checksum %s)",
            plan.album_dir / self.settings.sidecar_name,
            bytes_checksum(render(sidecar))[:12],
        )
        result = self._result(plan.group, AlbumStatus.PROCESSED, staging_path=plan.album_dir)
        result.tracks = len(plan.moves)
        result.bytes = plan.group.total_bytes
        result.dry_run = True
        return result

    def _execute(self, plan: AlbumPlan) -> AlbumResult:
        group = plan.group
        moved: list[tuple[Path, Path]] = []
        resumed: list[Path] = []
        outcomes: list[MoveOutcome] = []
        sidecar_path = plan.album_dir / self.settings.sidecar_name
        try:
            for move in plan.moves:
                self.rate_limiter.acquire()
                outcome = safe_move(move.entry.path, move.target, move.entry.checksum, keep_source=True)
                outcomes.append(outcome)
                if outcome.strategy is MoveStrategy.RESUMED:
                    resumed.append(move.entry.path)
                else:
                    moved.append((move.entry.path, move.target))
                logger.debug("Moved %s -> %s (%s)", move.entry.path, move.target, outcome.strategy.value)
            sidecar = self.build_sidecar(plan)
            checksum = write_sidecar(sidecar_path, sidecar)
            record_id = None
            if self.store is not None:
                record = StagingRecord(
                    scan_id=self.catalog.scan_id,
                    staging_path=plan.album_dir,
                    metadata_file=sidecar_path,
                    artist_name=group.artist,
                    album_name=group.album,
                    track_count=len(plan.moves),
                    total_size=group.total_bytes,
                    checksum=checksum,
                    processed_at=sidecar.processed_at,
                    status=ReviewStatus.PENDING_REVIEW,
                )
                record_id = self.store.insert_record(record)
        except Exception as exc:
            logger.error("Album %s - %s failed: %s", group.artist, group.album, exc)
            self._rollback(moved, sidecar_path)
            return self._result(group, AlbumStatus.FAILED, staging_path=plan.album_dir, error=str(exc))

        discard_sources(resumed)
        self._cleanup_sources(plan)
        result = self._result(group, AlbumStatus.PROCESSED, staging_path=plan.album_dir)
        result.tracks = len(plan.moves)
        result.bytes = group.total_bytes
        result.record_id = record_id
        result.strategies = Counter(outcome.strategy.value for outcome in outcomes)
        logger.info("Staged %s - %s (%d tracks) at %s", group.artist, group.album, result.tracks, plan.album_dir)
        return result

    def _rollback(self, moved: list[tuple[Path, Path]], sidecar_path: Path) -> None:
        if sidecar_path.exists():
            sidecar_path.unlink()
        for source, target in reversed(moved):
            try:
                safe_move(target, source)
            except (OSError, StageError) as exc:
                logger.error("Could not restore %s -> %s: %s", target, source, exc)
        if moved:
            remove_empty_dirs(moved[0][1].parent, self.staging_root)

    def _cleanup_sources(self, plan: AlbumPlan) -> None:
        if self.source_root is None:
            return
        for directory in sorted({move.entry.path.parent for move in plan.moves}, reverse=True):
            remove_empty_dirs(directory, self.source_root)

    def build_sidecar(self, plan: AlbumPlan) -> AlbumSidecar:
        group = plan.group
        tracks = [
            SidecarTrack(
                title=move.entry.title or move.target.stem,
                track_number=move.entry.track_number,
                disc_number=move.entry.disc_number,
                duration_seconds=move.entry.duration_seconds,
                checksum=move.entry.checksum or "",
                bitrate_kbps=move.entry.bitrate_kbps,
                sample_rate=move.entry.sample_rate,
                size_bytes=move.entry.size_bytes,
                file_name=move.target.name,
                original_path=str(move.entry.path),
                artist=move.entry.artist,
                genre=move.entry.genre,
            )
            for move in plan.moves
        ]
        genres = sorted({entry.genre for entry in group.entries if entry.genre})
        track_artists = {normalize_text(entry.artist) for entry in group.entries if entry.artist}
        discs = {entry.disc_number or 1 for entry in group.entries}
        return AlbumSidecar(
            scan_id=self.catalog.scan_id,
            group_id=group.group_id,
            processed_at=utcnow(),
            artist=SidecarArtist(
                name=group.artist,
                name_normalized=normalize_text(group.artist),
                directory_code=plan.directory_code,
                sort_name=sort_name(group.artist),
            ),
            album=SidecarAlbum(
                name=group.album,
                name_normalized=normalize_album(group.album),
                year=group.year,
                genres=genres,
                is_compilation=len(track_artists) > 1,
                disc_count=max(discs) if discs else 1,
            ),
            tracks=tracks,
            checksums=SidecarChecksums(aggregate=aggregate_checksum(tracks)),
            validation=SidecarValidation(is_valid=group.is_valid, warnings=album_warnings(group)),
        )

    def _result(
        self,
        group: AlbumGroup,
        status: AlbumStatus,
        staging_path: Optional[Path] = None,
        error: Optional[str] = None,
    ) -> AlbumResult:
        return AlbumResult(
            group_id=group.group_id,
            artist=group.artist,
            album=group.album,
            year=group.year,
            status=status,
            staging_path=staging_path,
            error=error,
            dry_run=self.dry_run,
        )


def sort_name(name: str) -> Optional[str]:
    for article in ("The ", "A ", "An "):
        if name.startswith(article) and len(name) > len(article):
            return f"{name[len(article):]}, {article.strip()}"
    return None


def album_warnings(group: AlbumGroup) -> list[str]:
    warnings = []
    if group.year is None:
        warnings.append("no year could be resolved")
    missing = [entry.path.name for entry in group.entries if not entry.track_number]
    if missing:
        warnings.append(f"{len(missing)} track(s) without track number")
    numbers = Counter((entry.disc_number or 1, entry.track_number) for entry in group.entries if entry.track_number)
    duplicates = sorted(f"{disc}-{track}" for (disc, track), count in numbers.items() if count > 1)
    if duplicates:
        warnings.append(f"duplicate track numbers: {', '.join(duplicates)}")
    years = {entry.year for entry in group.entries if entry.year}
    if len(years) > 1:
        warnings.append(f"members disagree on year: {', '.join(str(year) for year in sorted(years))}")
    return warnings


def run_process(processor: Processor) -> ProcessReport:
    return asyncio.run(processor.run())
