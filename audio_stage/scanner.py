from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .config import ScannerSettings, ValidationSettings
from .errors import ScanRootError
from .fs_utils import PARTIAL_SUFFIX, file_checksum
from .metadata_sources import MetadataChain
from .models import ScannedEntry, ValidationReason
from .scan_catalog import ScanCatalog
from .validation import MediaValidator

logger = logging.getLogger(__name__)


@dataclass
class FileBatch:
    index: int
    files: list[Path]


@dataclass
class ScanSummary:
    scan_id: str
    catalog_path: Path
    source_root: Path
    files_scanned: int = 0
    valid: int = 0
    invalid: int = 0
    skipped: int = 0
    album_groups: int = 0
    reasons: Counter[str] = field(default_factory=Counter)
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "catalog": str(self.catalog_path),
            "source_root": str(self.source_root),
            "files_scanned": self.files_scanned,
            "valid": self.valid,
            "invalid": self.invalid,
            "skipped": self.skipped,
            "album_groups": self.album_groups,
            "reasons": dict(self.reasons),
            "cancelled": self.cancelled,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class ContentScanner:
    """Walks a source tree and records one catalog row per eligible audio file."""

    def __init__(
        self,
        settings: ScannerSettings,
        validation: ValidationSettings,
        chain: Optional[MetadataChain] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.settings = settings
        self._exts = {ext.lower() for ext in settings.include_extensions}
        self.chain = chain or MetadataChain()
        self.validator = MediaValidator(validation, list(self._exts))
        self.cancel_event = cancel_event or threading.Event()

    def check_root(self, root: Path) -> Path:
        try:
            resolved = root.expanduser().resolve()
        except OSError as exc:
            raise ScanRootError(f"Cannot resolve scan root {root}: {exc}") from exc
        if not resolved.exists():
            raise ScanRootError(f"Scan root does not exist: {resolved}")
        if not resolved.is_dir():
            raise ScanRootError(f"Scan root is not a directory: {resolved}")
        try:
            with os.scandir(resolved) as it:
                next(it, None)
        except OSError as exc:
            raise ScanRootError(f"Scan root is not readable: {resolved}: {exc}") from exc
        return resolved

    def collect_files(self, root: Path) -> tuple[list[Path], int]:
        """Return eligible files in a stable order and the number of skipped files."""
        eligible: list[Path] = []
        skipped = 0

        def _on_error(exc: OSError) -> None:
            logger.warning("Cannot read directory %s: %s", exc.filename, exc.strerror or exc)

        for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error):
            dirnames.sort()
            directory = Path(dirpath)
            for name in sorted(filenames):
                path = directory / name
                if name.endswith(PARTIAL_SUFFIX) or path.suffix.lower() not in self._exts:
                    skipped += 1
                    continue
                eligible.append(path)
        return eligible, skipped

    def batches(self, files: list[Path]) -> list[FileBatch]:
        size = max(1, self.settings.files_per_batch)
        return [FileBatch(index, files[start : start + size]) for index, start in enumerate(range(0, len(files), size))]

    async def scan(self, root: Path, catalog: ScanCatalog) -> ScanSummary:
        started = time.monotonic()
        root = self.check_root(root)
        loop = asyncio.get_running_loop()
        files, skipped = await loop.run_in_executor(None, self.collect_files, root)
        summary = ScanSummary(scan_id=catalog.scan_id, catalog_path=catalog.path, source_root=root, skipped=skipped)
        logger.info("Scanning %d eligible files under %s (%d skipped)", len(files), root, skipped)

        queue: asyncio.Queue[FileBatch] = asyncio.Queue()
        results: asyncio.Queue[Optional[list[ScannedEntry]]] = asyncio.Queue()
        for batch in self.batches(files):
            queue.put_nowait(batch)
        writer = asyncio.create_task(self._writer(catalog, results, summary))
        workers = self._start_workers(queue, results)
        await queue.join()
        await self._stop_workers(workers)
        await results.put(None)
        await writer

        summary.cancelled = self.cancel_event.is_set()
        summary.elapsed_seconds = time.monotonic() - started
        if summary.cancelled:
            logger.warning("Scan cancelled after %d files", summary.files_scanned)
        logger.info(
            "Scan %s finished: %d files, %d valid, %d invalid",
            summary.scan_id,
            summary.files_scanned,
            summary.valid,
            summary.invalid,
        )
        return summary

    def _start_workers(
        self,
        queue: asyncio.Queue[FileBatch],
        results: asyncio.Queue[Optional[list[ScannedEntry]]],
    ) -> list[asyncio.Task[None]]:
        concurrency = max(1, self.settings.workers)
        return [asyncio.create_task(self._worker(i, queue, results)) for i in range(concurrency)]

    async def _stop_workers(self, workers: list[asyncio.Task[None]]) -> None:
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    async def _worker(
        self,
        worker_id: int,
        queue: asyncio.Queue[FileBatch],
        results: asyncio.Queue[Optional[list[ScannedEntry]]],
    ) -> None:
        while True:
            batch = await queue.get()
            try:
                if not self.cancel_event.is_set():
                    entries = await asyncio.get_running_loop().run_in_executor(None, self._process_batch, batch)
                    if entries:
                        await results.put(entries)
            except Exception:  # pragma: no cover - logged and ignored
                logger.exception("Worker %s failed on batch %s", worker_id, batch.index)
            finally:
                queue.task_done()

    async def _writer(
        self,
        catalog: ScanCatalog,
        results: asyncio.Queue[Optional[list[ScannedEntry]]],
        summary: ScanSummary,
    ) -> None:
        loop = asyncio.get_running_loop()
        pending: list[ScannedEntry] = []
        commit_size = max(1, self.settings.commit_batch_size)
        while True:
            entries = await results.get()
            if entries is None:
                break
            pending.extend(entries)
            while len(pending) >= commit_size:
                chunk, pending = pending[:commit_size], pending[commit_size:]
                await loop.run_in_executor(None, self._commit, catalog, chunk, summary)
        if pending:
            await loop.run_in_executor(None, self._commit, catalog, pending, summary)

    def _commit(self, catalog: ScanCatalog, entries: list[ScannedEntry], summary: ScanSummary) -> None:
        catalog.insert_batch(entries)
        for entry in entries:
            summary.files_scanned += 1
            if entry.is_valid:
                summary.valid += 1
            else:
                summary.invalid += 1
                reason = entry.validation_reason.value if entry.validation_reason else "unknown"
                summary.reasons[reason] += 1
        logger.debug("Committed %d catalog rows", len(entries))

    def _process_batch(self, batch: FileBatch) -> list[ScannedEntry]:
        entries = []
        for path in batch.files:
            if self.cancel_event.is_set():
                break
            entries.append(self.scan_file(path))
        return entries

    def scan_file(self, path: Path) -> ScannedEntry:
        entry = ScannedEntry(path=path)
        try:
            stat = path.stat()
            entry.size_bytes = stat.st_size
            entry.mtime_ns = stat.st_mtime_ns
            if entry.size_bytes == 0:
                return self.validator.apply(entry)
            entry.checksum = file_checksum(path)
            extraction = self.chain.extract(path)
        except OSError as exc:
            logger.warning("I/O error reading %s: %s", path, exc)
            entry.mark_invalid(ValidationReason.IO_ERROR, str(exc))
            return entry
        entry.apply_tags(extraction.tags)
        entry.metadata_source = extraction.primary_source
        return self.validator.apply(entry, extraction)


def run_scan(scanner: ContentScanner, root: Path, catalog: ScanCatalog) -> ScanSummary:
    return asyncio.run(scanner.scan(root, catalog))
