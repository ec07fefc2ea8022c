"""
Scan, process and full-cycle jobs.

Each job returns a summary object even when individual files or albums
failed; only environmental errors (missing scan root, unusable store) raise.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .config import Settings
from .directory_codes import DirectoryCodeAllocator
from .errors import ScanRootError
from .grouping import GroupingEngine, GroupingReport
from .processor import ProcessReport, Processor
from .rate_limit import RateLimiter
from .scan_catalog import ScanCatalog
from .scanner import ContentScanner, ScanSummary
from .store import LibraryStore

logger = logging.getLogger(__name__)


@dataclass
class ScanJob:
    summary: ScanSummary
    catalog: ScanCatalog
    grouping: GroupingReport


@dataclass
class CycleSummary:
    scan: ScanSummary
    process: ProcessReport
    catalog_path: Optional[Path]

    def as_dict(self) -> dict[str, Any]:
        return {
            "scan": self.scan.as_dict(),
            "process": self.process.as_dict(),
            "catalog": str(self.catalog_path) if self.catalog_path else None,
        }


async def scan_job(
    settings: Settings,
    source_root: Optional[Path] = None,
    catalog_dir: Optional[Path] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ScanJob:
    root = source_root or settings.scanner.source_root
    if root is None:
        raise ScanRootError("No scan source configured (scanner.source_root or --source)")
    scanner = ContentScanner(settings.scanner, settings.validation, cancel_event=cancel_event)
    root = scanner.check_root(root)
    catalog = ScanCatalog.create(catalog_dir or settings.scanner.catalog_dir, source_root=root)
    try:
        summary = await scanner.scan(root, catalog)
        grouping = GroupingEngine(settings.grouping).apply(catalog)
    except BaseException:
        catalog.discard()
        raise
    summary.album_groups = grouping.valid_groups
    return ScanJob(summary=summary, catalog=catalog, grouping=grouping)


async def process_job(
    settings: Settings,
    catalog: ScanCatalog,
    allocator: DirectoryCodeAllocator,
    store: Optional[LibraryStore] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ProcessReport:
    processor = Processor(
        settings.processor,
        catalog,
        allocator,
        store=store,
        rate_limiter=RateLimiter(settings.processor.rate_limit),
        cancel_event=cancel_event,
    )
    return await processor.run()


async def cycle_job(
    settings: Settings,
    allocator: DirectoryCodeAllocator,
    store: Optional[LibraryStore] = None,
    keep_catalog: bool = False,
    cancel_event: Optional[threading.Event] = None,
) -> CycleSummary:
    job = await scan_job(settings, cancel_event=cancel_event)
    try:
        report = await process_job(settings, job.catalog, allocator, store, cancel_event)
    finally:
        if keep_catalog:
            job.catalog.close()
        else:
            job.catalog.discard()
    logger.info(
        "Cycle %s: %d files scanned, %d albums staged, %d failed",
        job.summary.scan_id,
        job.summary.files_scanned,
        report.processed,
        report.failed,
    )
    return CycleSummary(scan=job.summary, process=report, catalog_path=job.catalog.path if keep_catalog else None)
