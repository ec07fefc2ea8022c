from __future__ import annotations

import json
from typing import Any

from ..jobs import CycleSummary
from ..processor import AlbumStatus, ProcessReport
from ..scanner import ScanSummary
from .output import human_bytes, table


def _dump(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def print_scan(summary: ScanSummary, *, json_output: bool = False) -> None:
    if json_output:
        _dump(summary.as_dict())
        return
    print(f"Scan {summary.scan_id}")
    print(f"  catalog:      {summary.catalog_path}")
    print(f"  files:        {summary.files_scanned} ({summary.skipped} skipped by extension)")
    print(f"  valid:        {summary.valid}")
    print(f"  invalid:      {summary.invalid}")
    for reason, count in sorted(summary.reasons.items()):
        print(f"    {reason}: {count}")
    print(f"  album groups: {summary.album_groups}")
    if summary.cancelled:
        print("  (cancelled before completion)")


def print_process(report: ProcessReport, *, json_output: bool = False, verbose: bool = True) -> None:
    if json_output:
        _dump(report.as_dict())
        return
    prefix = "Dry-run " if report.dry_run else ""
    print(f"{prefix}Process {report.scan_id}")
    if verbose and report.results:
        rows = [
            (
                result.status.value,
                result.artist,
                result.album,
                result.year or "-",
                result.tracks,
                result.error or (str(result.staging_path) if result.staging_path else ""),
            )
            for result in report.results
            if result.status is not AlbumStatus.SKIPPED
        ]
        if rows:
            print(table(("status", "artist", "album", "year", "tracks", "detail"), rows))
    print(f"  albums processed: {report.processed}")
    print(f"  albums failed:    {report.failed}")
    print(f"  albums skipped:   {report.skipped}")
    if report.cancelled_albums:
        print(f"  albums cancelled: {report.cancelled_albums}")
    print(f"  tracks moved:     {report.tracks_moved}")
    print(f"  total size:       {human_bytes(report.total_bytes)}")
    if report.cancelled:
        print("  (cancelled before completion)")


def print_cycle(summary: CycleSummary, *, json_output: bool = False) -> None:
    if json_output:
        _dump(summary.as_dict())
        return
    print_scan(summary.scan)
    print()
    print_process(summary.process)
    if summary.catalog_path:
        print(f"\nCatalog kept at {summary.catalog_path}")
