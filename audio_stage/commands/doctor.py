from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..config import Settings
from ..directory_codes import DirectoryCodeAllocator
from ..errors import StoreUnavailableError
from ..fs_utils import PARTIAL_SUFFIX
from ..store import LibraryStore
from .output import disabled, enabled, error, ok as ok_line, warning


@dataclass(slots=True)
class DoctorReport:
    ok: bool
    checks: list[str]


def _directory_line(label: str, path: Optional[Path], *, required: bool) -> tuple[bool, str]:
    if path is None:
        if required:
            return False, error(label, "not configured")
        return True, disabled(label, "not configured")
    if not path.exists():
        return True, warning(label, f"{path} does not exist yet")
    if not path.is_dir():
        return False, error(label, f"{path} is not a directory")
    if not os.access(path, os.W_OK):
        return False, error(label, f"{path} is not writable")
    return True, ok_line(label, str(path))


def run(settings: Settings, config_path: Optional[Path] = None) -> DoctorReport:
    checks: list[str] = []
    ok = True

    if config_path:
        checks.append(ok_line("Config", str(config_path)))
    else:
        checks.append(warning("Config", "no config.yaml found, using defaults"))

    source = settings.scanner.source_root
    if source is None:
        ok = False
        checks.append(error("Source root", "scanner.source_root not set"))
    elif not source.is_dir() or not os.access(source, os.R_OK | os.X_OK):
        ok = False
        checks.append(error("Source root", f"{source} missing or unreadable"))
    else:
        checks.append(ok_line("Source root", str(source)))

    for label, path, required in (
        ("Catalog dir", settings.scanner.catalog_dir, True),
        ("Staging root", settings.processor.staging_root, True),
    ):
        line_ok, line = _directory_line(label, path, required=required)
        ok = ok and line_ok
        checks.append(line)

    swept = [
        root
        for root in (settings.processor.staging_root, settings.promotion.production_root)
        if root is not None and root.exists()
    ]
    if swept:
        partials = sum(1 for root in swept for _ in root.rglob(f"*{PARTIAL_SUFFIX}"))
        if partials:
            checks.append(warning("Interrupted copies", f"{partials} {PARTIAL_SUFFIX} file(s), removed on next run"))
        else:
            checks.append(ok_line("Interrupted copies", "none"))

    try:
        allocator = DirectoryCodeAllocator(settings.directory_codes.path, settings.directory_codes, read_only=True)
    except Exception as exc:
        ok = False
        checks.append(error("Directory codes", f"{settings.directory_codes.path}: {exc}"))
    else:
        try:
            checks.append(ok_line("Directory codes", f"{len(allocator.mappings())} artist(s) mapped"))
        finally:
            allocator.close()

    if settings.store.path is None:
        checks.append(disabled("Store", "set store.path to persist staging records"))
    else:
        try:
            store = LibraryStore(settings.store.path)
        except StoreUnavailableError as exc:
            ok = False
            checks.append(error("Store", str(exc)))
        else:
            try:
                stats = store.record_stats()
                by_status = ", ".join(f"{status}={count}" for status, count in sorted(stats["by_status"].items()))
                checks.append(ok_line("Store", f"{settings.store.path} ({by_status})"))
                counts = store.catalog_counts()
                checks.append(
                    ok_line("Catalog", f"{counts['artists']} artists, {counts['albums']} albums, {counts['tracks']} tracks")
                )
            finally:
                store.close()

    production = settings.promotion.production_root
    if production is None:
        checks.append(disabled("Promotion", "set promotion.production_root"))
    elif not production.exists():
        checks.append(warning("Promotion", f"{production} does not exist yet"))
    else:
        checks.append(enabled("Promotion", str(production)))

    if settings.processor.rate_limit > 0:
        checks.append(enabled("Rate limit", f"{settings.processor.rate_limit} files/s"))
    else:
        checks.append(disabled("Rate limit", "unlimited"))

    return DoctorReport(ok=ok, checks=checks)
