from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Optional

from .app import AudioStageApp
from .commands import doctor as cmd_doctor
from .commands import reports as cmd_reports
from .commands import review as cmd_review
from .config import Settings, find_config
from .errors import StageError
from .jobs import cycle_job, process_job, scan_job
from .models import ReviewStatus
from .scan_catalog import ScanCatalog
from .watchdog_handler import run_watch

LOG_FORMAT = "%(levelname).1s | %(name)s | %(message)s"

C_RESET = "\033[0m"
LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",  # Cyan
    logging.INFO: "\033[37m",  # Light gray
    logging.WARNING: "\033[33m",  # Yellow
    logging.ERROR: "\033[31m",  # Red
    logging.CRITICAL: "\033[35m",  # Magenta
}


class ShortPathFormatter(logging.Formatter):
    def __init__(self, fmt: str, roots: list[Path]) -> None:
        super().__init__(fmt)
        self.roots = sorted((str(root) for root in roots if root), key=len, reverse=True)

    def _shorten(self, message: str) -> str:
        for root in self.roots:
            if not message:
                break
            message = message.replace(f"{root}/", "")
            message = message.replace(root, "")
        return message

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        return self._shorten(message)


class ColorFormatter(ShortPathFormatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        if not color:
            return message
        return f"{color}{message}{C_RESET}"


class WarningBufferHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.WARNING)
        self.records: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
        except Exception:  # pragma: no cover
            msg = record.getMessage()
        self.records.append(msg)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Audio ingestion, album staging and catalog promotion")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--log-level", default="INFO", help="Python logging level")
    parser.add_argument(
        "--warnings-log",
        type=Path,
        default=Path("audio-stage-warnings.log"),
        help="File collecting warnings and errors of this run",
    )
    parser.add_argument("--store", type=Path, help="Durable staging/catalog store (overrides store.path)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    scan_parser = subparsers.add_parser("scan", help="Scan a source tree into a new catalog and group albums")
    scan_parser.add_argument("--source", type=Path, help="Source root (overrides scanner.source_root)")
    scan_parser.add_argument("--catalog-dir", type=Path, help="Where to create the scan catalog")
    scan_parser.add_argument("--workers", type=int, help="Scanner worker count")
    scan_parser.add_argument("--json", action="store_true", help="Emit the summary as JSON")

    process_parser = subparsers.add_parser("process", help="Stage the album groups of a scan catalog")
    process_parser.add_argument("--catalog", type=Path, required=True, help="Scan catalog file")
    _add_process_flags(process_parser)

    run_parser = subparsers.add_parser("run", help="Scan, group and process in one go")
    run_parser.add_argument("--source", type=Path, help="Source root (overrides scanner.source_root)")
    run_parser.add_argument("--catalog-dir", type=Path, help="Where to create the scan catalog")
    run_parser.add_argument("--keep-catalog", action="store_true", help="Keep the scan catalog afterwards")
    _add_process_flags(run_parser)

    watch_parser = subparsers.add_parser("watch", help="Run a cycle whenever the source tree settles")
    watch_parser.add_argument("--source", type=Path, help="Source root (overrides scanner.source_root)")
    watch_parser.add_argument("--staging", type=Path, help="Staging root (overrides processor.staging_root)")
    watch_parser.add_argument("--quiet-seconds", type=float, help="Quiet period before a cycle starts")

    subparsers.add_parser("doctor", help="Check configuration, roots and stores")

    staging_parser = subparsers.add_parser("staging", help="Review and promote staged albums")
    staging_parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON")
    staging_sub = staging_parser.add_subparsers(dest="staging_command", required=True)
    list_parser = staging_sub.add_parser("list", help="List staging records")
    list_parser.add_argument("--status", choices=[status.value for status in ReviewStatus])
    list_parser.add_argument("--scan-id", help="Only records from this scan")
    show_parser = staging_sub.add_parser("show", help="Show one record with its sidecar")
    show_parser.add_argument("id", type=int)
    staging_sub.add_parser("stats", help="Aggregate staging statistics")
    approve_parser = staging_sub.add_parser("approve", help="Approve a pending record")
    approve_parser.add_argument("id", type=int)
    approve_parser.add_argument("--reviewer", required=True)
    approve_parser.add_argument("--notes")
    reject_parser = staging_sub.add_parser("reject", help="Reject a pending record")
    reject_parser.add_argument("id", type=int)
    reject_parser.add_argument("--reviewer", required=True)
    reject_parser.add_argument("--reason", required=True)
    requeue_parser = staging_sub.add_parser("requeue", help="Send a rejected record back to review")
    requeue_parser.add_argument("id", type=int)
    promote_parser = staging_sub.add_parser("promote", help="Promote an approved record into the catalog")
    promote_parser.add_argument("id", type=int)
    delete_parser = staging_sub.add_parser("delete", help="Delete a rejected record")
    delete_parser.add_argument("id", type=int)
    delete_parser.add_argument("--remove-files", action="store_true", help="Also delete the staged files")
    return parser


def _add_process_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--staging", type=Path, help="Staging root (overrides processor.staging_root)")
    parser.add_argument("--workers", type=int, help="Worker count")
    parser.add_argument("--rate-limit", type=int, help="Files per second, 0 = unlimited")
    parser.add_argument("--dry-run", action="store_true", help="Plan and log moves without touching anything")
    parser.add_argument("--json", action="store_true", help="Emit the summary as JSON")


def _resolved(path: Optional[Path]) -> Optional[Path]:
    return path.expanduser().resolve() if path is not None else None


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    if getattr(args, "store", None):
        settings.store.path = _resolved(args.store)
    if getattr(args, "source", None):
        settings.scanner.source_root = _resolved(args.source)
    if getattr(args, "catalog_dir", None):
        settings.scanner.catalog_dir = _resolved(args.catalog_dir)
    if getattr(args, "staging", None):
        settings.processor.staging_root = _resolved(args.staging)
    if getattr(args, "workers", None):
        settings.scanner.workers = args.workers
        settings.processor.workers = args.workers
    if getattr(args, "rate_limit", None) is not None:
        settings.processor.rate_limit = args.rate_limit
    if getattr(args, "dry_run", False):
        settings.processor.dry_run = True
    if getattr(args, "quiet_seconds", None) is not None:
        settings.watch.quiet_seconds = args.quiet_seconds
    return settings


def configure_logging(settings: Settings, level_name: str, warnings_log: Path) -> WarningBufferHandler:
    log_level = getattr(logging, level_name.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)

    display_roots = [
        root
        for root in (settings.scanner.source_root, settings.processor.staging_root, settings.promotion.production_root)
        if root is not None
    ]
    color_handler = logging.StreamHandler()
    color_handler.setFormatter(ColorFormatter(LOG_FORMAT, display_roots))
    root_logger.addHandler(color_handler)

    warn_buffer = WarningBufferHandler()
    warn_buffer.setFormatter(ShortPathFormatter(LOG_FORMAT, display_roots))
    root_logger.addHandler(warn_buffer)

    file_handler = logging.FileHandler(warnings_log, mode="w", encoding="utf-8", delay=True)
    file_handler.setLevel(logging.WARNING)
    file_handler.setFormatter(ShortPathFormatter(LOG_FORMAT, display_roots))
    root_logger.addHandler(file_handler)

    logging.getLogger("watchdog").setLevel(logging.WARNING)
    return warn_buffer


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    config_path = find_config(args.config)
    settings = Settings.load(config_path) if config_path else Settings()
    apply_overrides(settings, args)
    warn_buffer = configure_logging(settings, args.log_level, args.warnings_log)

    if args.command == "doctor":
        report = cmd_doctor.run(settings, config_path)
        for line in report.checks:
            print(line)
        if not report.ok:
            raise SystemExit(1)
        return

    app: AudioStageApp | None = None
    try:
        app = AudioStageApp.create(settings)
        match args.command:
            case "scan":
                job = asyncio.run(scan_job(settings, cancel_event=app.cancel_event))
                job.catalog.close()
                cmd_reports.print_scan(job.summary, json_output=args.json)
            case "process":
                catalog = ScanCatalog.open(_resolved(args.catalog))
                try:
                    report = asyncio.run(
                        process_job(settings, catalog, app.get_allocator(), app.store, app.cancel_event)
                    )
                finally:
                    catalog.close()
                cmd_reports.print_process(report, json_output=args.json)
                if report.failed:
                    raise SystemExit(2)
            case "run":
                summary = asyncio.run(
                    cycle_job(
                        settings,
                        app.get_allocator(),
                        app.store,
                        keep_catalog=args.keep_catalog,
                        cancel_event=app.cancel_event,
                    )
                )
                cmd_reports.print_cycle(summary, json_output=args.json)
                if summary.process.failed:
                    raise SystemExit(2)
            case "watch":
                _watch(app)
            case "staging":
                cmd_review.run(app.get_staging_service(), args)
            case _:
                parser.error("Unknown command")
    except KeyboardInterrupt:
        if app is not None:
            app.cancel_event.set()
        print("Interrupted")
        raise SystemExit(130)
    except (StageError, ValueError, FileNotFoundError) as exc:
        raise SystemExit(f"error: {exc}")
    finally:
        if app:
            app.close()
        if warn_buffer.records:
            print("\n\033[33mWarnings/Errors summary:\033[0m")
            for line in warn_buffer.records:
                print(f" - {line}")
            print(f"\nFull warning log: {args.warnings_log}")


def _watch(app: AudioStageApp) -> None:
    settings = app.settings
    source = settings.scanner.source_root
    if source is None:
        raise SystemExit("error: scanner.source_root is not configured")

    async def _cycle() -> None:
        summary = await cycle_job(
            settings,
            app.get_allocator(),
            app.store,
            keep_catalog=settings.watch.keep_catalogs,
            cancel_event=app.cancel_event,
        )
        cmd_reports.print_cycle(summary)

    asyncio.run(
        run_watch(
            source,
            settings.scanner.include_extensions,
            settings.watch.quiet_seconds,
            _cycle,
            stop_event=app.cancel_event,
        )
    )


if __name__ == "__main__":
    main()
