"""
Per-file validation for scanned entries.

Validation failures are data: the scanner records the reason on the entry and
keeps going. Nothing here raises for a bad file.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import ValidationSettings
from .metadata_sources import ExtractionResult
from .models import ScannedEntry, ValidationReason

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ValidationOutcome:
    reason: Optional[ValidationReason] = None
    detail: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.reason is None


class MediaValidator:
    def __init__(self, settings: ValidationSettings, extensions: Optional[list[str]] = None) -> None:
        self.settings = settings
        self.extensions = {ext.lower() for ext in extensions} if extensions else None

    def validate(self, entry: ScannedEntry, extraction: Optional[ExtractionResult] = None) -> ValidationOutcome:
        settings = self.settings
        if self.extensions is not None and entry.path.suffix.lower() not in self.extensions:
            return ValidationOutcome(ValidationReason.UNSUPPORTED_TYPE, entry.path.suffix or "no extension")
        if entry.size_bytes <= 0:
            return ValidationOutcome(ValidationReason.EMPTY_FILE, "0 bytes")
        if settings.max_file_size_bytes and entry.size_bytes > settings.max_file_size_bytes:
            return ValidationOutcome(
                ValidationReason.FILE_TOO_LARGE,
                f"{entry.size_bytes} > {settings.max_file_size_bytes} bytes",
            )
        if extraction is not None and not extraction.container_readable:
            return ValidationOutcome(
                ValidationReason.UNREADABLE_CONTAINER,
                extraction.container_error or "unreadable",
            )
        duration = entry.duration_seconds
        if duration is None or duration < settings.min_duration_seconds or duration > settings.max_duration_seconds:
            return ValidationOutcome(
                ValidationReason.DURATION_OUT_OF_BOUNDS,
                f"duration {duration!r}s outside "
                f"[{settings.min_duration_seconds}, {settings.max_duration_seconds}]",
            )
        bitrate = entry.bitrate_kbps
        if bitrate is not None:
            if bitrate < settings.min_bitrate_kbps or (
                settings.max_bitrate_kbps is not None and bitrate > settings.max_bitrate_kbps
            ):
                return ValidationOutcome(ValidationReason.BITRATE_OUT_OF_BOUNDS, f"{bitrate} kbps")
        missing = []
        if settings.require_title and not entry.title:
            missing.append("title")
        if settings.require_album and not entry.album:
            missing.append("album")
        if missing:
            return ValidationOutcome(ValidationReason.MISSING_METADATA, ", ".join(missing))
        return ValidationOutcome()

    def apply(self, entry: ScannedEntry, extraction: Optional[ExtractionResult] = None) -> ScannedEntry:
        outcome = self.validate(entry, extraction)
        if not outcome.valid:
            logger.debug("Invalid %s: %s (%s)", entry.path, outcome.reason.value, outcome.detail)
            entry.mark_invalid(outcome.reason, outcome.detail)
        return entry
