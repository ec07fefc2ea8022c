from __future__ import annotations

from pathlib import Path
from typing import Optional


class StageError(Exception):
    """Base class for pipeline errors."""


class ScanRootError(StageError):
    """Raised when the scan root is missing or unreadable; aborts the scan."""


class StoreUnavailableError(StageError):
    """Raised when the durable store cannot be opened at startup."""


class RelocationError(StageError):
    """Raised when a file cannot be relocated; fails the album, not the run."""

    def __init__(self, message: str, source: Optional[Path] = None, target: Optional[Path] = None) -> None:
        super().__init__(message)
        self.source = source
        self.target = target


class ConflictError(RelocationError):
    """Destination already exists with different content."""


class ChecksumMismatchError(RelocationError):
    """A copied file does not match the checksum of its source."""


class SidecarError(StageError):
    """Raised when a metadata sidecar is missing, unreadable or tampered with."""


class RecordNotFoundError(StageError):
    pass


class PreconditionError(StageError):
    """Raised when a review or promotion action is not allowed in the record's current state."""


class PromotionInProgressError(PreconditionError):
    pass


class PromotionError(StageError):
    """Raised when a promotion transaction fails and was rolled back."""
