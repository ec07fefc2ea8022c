"""
Review and promotion surface.

This is the only entry point external collaborators (admin tools, APIs) use to
change pipeline state; they never touch the staging tree or catalog tables
directly.
"""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from typing import Any, Optional

from .errors import PreconditionError, SidecarError, StageError
from .models import ReviewStatus, StagingRecord
from .promotion import Promoter, PromotionResult
from .sidecar import AlbumSidecar, bytes_checksum, read_sidecar
from .store import LibraryStore

logger = logging.getLogger(__name__)


@dataclass
class RecordDetail:
    record: StagingRecord
    sidecar: Optional[AlbumSidecar]
    checksum_ok: bool
    sidecar_error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "record": self.record.to_record(),
            "sidecar": self.sidecar.model_dump(mode="json") if self.sidecar else None,
            "checksum_ok": self.checksum_ok,
            "sidecar_error": self.sidecar_error,
        }


class StagingService:
    def __init__(self, store: LibraryStore, promoter: Optional[Promoter] = None) -> None:
        self.store = store
        self.promoter = promoter

    def list_records(
        self,
        status: Optional[ReviewStatus | str] = None,
        scan_id: Optional[str] = None,
    ) -> list[StagingRecord]:
        return self.store.list_records(ReviewStatus(status) if status else None, scan_id)

    def get_record(self, record_id: int) -> RecordDetail:
        record = self.store.get_record(record_id)
        try:
            payload = record.metadata_file.read_bytes()
        except OSError as exc:
            return RecordDetail(record, None, False, f"cannot read sidecar: {exc}")
        checksum_ok = bytes_checksum(payload) == record.checksum
        try:
            sidecar = read_sidecar(record.metadata_file)
        except SidecarError as exc:
            return RecordDetail(record, None, checksum_ok, str(exc))
        return RecordDetail(record, sidecar, checksum_ok)

    def stats(self) -> dict[str, Any]:
        return self.store.record_stats()

    def approve(self, record_id: int, reviewer: str, notes: Optional[str] = None) -> StagingRecord:
        if not reviewer:
            raise ValueError("reviewer is required")
        self._transition(record_id, (ReviewStatus.PENDING_REVIEW,), ReviewStatus.APPROVED, reviewer, notes)
        logger.info("Staging record %s approved by %s", record_id, reviewer)
        return self.store.get_record(record_id)

    def reject(self, record_id: int, reviewer: str, reason: str) -> StagingRecord:
        if not reviewer:
            raise ValueError("reviewer is required")
        if not reason or not reason.strip():
            raise ValueError("a reason is required to reject a staging record")
        self._transition(record_id, (ReviewStatus.PENDING_REVIEW,), ReviewStatus.REJECTED, reviewer, reason.strip())
        logger.info("Staging record %s rejected by %s: %s", record_id, reviewer, reason)
        return self.store.get_record(record_id)

    def requeue(self, record_id: int) -> StagingRecord:
        self._transition(record_id, (ReviewStatus.REJECTED,), ReviewStatus.PENDING_REVIEW, None, None)
        logger.info("Staging record %s requeued for review", record_id)
        return self.store.get_record(record_id)

    def promote(self, record_id: int) -> PromotionResult:
        if self.promoter is None:
            raise StageError("promotion.production_root is not configured")
        return self.promoter.promote(record_id)

    def delete(self, record_id: int, remove_files: bool = False) -> StagingRecord:
        record = self.store.get_record(record_id)
        if record.status is not ReviewStatus.REJECTED:
            raise PreconditionError(
                f"Staging record {record_id} is {record.status.value}; only rejected records can be deleted"
            )
        if remove_files and record.staging_path.exists():
            shutil.rmtree(record.staging_path)
            logger.info("Removed staged files at %s", record.staging_path)
        self.store.delete_record(record_id)
        logger.info("Deleted staging record %s", record_id)
        return record

    def _transition(
        self,
        record_id: int,
        allowed_from: tuple[ReviewStatus, ...],
        status: ReviewStatus,
        reviewer: Optional[str],
        notes: Optional[str],
    ) -> None:
        if self.store.transition(record_id, allowed_from, status, reviewer, notes):
            return
        record = self.store.get_record(record_id)
        if self.store.claim_of(record_id):
            raise PreconditionError(f"Staging record {record_id} is being promoted")
        raise PreconditionError(
            f"Cannot move staging record {record_id} from {record.status.value} to {status.value}"
        )
