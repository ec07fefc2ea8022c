from __future__ import annotations

import errno
import hashlib
import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .errors import ChecksumMismatchError, ConflictError, RelocationError

logger = logging.getLogger(__name__)

ELLIPSIS = "…"
MAX_BASENAME_BYTES = 255
PARTIAL_SUFFIX = ".partial"
CHUNK_SIZE = 1024 * 1024


class MoveStrategy(str, Enum):
    RENAME = "rename"
    COPY = "copy"
    RESUMED = "resumed"


@dataclass(slots=True, frozen=True)
class MoveOutcome:
    strategy: MoveStrategy
    verified: bool
    checksum: Optional[str] = None


def file_checksum(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def path_exists(path: Path) -> Optional[bool]:
    try:
        path.stat()
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        if exc.errno != errno.ENAMETOOLONG:
            raise
        parent = path.parent
        try:
            with os.scandir(parent) as it:
                for entry in it:
                    if entry.name == path.name:
                        return True
        except FileNotFoundError:
            return None
        return False


def fit_destination_path(path: Path, max_bytes: int = MAX_BASENAME_BYTES) -> Path:
    """Shorten the basename to ``max_bytes`` UTF-8 bytes, keeping the suffix."""
    name_bytes = path.name.encode("utf-8")
    if len(name_bytes) <= max_bytes:
        return path
    suffix_bytes = path.suffix.encode("utf-8")
    ellipsis_bytes = ELLIPSIS.encode("utf-8")
    allowed = max(0, max_bytes - len(suffix_bytes) - len(ellipsis_bytes))
    stem = path.stem or "file"
    truncated = stem.encode("utf-8")[:allowed].decode("utf-8", errors="ignore").rstrip() or "file"
    return path.with_name(f"{truncated}{ELLIPSIS}{path.suffix}")


def safe_rename(src: Path, dst: Path) -> None:
    try:
        src.rename(dst)
        return
    except OSError as exc:
        if exc.errno != errno.ENAMETOOLONG:
            raise
    src_dir_fd = os.open(src.parent, os.O_RDONLY)
    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
        dst_dir_fd = os.open(dst.parent, os.O_RDONLY)
        try:
            os.rename(src.name, dst.name, src_dir_fd=src_dir_fd, dst_dir_fd=dst_dir_fd)
        finally:
            os.close(dst_dir_fd)
    finally:
        os.close(src_dir_fd)


def partial_path(dst: Path) -> Path:
    return dst.with_name(f"{dst.name}{PARTIAL_SUFFIX}")


def safe_move(
    src: Path, dst: Path, expected_checksum: Optional[str] = None, *, keep_source: bool = False
) -> MoveOutcome:
    """
    Relocate ``src`` to ``dst``.

    An atomic rename is tried first. When the rename fails for any reason,
    cross-device or otherwise, the move falls back to copying into ``<dst>.partial``, verifying the sha256
    against the source and only then replacing ``dst`` and deleting ``src``.
    Only a failed copy or verification raises.

    A destination that already holds identical content is treated as a
    finished move from an interrupted run; different content raises
    ``ConflictError``. With ``keep_source`` the source of such a resumed
    move is left in place and the caller removes it once its own work has
    committed.
    """
    if path_exists(dst):
        source_sum = expected_checksum or file_checksum(src)
        if file_checksum(dst) != source_sum:
            raise ConflictError(f"Destination exists with different content: {dst}", src, dst)
        if not keep_source and path_exists(src):
            src.unlink()
            logger.info("Destination already present for %s, removed source", dst)
        return MoveOutcome(MoveStrategy.RESUMED, True, source_sum)
    dst.parent.mkdir(parents=True, exist_ok=True)
    try:
        safe_rename(src, dst)
        return MoveOutcome(MoveStrategy.RENAME, False, expected_checksum)
    except OSError as exc:
        if exc.errno == errno.EXDEV:
            logger.debug("Cross-device move %s -> %s, copying", src, dst)
        else:
            logger.warning("Rename %s -> %s failed (%s), copying instead", src, dst, exc)
    return _copy_verify_delete(src, dst, expected_checksum)


def discard_sources(sources: list[Path]) -> None:
    """Delete the sources of resumed moves once the caller has committed."""
    for source in sources:
        try:
            _unlink_quietly(source)
        except OSError as exc:
            logger.warning("Could not remove already relocated source %s: %s", source, exc)


def _copy_verify_delete(src: Path, dst: Path, expected_checksum: Optional[str]) -> MoveOutcome:
    temp = partial_path(dst)
    try:
        source_sum = expected_checksum or file_checksum(src)
        shutil.copy2(src, temp)
        copied_sum = file_checksum(temp)
        if copied_sum != source_sum:
            raise ChecksumMismatchError(
                f"Checksum mismatch copying {src} -> {dst}: {source_sum} != {copied_sum}", src, dst
            )
        os.replace(temp, dst)
    except OSError as exc:
        _unlink_quietly(temp)
        raise RelocationError(f"Failed to copy {src} -> {dst}: {exc}", src, dst) from exc
    except RelocationError:
        _unlink_quietly(temp)
        raise
    src.unlink()
    return MoveOutcome(MoveStrategy.COPY, True, source_sum)


def cleanup_partials(root: Optional[Path]) -> list[Path]:
    """Remove leftover ``.partial`` copies from interrupted cross-device moves."""
    removed: list[Path] = []
    if root is None or not root.exists():
        return removed
    for candidate in root.rglob(f"*{PARTIAL_SUFFIX}"):
        if not candidate.is_file():
            continue
        candidate.unlink()
        removed.append(candidate)
        logger.warning("Removed interrupted copy %s", candidate)
    return removed


def remove_empty_dirs(directory: Path, stop_at: Path) -> None:
    """Remove ``directory`` and its empty parents up to (not including) ``stop_at``."""
    current = directory
    stop = stop_at.resolve()
    while current.exists() and current.resolve() != stop and stop in current.resolve().parents:
        try:
            current.rmdir()
        except OSError:
            break
        current = current.parent


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
