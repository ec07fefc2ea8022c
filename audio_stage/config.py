from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_EXTENSIONS = [
    ".mp3",
    ".flac",
    ".m4a",
    ".aac",
    ".ogg",
    ".opus",
    ".wma",
    ".wav",
    ".ape",
    ".wv",
]


def _expand_optional(value: Optional[str | Path]) -> Optional[Path]:
    if value is None:
        return None
    return Path(value).expanduser().resolve()


class ScannerSettings(BaseModel):
    source_root: Optional[Path] = None
    catalog_dir: Path = Path("./scans")
    include_extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    workers: int = 4
    files_per_batch: int = 64
    commit_batch_size: int = 1000

    @field_validator("source_root", mode="before")
    @classmethod
    def _expand_source(cls, value: Optional[str | Path]) -> Optional[Path]:
        return _expand_optional(value)

    @field_validator("catalog_dir", mode="before")
    @classmethod
    def _expand_catalog(cls, value: str | Path) -> Path:
        return Path(value).expanduser().resolve()

    @field_validator("include_extensions", mode="before")
    @classmethod
    def _normalize_exts(cls, values: List[str]) -> List[str]:
        result = []
        for value in values:
            ext = value.lower().strip()
            if not ext.startswith("."):
                ext = f".{ext}"
            result.append(ext)
        return result


class ValidationSettings(BaseModel):
    min_duration_seconds: float = 10.0
    max_duration_seconds: float = 7200.0
    min_bitrate_kbps: int = 32
    max_bitrate_kbps: Optional[int] = None
    max_file_size_bytes: int = 2 * 1024 * 1024 * 1024
    require_title: bool = True
    require_album: bool = True


class GroupingSettings(BaseModel):
    # A provisional group is split when it has more than this many
    # non-trivial year clusters.
    split_threshold: int = 1
    min_year_cluster_size: int = 2


class DirectoryCodeSettings(BaseModel):
    path: Path = Path("./cache/directory_codes.sqlite3")
    min_length: int = 2
    max_length: int = 8
    suffix_pattern: str = "-{n}"

    @field_validator("path", mode="before")
    @classmethod
    def _expand_path(cls, value: str | Path) -> Path:
        return Path(value).expanduser().resolve()


class ProcessorSettings(BaseModel):
    staging_root: Optional[Path] = None
    workers: int = 4
    rate_limit: int = 0
    dry_run: bool = False
    sidecar_name: str = "album.stage.json"
    unknown_year_label: str = "Unknown Year"
    max_filename_length: int = 255

    @field_validator("staging_root", mode="before")
    @classmethod
    def _expand_staging(cls, value: Optional[str | Path]) -> Optional[Path]:
        return _expand_optional(value)


class StoreSettings(BaseModel):
    path: Optional[Path] = None

    @field_validator("path", mode="before")
    @classmethod
    def _expand_store(cls, value: Optional[str | Path]) -> Optional[Path]:
        return _expand_optional(value)


class PromotionSettings(BaseModel):
    production_root: Optional[Path] = None

    @field_validator("production_root", mode="before")
    @classmethod
    def _expand_production(cls, value: Optional[str | Path]) -> Optional[Path]:
        return _expand_optional(value)


class WatchSettings(BaseModel):
    quiet_seconds: float = 30.0
    keep_catalogs: bool = False


class Settings(BaseModel):
    scanner: ScannerSettings = ScannerSettings()
    validation: ValidationSettings = ValidationSettings()
    grouping: GroupingSettings = GroupingSettings()
    directory_codes: DirectoryCodeSettings = DirectoryCodeSettings()
    processor: ProcessorSettings = ProcessorSettings()
    store: StoreSettings = StoreSettings()
    promotion: PromotionSettings = PromotionSettings()
    watch: WatchSettings = WatchSettings()

    @classmethod
    def load(cls, path: Path) -> "Settings":
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
        return cls.model_validate(raw or {})


def find_config(explicit_path: Optional[Path]) -> Optional[Path]:
    if explicit_path:
        if not explicit_path.exists():
            raise FileNotFoundError(f"Config file not found: {explicit_path}")
        return explicit_path
    cwd = Path.cwd()
    for candidate in (cwd / "config.yaml", cwd / "config.yml"):
        if candidate.exists():
            return candidate
    return None
