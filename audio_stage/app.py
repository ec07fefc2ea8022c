from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from .config import Settings
from .directory_codes import DirectoryCodeAllocator
from .promotion import Promoter
from .staging import StagingService
from .store import LibraryStore

logger = logging.getLogger(__name__)


@dataclass
class AudioStageApp:
    settings: Settings
    store: Optional[LibraryStore] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    _allocator: Optional[DirectoryCodeAllocator] = None
    _staging: Optional[StagingService] = None

    @classmethod
    def create(cls, settings: Settings, *, open_store: bool = True) -> "AudioStageApp":
        store: Optional[LibraryStore] = None
        store_path = settings.store.path
        if store_path is not None and settings.processor.dry_run and not store_path.exists():
            open_store = False
        if open_store and store_path is not None:
            store = LibraryStore(store_path)
            cleared = 0 if settings.processor.dry_run else store.clear_stale_claims()
            if cleared:
                logger.warning("Released %d stale promotion claim(s)", cleared)
        return cls(settings=settings, store=store)

    def get_allocator(self) -> DirectoryCodeAllocator:
        if self._allocator is None:
            self._allocator = DirectoryCodeAllocator(
                self.settings.directory_codes.path,
                self.settings.directory_codes,
                read_only=self.settings.processor.dry_run,
            )
        return self._allocator

    def get_staging_service(self) -> StagingService:
        if self.store is None:
            raise SystemExit("store.path is not configured (set it in config.yaml or pass --store)")
        if self._staging is None:
            promoter = None
            if self.settings.promotion.production_root is not None:
                promoter = Promoter(
                    self.store,
                    self.settings.promotion.production_root,
                    self.settings.processor.unknown_year_label,
                )
            self._staging = StagingService(self.store, promoter)
        return self._staging

    def close(self) -> None:
        if self._allocator is not None:
            self._allocator.close()
        if self.store is not None:
            self.store.close()
