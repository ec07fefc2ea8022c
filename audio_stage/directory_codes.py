from __future__ import annotations

import logging
import re
import sqlite3
import unicodedata
from pathlib import Path
from threading import Lock
from typing import Optional

from .config import DirectoryCodeSettings
from .errors import StageError
from .grouping import normalize_text

logger = logging.getLogger(__name__)

ARTICLES = {"the", "a", "an", "le", "la", "les", "el", "los", "las"}
UNKNOWN_CODE = "UNK"
WORD_PATTERN = re.compile(r"[a-z0-9]+")


class DirectoryCodeAllocator:
    """
    Persistent artist -> directory code mapping.

    Codes are derived from the artist's initials, and a known artist always
    gets its stored code back. A new artist whose base code is already taken
    gets the first free numeric suffix (``TB``, ``TB-2``, ``TB-3`` ...).
    Allocation runs inside ``BEGIN IMMEDIATE`` so concurrent workers or
    processes cannot hand out the same code twice.
    """

    def __init__(
        self, path: Path, settings: Optional[DirectoryCodeSettings] = None, *, read_only: bool = False
    ) -> None:
        self.settings = settings or DirectoryCodeSettings()
        self.path = path
        self.read_only = read_only
        self._lock = Lock()
        if read_only:
            # A missing mapping file reads as empty and is not created.
            if path.exists():
                self._conn = sqlite3.connect(
                    f"{path.resolve().as_uri()}?mode=ro", uri=True, check_same_thread=False, isolation_level=None
                )
                return
            self._conn = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False, timeout=30, isolation_level=None)
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS directory_codes (
                name_normalized TEXT PRIMARY KEY,
                code TEXT NOT NULL UNIQUE,
                artist_name TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def base_code(self, name: Optional[str]) -> str:
        words = _code_words(name or "")
        if not words:
            return UNKNOWN_CODE
        if len(words) == 1:
            code = words[0][:3]
        else:
            code = "".join(word[0] for word in words)
        if len(code) < self.settings.min_length:
            filler = "".join(words)[len(code) :]
            code = (code + filler)[: self.settings.min_length]
        code = code.ljust(self.settings.min_length, "x")
        return code[: self.settings.max_length].upper()

    def lookup(self, name: str) -> Optional[str]:
        key = _key(name)
        with self._lock:
            row = self._conn.execute(
                "SELECT code FROM directory_codes WHERE name_normalized = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def peek(self, name: str) -> str:
        """Return the code ``allocate`` would hand out, without writing anything."""
        with self._lock:
            existing = self._existing(_key(name))
            if existing:
                return existing
            return self._free_code(self.base_code(name))

    def allocate(self, name: str) -> str:
        if self.read_only:
            raise StageError(f"Directory code mapping {self.path} is open read-only")
        key = _key(name)
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                existing = self._existing(key)
                if existing:
                    self._conn.execute("COMMIT")
                    return existing
                code = self._free_code(self.base_code(name))
                self._conn.execute(
                    "INSERT INTO directory_codes(name_normalized, code, artist_name) VALUES(?, ?, ?)",
                    (key, code, name),
                )
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
        logger.debug("Allocated directory code %s for %s", code, name)
        return code

    def mappings(self) -> dict[str, str]:
        with self._lock:
            rows = self._conn.execute("SELECT artist_name, code FROM directory_codes ORDER BY code").fetchall()
        return {artist: code for artist, code in rows}

    def _existing(self, key: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT code FROM directory_codes WHERE name_normalized = ?", (key,)
        ).fetchone()
        return row[0] if row else None

    def _free_code(self, base: str) -> str:
        candidate = base
        counter = 2
        while self._conn.execute("SELECT 1 FROM directory_codes WHERE code = ?", (candidate,)).fetchone():
            candidate = f"{base}{self.settings.suffix_pattern.format(n=counter)}"
            counter += 1
        return candidate


def _key(name: str) -> str:
    return normalize_text(name) or "unknown"


def _code_words(name: str) -> list[str]:
    value = name.replace("&", " and ").replace(".", "")
    decomposed = unicodedata.normalize("NFKD", value)
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()
    words = WORD_PATTERN.findall(ascii_only)
    if len(words) > 1 and words[0] in ARTICLES:
        words = words[1:]
    if len(words) > 1:
        words = [word for index, word in enumerate(words) if index == 0 or word not in ARTICLES] or words
    return words
