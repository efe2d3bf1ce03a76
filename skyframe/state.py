"""Single-slot persistent photo cache."""

from __future__ import annotations

import json
import os
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import GlobalConfig
from .models import CacheEntry, PhotoRecord

CACHE_TTL_MS = 30 * 60 * 1000


class CacheStore(Protocol):
    """Minimal key-value style interface over the one cached record."""

    def get(self) -> Optional[CacheEntry]:
        ...

    def put(self, entry: CacheEntry) -> CacheEntry:
        ...

    def clear(self) -> None:
        ...


class _PhotoPayload(BaseModel):
    url: str
    author: str
    author_url: str = Field(alias="authorUrl")
    download_location: Optional[str] = Field(default=None, alias="downloadLocation")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _CachePayload(BaseModel):
    photo: _PhotoPayload
    query: str
    timestamp: int

    model_config = ConfigDict(extra="ignore")


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Replace ``path`` with ``payload`` via a sibling temp file.

    A failed write leaves the previous file untouched and no temp file behind.
    """

    _ensure_parent(path)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _monotonic(previous: Optional[CacheEntry], entry: CacheEntry) -> CacheEntry:
    # Timestamps never go backwards within one process, even if the clock does.
    if previous is not None and entry.timestamp < previous.timestamp:
        return replace(entry, timestamp=previous.timestamp)
    return entry


def parse_entry(payload: object) -> Optional[CacheEntry]:
    """Validate a decoded JSON document; ``None`` when it is not a cache record."""

    try:
        record = _CachePayload.model_validate(payload)
    except ValidationError:
        return None
    photo = PhotoRecord(
        url=record.photo.url,
        author=record.photo.author,
        author_url=record.photo.author_url,
        download_location=record.photo.download_location,
    )
    return CacheEntry(photo=photo, query=record.query, timestamp=record.timestamp)


def cache_age_ms(entry: CacheEntry, now_ms: int) -> int:
    return now_ms - entry.timestamp


def is_cache_valid(entry: Optional[CacheEntry], now_ms: int, query: str) -> bool:
    """An entry is valid while younger than the TTL and fetched for ``query``."""

    if entry is None:
        return False
    if cache_age_ms(entry, now_ms) >= CACHE_TTL_MS:
        return False
    return entry.query == query


class MemoryCacheStore:
    """In-process cache slot, used by tests and one-shot commands."""

    def __init__(self, entry: Optional[CacheEntry] = None) -> None:
        self._entry = entry

    def get(self) -> Optional[CacheEntry]:
        return self._entry

    def put(self, entry: CacheEntry) -> CacheEntry:
        self._entry = _monotonic(self._entry, entry)
        return self._entry

    def clear(self) -> None:
        self._entry = None


class JsonFileCacheStore:
    """Cache slot persisted as one JSON document.

    Missing, unreadable or malformed files read as an empty slot. The file is
    replaced atomically on every write.
    """

    def __init__(self, path: Path, logger: Optional[structlog.stdlib.BoundLogger] = None) -> None:
        self.path = Path(path).expanduser()
        self.logger = logger or structlog.get_logger("skyframe.cache")
        self._entry: Optional[CacheEntry] = None
        self._loaded = False

    def _load(self) -> Optional[CacheEntry]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            self.logger.warning("cache.corrupt", path=str(self.path), error=str(exc))
            return None

        entry = parse_entry(payload)
        if entry is None:
            self.logger.warning("cache.corrupt", path=str(self.path), error="schema mismatch")
        return entry

    def get(self) -> Optional[CacheEntry]:
        if not self._loaded:
            self._entry = self._load()
            self._loaded = True
        return self._entry

    def put(self, entry: CacheEntry) -> CacheEntry:
        """Store ``entry`` and persist it.

        The in-memory slot is updated before the file is written, so an
        ``OSError`` from the write still leaves ``get`` returning the new entry.
        """

        entry = _monotonic(self.get(), entry)
        self._entry = entry
        self._loaded = True
        write_json_atomic(self.path, entry.to_dict())
        self.logger.debug("cache.stored", query=entry.query, timestamp=entry.timestamp)
        return entry

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self._entry = None
        self._loaded = True


def cache_path_for(global_config: GlobalConfig) -> Path:
    storage_root = Path(global_config.runtime.storage_dir).expanduser()
    cache_path = Path(global_config.runtime.cache_file)
    if not cache_path.is_absolute():
        cache_path = storage_root / cache_path
    return cache_path
