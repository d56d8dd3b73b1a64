"""Catalog memoization invalidated by source file modification times."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .models import Entry, UnitInfo

LOGGER = logging.getLogger(__name__)


def _mtime_ns(path: str) -> int | None:
    try:
        return Path(path).stat().st_mtime_ns
    except OSError:
        return None


@dataclass(frozen=True, slots=True)
class Fingerprint:
    """Modification stamps of a directory and the files a cached value came from."""

    directory: str
    directory_mtime: int | None
    files: tuple[tuple[str, int | None], ...]

    @classmethod
    def capture(cls, directory: str | Path, paths: Iterable[str | Path]) -> Fingerprint:
        unique = sorted({str(path) for path in paths})
        return cls(
            directory=str(directory),
            directory_mtime=_mtime_ns(str(directory)),
            files=tuple((path, _mtime_ns(path)) for path in unique),
        )

    def is_current(self) -> bool:
        if _mtime_ns(self.directory) != self.directory_mtime:
            return False
        return all(_mtime_ns(path) == stamp for path, stamp in self.files)


@dataclass(slots=True)
class _CachedEntries:
    entries: tuple[Entry, ...]
    fingerprint: Fingerprint


@dataclass(slots=True)
class _CachedInfo:
    info: UnitInfo
    fingerprint: Fingerprint


def entries_cache_key(base_dir: str, include_functions: bool) -> str:
    mode = "with-functions" if include_functions else "scripts-only"
    return f"{base_dir}|{mode}"


def info_cache_key(base_dir: str, name: str) -> str:
    return f"{base_dir}|{name}"


class CatalogCache:
    """Holds unit listings and unit info until their fingerprint drifts.

    Stale entries are reported as misses; callers reload from disk.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, _CachedEntries] = {}
        self._infos: dict[str, _CachedInfo] = {}

    def get_entries(self, key: str) -> list[Entry] | None:
        with self._lock:
            cached = self._entries.get(key)
        if cached is None:
            return None
        if not cached.fingerprint.is_current():
            LOGGER.debug("catalog_cache_stale", extra={"key": key})
            with self._lock:
                if self._entries.get(key) is cached:
                    del self._entries[key]
            return None
        return list(cached.entries)

    def set_entries(self, key: str, entries: Iterable[Entry], fingerprint: Fingerprint) -> None:
        with self._lock:
            self._entries[key] = _CachedEntries(entries=tuple(entries), fingerprint=fingerprint)

    def get_info(self, key: str) -> UnitInfo | None:
        with self._lock:
            cached = self._infos.get(key)
        if cached is None:
            return None
        if not cached.fingerprint.is_current():
            LOGGER.debug("catalog_cache_stale", extra={"key": key})
            with self._lock:
                if self._infos.get(key) is cached:
                    del self._infos[key]
            return None
        return cached.info

    def set_info(self, key: str, info: UnitInfo, fingerprint: Fingerprint) -> None:
        with self._lock:
            self._infos[key] = _CachedInfo(info=info, fingerprint=fingerprint)

    def invalidate(self, base_dir: str | None = None) -> None:
        """Forget everything, or only the entries recorded for ``base_dir``."""
        with self._lock:
            if base_dir is None:
                self._entries.clear()
                self._infos.clear()
                return
            prefix = f"{base_dir}|"
            for store in (self._entries, self._infos):
                for key in [key for key in store if key.startswith(prefix)]:
                    del store[key]
