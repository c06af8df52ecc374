"""Result Store: TTL + LRU cache of analysis results with disk persistence.

Entries live in memory and, when persistence is enabled, are mirrored to
one JSON file per cache key so that results survive a restart. Expiry is
enforced lazily on lookup and on startup load; eviction removes the entry
with the oldest ``last_accessed_at`` (true LRU, not insertion order).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from collections import defaultdict
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from analysis_broker.models import AnalysisResult, CacheStats

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_DEFAULT_TTL_SECONDS = 3600.0
_DEFAULT_MAX_ENTRIES = 100
_CACHE_VERSION = "v1"
_ENTRY_SUFFIX = ".json"

EntryPredicate = Callable[[AnalysisResult], bool]


def generate_key(request_fields: dict[str, Any]) -> str:
    """Build a deterministic cache key from request fields.

    Nested mappings are serialized with sorted keys so that logically
    identical requests built in a different field order collide. List
    order is preserved.

    Args:
        request_fields: The identifying fields of a request.

    Returns:
        A hex SHA-256 digest string.
    """
    key_parts = {"version": _CACHE_VERSION, "request": request_fields}
    serialized = json.dumps(key_parts, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(serialized.encode()).hexdigest()


class CacheEntry(BaseModel):
    """A stored result plus bookkeeping; this is the on-disk format."""

    key: str
    value: AnalysisResult
    created_at: float
    last_accessed_at: float
    size_bytes: int = 0


# ---------------------------------------------------------------------------
# Entry files (run in worker threads)
# ---------------------------------------------------------------------------


def _entry_path(directory: Path, key: str) -> Path:
    return directory / f"{key}{_ENTRY_SUFFIX}"


def _write_entry(directory: Path, entry: CacheEntry) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    path = _entry_path(directory, entry.key)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(entry.model_dump_json(), encoding="utf-8")
    tmp_path.replace(path)


def _remove_entry_file(directory: Path, key: str) -> None:
    _entry_path(directory, key).unlink(missing_ok=True)


def _remove_stray_files(directory: Path, keep: frozenset[str]) -> None:
    """Delete entry files whose key is not in ``keep``."""
    if not directory.is_dir():
        return
    for path in directory.glob(f"*{_ENTRY_SUFFIX}"):
        if path.stem not in keep:
            path.unlink(missing_ok=True)


def _read_entries(directory: Path, now: float, ttl_seconds: float) -> list[CacheEntry]:
    """Read live entries, deleting expired files and skipping unreadable ones."""
    if not directory.is_dir():
        return []

    entries: list[CacheEntry] = []
    for path in sorted(directory.glob(f"*{_ENTRY_SUFFIX}")):
        try:
            entry = CacheEntry.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("cache_entry_unreadable", path=str(path), error=str(exc))
            continue

        if now - entry.created_at >= ttl_seconds:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("cache_unpersist_failed", key=entry.key[:12], error=str(exc))
            logger.debug("cache_entry_expired_on_load", key=entry.key[:12])
            continue

        entries.append(entry)
    return entries


class ResultStore:
    """In-memory TTL/LRU cache with optional JSON-file persistence.

    When ``enabled`` is False lookups always miss and writes are dropped.

    Attributes:
        ttl_seconds: Maximum entry age; an entry is absent once its age
            reaches this value.
        max_entries: Maximum number of entries held.
        directory: Directory holding persisted entries, or None.
        enabled: Whether caching is active.
    """

    def __init__(
        self,
        ttl_seconds: float = _DEFAULT_TTL_SECONDS,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
        directory: Path | str | None = None,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize an empty store; call ``load`` to read persisted entries.

        Args:
            ttl_seconds: Time-to-live for entries in seconds.
            max_entries: Capacity in entries.
            directory: Persistence directory; None keeps the store in memory.
            enabled: Set False to disable caching.
            clock: Wall-clock source returning epoch seconds.
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.directory = Path(directory) if directory is not None else None
        self.enabled = enabled
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._key_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._hits = 0
        self._misses = 0
        self._loaded = False

    generate_key = staticmethod(generate_key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # -- persistence ---------------------------------------------------------

    async def _persist(self, entry: CacheEntry) -> None:
        if self.directory is None:
            return
        try:
            await asyncio.to_thread(_write_entry, self.directory, entry)
        except OSError as exc:
            # The in-memory entry stays authoritative for this process.
            logger.warning("cache_persist_failed", key=entry.key[:12], error=str(exc))

    async def _unpersist(self, key: str) -> None:
        if self.directory is None:
            return
        try:
            await asyncio.to_thread(_remove_entry_file, self.directory, key)
        except OSError as exc:
            logger.warning("cache_unpersist_failed", key=key[:12], error=str(exc))

    async def _drop_file(self, key: str) -> None:
        """Remove the file for ``key`` once any write in flight has finished."""
        async with self._key_locks[key]:
            await self._unpersist(key)

    async def load(self) -> int:
        """Load persisted entries, deleting expired or unreadable files.

        Idempotent: only the first call reads the directory.

        Returns:
            Number of entries loaded.
        """
        if not self.enabled or self.directory is None or self._loaded:
            return 0
        self._loaded = True

        try:
            entries = await asyncio.to_thread(
                _read_entries, self.directory, self._clock(), self.ttl_seconds
            )
        except OSError as exc:
            logger.warning("cache_load_failed", directory=str(self.directory), error=str(exc))
            return 0

        for entry in entries:
            self._entries.setdefault(entry.key, entry)
        for key in self._trim_to(self.max_entries):
            await self._drop_file(key)

        logger.info("cache_loaded", entries=len(entries), directory=str(self.directory))
        return len(entries)

    # -- core operations -----------------------------------------------------

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at >= self.ttl_seconds

    def _trim_to(self, limit: int) -> list[str]:
        """Drop LRU entries from memory until at most ``limit`` remain.

        Returns the evicted keys; their files are removed by the caller.
        """
        evicted: list[str] = []
        while self._entries and len(self._entries) > limit:
            lru_key = min(self._entries, key=lambda k: self._entries[k].last_accessed_at)
            del self._entries[lru_key]
            logger.debug("cache_evicted", key=lru_key[:12])
            evicted.append(lru_key)
        return evicted

    async def get(self, key: str) -> AnalysisResult | None:
        """Return the cached result for ``key``, or None.

        An expired entry is deleted (with its file) as a side effect. A hit
        refreshes ``last_accessed_at``.
        """
        if not self.enabled:
            return None

        entry = self._entries.get(key)
        now = self._clock()
        if entry is None:
            self._misses += 1
            logger.debug("cache_miss", key=key[:12])
            return None

        if self._is_expired(entry, now):
            del self._entries[key]
            self._misses += 1
            logger.debug("cache_expired", key=key[:12])
            await self._drop_file(key)
            return None

        entry.last_accessed_at = now
        self._hits += 1
        logger.debug("cache_hit", key=key[:12])
        return entry.value

    async def set(self, key: str, result: AnalysisResult) -> None:
        """Insert ``result`` under ``key``, evicting the LRU entry if full.

        Writes for one key are serialized. If the entry is removed while its
        file is being written, the file is removed again afterwards.
        """
        if not self.enabled:
            return

        now = self._clock()
        stored = result.model_copy(update={"cached": False})
        entry = CacheEntry(
            key=key,
            value=stored,
            created_at=now,
            last_accessed_at=now,
            size_bytes=len(stored.model_dump_json().encode()),
        )

        evicted = [] if key in self._entries else self._trim_to(self.max_entries - 1)
        self._entries[key] = entry
        for lru_key in evicted:
            await self._drop_file(lru_key)

        async with self._key_locks[key]:
            await self._persist(entry)
            if key not in self._entries:
                await self._unpersist(key)

        logger.debug(
            "cache_set",
            key=key[:12],
            size_bytes=entry.size_bytes,
            ttl_seconds=self.ttl_seconds,
        )

    async def invalidate(self, predicate: EntryPredicate | None = None) -> int:
        """Remove entries whose result matches ``predicate`` (all if None).

        Returns:
            Number of entries removed.
        """
        if predicate is None:
            return await self.clear()

        matched = [k for k, e in self._entries.items() if predicate(e.value)]
        for key in matched:
            del self._entries[key]
        for key in matched:
            await self._drop_file(key)

        logger.info("cache_invalidated", entries_removed=len(matched))
        return len(matched)

    async def clear(self) -> int:
        """Remove every entry from memory and disk.

        Files of entries being written are removed once the write finishes.
        Entries stored after the call started are kept.

        Returns:
            Number of in-memory entries removed.
        """
        removed = list(self._entries)
        self._entries.clear()
        for key in removed:
            await self._drop_file(key)

        if self.directory is not None:
            try:
                await asyncio.to_thread(
                    _remove_stray_files, self.directory, frozenset(self._entries)
                )
            except OSError as exc:
                logger.warning("cache_clear_failed", directory=str(self.directory), error=str(exc))

        logger.info("cache_cleared", entries_removed=len(removed))
        return len(removed)


    def get_stats(self) -> CacheStats:
        """Report entry count, total serialized size and hit rate."""
        lookups = self._hits + self._misses
        return CacheStats(
            entries=len(self._entries),
            total_size_bytes=sum(e.size_bytes for e in self._entries.values()),
            hit_rate=self._hits / lookups if lookups else 0.0,
            hits=self._hits,
            misses=self._misses,
        )


# ---------------------------------------------------------------------------
# Invalidation predicates
# ---------------------------------------------------------------------------


def matches_target(target: str) -> EntryPredicate:
    """Match results whose analyzed paths or finding locations contain ``target``."""

    def predicate(result: AnalysisResult) -> bool:
        if any(target in path for path in result.targets):
            return True
        return any(target in finding.location for finding in result.findings)

    return predicate


def has_finding_type(finding_type: str) -> EntryPredicate:
    """Match results containing at least one finding of ``finding_type``."""

    def predicate(result: AnalysisResult) -> bool:
        return any(finding.type == finding_type for finding in result.findings)

    return predicate
