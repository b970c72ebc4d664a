from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from recordshift.duplicates.normalize import build_duplicate_key, normalize_match_value
from recordshift.duplicates.types import CacheStats, DuplicateCheckResult
from recordshift.platform.types import Record

logger = logging.getLogger(__name__)

LookupFn = Callable[[str], Record | None]


class DuplicateMatcher:
    """Per-run cache of duplicate lookups keyed by normalized match value.

    Misses are cached too, so a value that matched nothing is looked up once.
    The cache lives only as long as the matcher; after a restart a fresh
    lookup gives the same answer, just slower.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cache: dict[str, Record | None] = {}
        self._hits = 0
        self._misses = 0

    def check(
        self,
        lookup: LookupFn,
        collection_id: str,
        field_id: str,
        value: Any,
        field_type: str,
    ) -> DuplicateCheckResult:
        normalized = normalize_match_value(value, field_type)
        if normalized == "":
            return DuplicateCheckResult(is_duplicate=False, normalized_key=normalized, from_cache=False)

        key = build_duplicate_key(collection_id, field_id, normalized)
        with self._lock:
            if key in self._cache:
                self._hits += 1
                existing = self._cache[key]
                return DuplicateCheckResult(
                    is_duplicate=existing is not None,
                    normalized_key=normalized,
                    from_cache=True,
                    existing=existing,
                )
            self._misses += 1

        existing = lookup(normalized)
        with self._lock:
            self._cache[key] = existing
        logger.debug("Duplicate lookup %s -> %s", key, existing.id if existing is not None else None)
        return DuplicateCheckResult(
            is_duplicate=existing is not None,
            normalized_key=normalized,
            from_cache=False,
            existing=existing,
        )

    def remember(self, collection_id: str, field_id: str, normalized: str, record: Record) -> None:
        """Record a target written during this run so later items match it without a lookup."""
        if normalized == "":
            return
        with self._lock:
            self._cache[build_duplicate_key(collection_id, field_id, normalized)] = record

    def stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            hit_rate = self._hits / total if total else 0.0
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._cache),
                hit_rate=round(hit_rate, 2),
            )

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0
