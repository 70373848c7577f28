"""
Content-addressed cache of recognition results, plus an in-memory history
of results the caller asked to keep.
"""

import hashlib
import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .models import RecognitionResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100
DEFAULT_TTL_HOURS = 24


def fingerprint(image_bytes: bytes) -> str:
    """SHA-256 hex digest of the original image bytes."""
    return hashlib.sha256(image_bytes).hexdigest()


class ResultCache:
    """
    Bounded LRU of cache key -> RecognitionResult. Keys start with the image
    fingerprint.

    Entries expire after ``ttl_hours``. When ``engine_version`` is set, results
    produced by any other engine version are treated as stale.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_hours: float = DEFAULT_TTL_HOURS,
        engine_version: Optional[str] = None
    ):
        self.max_entries = max(1, max_entries)
        self.ttl = timedelta(hours=ttl_hours)
        self.engine_version = engine_version
        self._entries: "OrderedDict[str, RecognitionResult]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def is_valid(self, result: RecognitionResult) -> bool:
        if datetime.utcnow() - result.processed_at > self.ttl:
            return False
        if self.engine_version and result.engine_version != self.engine_version:
            return False
        return True

    def get(self, key: str) -> Optional[RecognitionResult]:
        with self._lock:
            result = self._entries.get(key)
            if result is None:
                self._misses += 1
                logger.debug(f"Cache miss: {key[:16]}")
                return None

            if not self.is_valid(result):
                del self._entries[key]
                self._misses += 1
                logger.debug(f"Cache entry expired: {key[:16]}")
                return None

            self._entries.move_to_end(key)
            self._hits += 1
            logger.debug(f"Cache hit: {key[:16]}")
            return result

    def put(self, key: str, result: RecognitionResult) -> None:
        with self._lock:
            self._entries[key] = result
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Cache evicted: {evicted[:16]}")

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("Recognition cache cleared")

    def statistics(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries


class InMemoryHistoryStore:
    """Process-local store of saved recognition results, newest first."""

    def __init__(self):
        self._results: Dict[str, RecognitionResult] = {}
        self._lock = threading.Lock()

    def save(self, result: RecognitionResult) -> str:
        with self._lock:
            self._results[result.id] = result
        logger.info(f"Saved recognition result {result.id}")
        return result.id

    def get(self, result_id: str) -> Optional[RecognitionResult]:
        with self._lock:
            return self._results.get(result_id)

    def list(self, limit: Optional[int] = None) -> List[RecognitionResult]:
        with self._lock:
            results = sorted(self._results.values(), key=lambda r: r.processed_at, reverse=True)
        return results[:limit] if limit else results

    def delete(self, result_id: str) -> bool:
        with self._lock:
            return self._results.pop(result_id, None) is not None

    def purge_older_than(self, days: int = 30) -> int:
        """Remove results processed more than ``days`` ago. Returns how many."""
        cutoff = datetime.utcnow() - timedelta(days=days)
        with self._lock:
            stale = [rid for rid, r in self._results.items() if r.processed_at < cutoff]
            for rid in stale:
                del self._results[rid]
        if stale:
            logger.info(f"Purged {len(stale)} results older than {days} days")
        return len(stale)

    def statistics(self) -> Dict[str, Any]:
        with self._lock:
            results = list(self._results.values())

        if not results:
            return {"total": 0, "average_confidence": 0.0, "engines": {}}

        engines: Dict[str, int] = {}
        for result in results:
            engines[result.engine_id] = engines.get(result.engine_id, 0) + 1

        return {
            "total": len(results),
            "average_confidence": round(sum(r.confidence for r in results) / len(results), 4),
            "engines": engines,
            "oldest": min(r.processed_at for r in results).isoformat(),
            "newest": max(r.processed_at for r in results).isoformat(),
        }
