"""
Time-boxed cache for classification results.

Keys are SHA-256 digests of ``scope_id:normalized question`` so raw
question text is never held as a dict key. Concurrent writers are
last-writer-wins; staleness is bounded by the TTL.
"""

import hashlib
import time
from collections.abc import Callable
from dataclasses import dataclass

from models import ClassificationResult


def normalize_question(question: str) -> str:
    """Lowercase and collapse whitespace."""
    return " ".join(question.lower().split())


def cache_key(question: str, scope_id: str) -> str:
    """Build the hashed cache key for a question within a scope."""
    raw = f"{scope_id}:{normalize_question(question)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class _CacheEntry:
    """Internal cache entry tracking the result and when it was stored."""

    result: ClassificationResult
    stored_at: float


class ClassificationCache:
    """In-memory TTL cache for ``ClassificationResult`` values.

    Args:
        ttl_seconds: How long an entry stays fresh.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}

    def get(self, question: str, scope_id: str) -> ClassificationResult | None:
        """Return a fresh cached result, or ``None`` (expired entries are evicted)."""
        key = cache_key(question, scope_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self._ttl_seconds:
            self._entries.pop(key, None)
            return None
        return entry.result

    def set(self, question: str, scope_id: str, result: ClassificationResult) -> None:
        self._entries[cache_key(question, scope_id)] = _CacheEntry(result, self._clock())

    def cleanup_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if now - entry.stored_at > self._ttl_seconds
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
