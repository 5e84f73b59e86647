"""Normalized-query answer cache.

Queries that normalize to the same text share a key. Entries expire lazily on
read after ``ttl_s`` and :meth:`SemanticCache.sweep` reclaims the rest; at
capacity the least-recently-accessed entry is evicted before a write.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

from typing_extensions import TypedDict

from .types import CachedAnswer

logger = logging.getLogger(__name__)

CACHE_TTL_S = 30 * 60
MAX_CACHE_SIZE = 500
SIMILARITY_THRESHOLD = 0.7

_PUNCTUATION = re.compile(r"[?!.,;:'\"]")
_WHITESPACE = re.compile(r"\s+")
_STOPWORDS = re.compile(
    r"\b(can|could|would|should|do|does|did|the|a|an|to|for|of|in|on|at|by|with|about"
    r"|please|tell|me|explain|describe)\b"
)

V = TypeVar("V")


def normalize(query: str) -> str:
    text = _WHITESPACE.sub(" ", query.lower()).strip()
    text = _PUNCTUATION.sub("", text)
    text = _STOPWORDS.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def generate_cache_key(query: str, task_prefix: str | None = None) -> str:
    normalized = normalize(query)
    if task_prefix:
        return f"{task_prefix}:{normalized}"
    return normalized


def similarity(a: str, b: str) -> float:
    """Jaccard similarity over the normalized word sets.

    Two queries that are both empty after normalization score 1.0.
    """
    words_a = set(normalize(a).split(" "))
    words_b = set(normalize(b).split(" "))
    union = words_a | words_b
    if not union:
        return 1.0
    return len(words_a & words_b) / len(union)


class CacheStats(TypedDict):
    size: int
    maxSize: int
    hitRate: float
    oldestEntry: Optional[float]


@dataclass
class CacheEntry(Generic[V]):

    value: V
    created_at: float
    last_accessed_at: float
    hit_count: int = 0


class SemanticCache(Generic[V]):
    def __init__(
        self,
        *,
        ttl_s: float = CACHE_TTL_S,
        max_size: int = MAX_CACHE_SIZE,
        name: str = "answers",
        clock: Callable[[], float] = time.time,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.ttl_s = ttl_s
        self.max_size = max_size
        self.name = name
        self._clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.created_at > self.ttl_s

    def get(self, query: str, task_prefix: str | None = None) -> Optional[V]:
        key = generate_cache_key(query, task_prefix)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, now):
                del self._entries[key]
                return None
            entry.last_accessed_at = now
            entry.hit_count += 1
            value = entry.value
        logger.info("cache.hit cache=%s key=%s hits=%d", self.name, key, entry.hit_count)
        return value

    def has(self, query: str, task_prefix: str | None = None) -> bool:
        key = generate_cache_key(query, task_prefix)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._expired(entry, now)

    def set(self, query: str, value: V, task_prefix: str | None = None) -> None:
        key = generate_cache_key(query, task_prefix)
        now = self._clock()
        evicted: str | None = None
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                evicted = min(self._entries, key=lambda k: self._entries[k].last_accessed_at)
                del self._entries[evicted]
            self._entries[key] = CacheEntry(value=value, created_at=now, last_accessed_at=now)
        if evicted is not None:
            logger.debug("cache.evict cache=%s key=%s", self.name, evicted)
        logger.info("cache.set cache=%s key=%s", self.name, key)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("cache.sweep cache=%s cleared=%d", self.name, len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            size = len(self._entries)
            total_hits = sum(entry.hit_count for entry in self._entries.values())
            oldest = min((entry.created_at for entry in self._entries.values()), default=None)
        return {
            "size": size,
            "maxSize": self.max_size,
            "hitRate": total_hits / size if size else 0.0,
            "oldestEntry": oldest,
        }

    def find_similar(
        self,
        query: str,
        task_prefix: str | None = None,
        threshold: float = SIMILARITY_THRESHOLD,
    ) -> list[tuple[V, float]]:
        prefix = f"{task_prefix}:" if task_prefix else ""
        now = self._clock()
        with self._lock:
            candidates = [
                (key[len(prefix):], entry.value)
                for key, entry in self._entries.items()
                if key.startswith(prefix) and not self._expired(entry, now)
            ]
        matches: list[tuple[V, float]] = []
        for normalized_key, value in candidates:
            score = similarity(query, normalized_key)
            if score >= threshold:
                matches.append((value, score))
        matches.sort(key=lambda item: item[1], reverse=True)
        return matches


AnswerCache = SemanticCache[CachedAnswer]
