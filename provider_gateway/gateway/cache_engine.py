"""Two-tier response cache with exact and similarity lookup.

Lookup order:
  1. exact fingerprint in the memory tier (cachetools TTLCache, LRU-bounded)
  2. exact fingerprint in the persistent tier (SQLite)
  3. nearest same-scope entry by similarity, if enabled (cosine over hashed
     embeddings, Jaccard over token sets, or a Levenshtein ratio)

The persistent tier is authoritative. The memory tier and the similarity
index are derived from it and only populated after a persistent write has
committed, so a reader never sees an entry the store does not have. With no
persistent path configured the memory tier stands alone, and the similarity
index follows it: entries the memory tier evicts or expires leave the index.

A bounded window of recent lookups feeds ``get_analytics()``.

First writer wins: an unexpired entry for a fingerprint is never replaced.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from collections import Counter, defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable

import numpy as np
from cachetools import TTLCache
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from provider_gateway.db.sqlite import create_sqlite_engine, make_session_factory, sqlite_health_check
from provider_gateway.gateway.config import CacheConfig
from provider_gateway.gateway.normalizer import fingerprint, normalized_messages, normalized_prompt, scope_key
from provider_gateway.gateway.types import CompletionRequest, CompletionResult, SimilarityAlgorithm
from provider_gateway.models.cache_entry import CachedResponse

logger = logging.getLogger(__name__)

Embedder = Callable[[str], np.ndarray]

_TOKEN = re.compile(r"\w+", re.UNICODE)

# Fields that describe one particular call, not the cached answer
_PER_REQUEST_FIELDS = ("request_id", "cached", "budget_exceeded", "similarity", "attempts", "latency_ms")


class HashingEmbedder:
    """Deterministic bag-of-words embedding via feature hashing.

    Unigrams and bigrams are hashed into ``dim`` buckets; the vector is
    L2-normalized so a dot product is the cosine similarity.
    """

    def __init__(self, dim: int = 512):
        self.dim = dim

    def _bucket(self, token: str) -> int:
        digest = hashlib.sha1(token.encode("utf-8")).digest()
        return int.from_bytes(digest[:8], "big") % self.dim

    def __call__(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dim, dtype=np.float64)
        tokens = _TOKEN.findall(text.lower())
        for tok in tokens:
            vec[self._bucket(tok)] += 1.0
        for a, b in zip(tokens, tokens[1:]):
            vec[self._bucket(f"{a} {b}")] += 0.5
        norm = np.linalg.norm(vec)
        return vec / norm if norm > 0 else vec


def jaccard_similarity(a: str, b: str) -> float:
    """|A & B| / |A | B| over word-token sets."""
    if a == b:
        return 1.0
    left, right = set(_TOKEN.findall(a)), set(_TOKEN.findall(b))
    union = left | right
    return len(left & right) / len(union) if union else 0.0


def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (ca != cb)))
        previous = current
    return previous[-1]


def levenshtein_ratio(a: str, b: str) -> float:
    """1 - distance / length of the longer string."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


@dataclass
class CacheHit:
    result: CompletionResult
    tier: str  # memory | persistent | similarity
    fingerprint: str
    similarity: float | None = None


@dataclass
class _MemoryEntry:
    response: dict
    expires_at: float


@dataclass
class _IndexEntry:
    vector: np.ndarray
    text: str
    expires_at: float


@dataclass
class _CacheStats:
    memory_hits: int = 0
    persistent_hits: int = 0
    similarity_hits: int = 0
    misses: int = 0
    writes: int = 0
    skipped_writes: int = 0
    evictions: int = 0
    expired_removed: int = 0


class _MemoryTier(TTLCache):
    """TTLCache that counts size-driven (LRU) evictions and reports every key
    it drops by itself, through eviction or expiry, to ``on_drop``."""

    def __init__(
        self,
        maxsize: int,
        ttl: float,
        timer: Callable[[], float],
        stats: _CacheStats,
        on_drop: Callable[[str], None],
    ):
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self._stats = stats
        self._on_drop = on_drop

    def popitem(self):
        key, value = super().popitem()
        self._stats.evictions += 1
        self._on_drop(key)
        return key, value

    def expire(self, now=None):
        expired = super().expire(now)
        for key, _ in expired:
            self._on_drop(key)
        return expired


def _embedding_text(request: CompletionRequest) -> str:
    return " ".join(m["content"] for m in normalized_messages(request))


def _text_from_prompt(prompt: str) -> str:
    """Inverse of the ``role: content`` lines stored with persistent rows."""
    return " ".join(line.split(": ", 1)[-1] for line in prompt.splitlines())


class CacheEngine:
    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        embedder: Embedder | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CacheConfig()
        self._clock = clock
        self._embedder: Embedder = embedder or HashingEmbedder()
        self._stats = _CacheStats()
        self._memory = self._new_memory_tier()
        # scope key -> fingerprint -> vector and text
        self._index: dict[str, dict[str, _IndexEntry]] = defaultdict(dict)
        self._recent: deque[dict] = deque(maxlen=self.config.analytics.window_size)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_refs: dict[str, int] = defaultdict(int)

        self._engine = None
        self._session_factory = None
        if self.config.enabled and self.config.persistent.path:
            self._engine = create_sqlite_engine(self.config.persistent.path)
            self._session_factory = make_session_factory(self._engine)

    def _new_memory_tier(self) -> _MemoryTier:
        return _MemoryTier(
            maxsize=self.config.memory.max_size,
            ttl=self.config.memory.ttl_seconds,
            timer=self._clock,
            stats=self._stats,
            on_drop=self._on_memory_drop,
        )

    @property
    def persistent(self) -> bool:
        return self._session_factory is not None

    @property
    def _similarity_enabled(self) -> bool:
        return self.config.similarity.enabled

    def _on_memory_drop(self, fp: str) -> None:
        # Persistent rows keep their index entries until cleanup_expired()
        if self.persistent:
            return
        self._drop_from_index(fp)

    def _drop_from_index(self, fp: str) -> None:
        for scope in [s for s, entries in self._index.items() if fp in entries]:
            del self._index[scope][fp]
            if not self._index[scope]:
                del self._index[scope]

    # -- Single flight ------------------------------------------------------

    @asynccontextmanager
    async def single_flight(self, key: str) -> AsyncIterator[None]:
        """Serialize cache-miss handling per fingerprint.

        The second caller waits for the first, then re-checks the cache.
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_refs[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_refs[key] -= 1
            if self._lock_refs[key] <= 0:
                self._lock_refs.pop(key, None)
                self._locks.pop(key, None)

    # -- Lookup -------------------------------------------------------------

    async def get(self, request: CompletionRequest) -> CacheHit | None:
        if not self.config.enabled:
            return None

        fp = fingerprint(request)
        now = self._clock()
        text = _embedding_text(request)

        entry = self._memory.get(fp)
        if entry is not None and entry.expires_at > now:
            self._stats.memory_hits += 1
            await self._touch(fp, now)
            self._track(fp, text, "memory", now)
            return CacheHit(self._to_result(entry.response, request), "memory", fp)

        if self.persistent:
            row = await asyncio.to_thread(self._load_row, fp, now)
            if row is not None:
                self._stats.persistent_hits += 1
                self._promote(
                    fp,
                    row["response"],
                    row["expires_at"],
                    row["embedding"],
                    row["scope"],
                    _text_from_prompt(row["normalized_prompt"]),
                )
                await self._touch(fp, now)
                self._track(fp, text, "persistent", now)
                return CacheHit(self._to_result(row["response"], request), "persistent", fp)

        if self._similarity_enabled:
            hit = await self._similar(request, text, now)
            if hit is not None:
                self._stats.similarity_hits += 1
                self._track(hit.fingerprint, text, "similarity", now)
                return hit

        self._stats.misses += 1
        self._track(fp, text, "miss", now)
        return None

    def _scores(self, text: str, live: list[tuple[str, _IndexEntry]]) -> np.ndarray:
        algorithm = self.config.similarity.algorithm
        if algorithm == SimilarityAlgorithm.JACCARD:
            return np.array([jaccard_similarity(text, e.text) for _, e in live])
        if algorithm == SimilarityAlgorithm.LEVENSHTEIN:
            return np.array([levenshtein_ratio(text, e.text) for _, e in live])
        query = self._embedder(text)
        matrix = np.vstack([e.vector for _, e in live])
        return matrix @ query

    async def _similar(self, request: CompletionRequest, text: str, now: float) -> CacheHit | None:
        candidates = self._index.get(scope_key(request))
        if not candidates:
            return None

        live = [(fp, e) for fp, e in candidates.items() if e.expires_at > now]
        if not live:
            return None

        scores = self._scores(text, live)
        best = int(np.argmax(scores))
        score = float(scores[best])
        if score < self.config.similarity.threshold:
            return None

        fp = live[best][0]
        response = await self._load_response(fp, now)
        if response is None:
            candidates.pop(fp, None)
            return None

        result = self._to_result(response, request)
        result.similarity = round(score, 4)
        await self._touch(fp, now)
        logger.debug("Similarity cache hit %.3f for %s", score, fp[:12])
        return CacheHit(result, "similarity", fp, similarity=result.similarity)

    async def _load_response(self, fp: str, now: float) -> dict | None:
        entry = self._memory.get(fp)
        if entry is not None and entry.expires_at > now:
            return entry.response
        if self.persistent:
            row = await asyncio.to_thread(self._load_row, fp, now)
            if row is not None:
                return row["response"]
        return None

    def _to_result(self, response: dict, request: CompletionRequest) -> CompletionResult:
        result = CompletionResult.from_dict(response)
        result.cached = True
        result.request_id = request.request_id
        result.cost = 0.0  # no provider was charged
        result.latency_ms = 0
        result.attempts = 0
        return result

    def _promote(self, fp: str, response: dict, expires_at: float, embedding, scope: str, text: str) -> None:
        self._memory[fp] = _MemoryEntry(response=response, expires_at=expires_at)
        if self._similarity_enabled and embedding is not None:
            self._index[scope][fp] = _IndexEntry(np.asarray(embedding, dtype=np.float64), text, expires_at)

    # -- Write --------------------------------------------------------------

    async def set(self, request: CompletionRequest, result: CompletionResult) -> bool:
        """Write-through after a successful provider call. Returns True if stored."""
        if not self.config.enabled or result.cached or result.finish_reason == "SAFETY":
            return False

        fp = fingerprint(request)
        scope = scope_key(request)
        now = self._clock()
        response = {k: v for k, v in result.to_dict().items() if k not in _PER_REQUEST_FIELDS}
        text = _embedding_text(request)
        vector = self._embedder(text) if self._similarity_enabled else None

        if self.persistent:
            ttl = self.config.persistent.ttl_seconds
            row = CachedResponse(
                fingerprint=fp,
                scope=scope,
                normalized_prompt=normalized_prompt(request),
                embedding=vector.tolist() if vector is not None else None,
                response=response,
                provider=result.provider,
                model=result.model,
                total_tokens=result.usage.total_tokens,
                cost=result.cost,
                created_at=now,
                ttl_seconds=ttl,
                expires_at=now + ttl,
                hit_count=0,
            )
            written = await asyncio.to_thread(self._insert_row, row, now)
        else:
            ttl = self.config.memory.ttl_seconds
            existing = self._memory.get(fp)
            written = existing is None or existing.expires_at <= now

        if not written:
            self._stats.skipped_writes += 1
            return False

        # Derived tiers only after the authoritative write
        self._promote(fp, response, now + ttl, vector, scope, text)
        self._stats.writes += 1
        return True

    # -- Maintenance --------------------------------------------------------

    async def delete(self, fp: str) -> bool:
        removed = self._memory.pop(fp, None) is not None
        self._drop_from_index(fp)
        if self.persistent:
            removed = await asyncio.to_thread(self._delete_rows, fp) > 0 or removed
        return removed

    async def clear(self) -> int:
        count = len(self._memory)
        # A fresh tier, so clearing is not counted as evictions
        self._memory = self._new_memory_tier()
        self._index.clear()
        if self.persistent:
            count = await asyncio.to_thread(self._delete_rows, None)
        logger.info("Cache cleared (%d entries)", count)
        return count

    async def cleanup_expired(self) -> int:
        now = self._clock()
        expired = self._memory.expire()
        stale = [fp for fp, e in self._memory.items() if e.expires_at <= now]
        for fp in stale:
            self._memory.pop(fp, None)
        for scope, entries in list(self._index.items()):
            for fp in [fp for fp, e in entries.items() if e.expires_at <= now]:
                del entries[fp]
            if not entries:
                del self._index[scope]

        removed = len(expired) + len(stale)
        if self.persistent:
            removed = await asyncio.to_thread(self._delete_expired_rows, now)
        self._stats.expired_removed += removed
        if removed:
            logger.info("Removed %d expired cache entries", removed)
        return removed

    async def warm(self) -> int:
        """Rebuild the similarity index from the persistent tier."""
        if not self.persistent or not self._similarity_enabled:
            return 0
        rows = await asyncio.to_thread(self._load_index_rows, self._clock())
        for fp, scope, embedding, prompt, expires_at in rows:
            self._index[scope][fp] = _IndexEntry(
                np.asarray(embedding, dtype=np.float64), _text_from_prompt(prompt), expires_at
            )
        logger.info("Similarity index warmed with %d entries", len(rows))
        return len(rows)

    def get_stats(self) -> dict:
        s = self._stats
        hits = s.memory_hits + s.persistent_hits + s.similarity_hits
        lookups = hits + s.misses
        return {
            "enabled": self.config.enabled,
            "persistent": self.persistent,
            "memory_entries": len(self._memory),
            "memory_max_size": self.config.memory.max_size,
            "indexed_entries": sum(len(v) for v in self._index.values()),
            "hits": {
                "memory": s.memory_hits,
                "persistent": s.persistent_hits,
                "similarity": s.similarity_hits,
                "total": hits,
            },
            "misses": s.misses,
            "hit_rate": round(hits / lookups, 4) if lookups else 0.0,
            "writes": s.writes,
            "skipped_writes": s.skipped_writes,
            "evictions": s.evictions,
            "expired_removed": s.expired_removed,
            "similarity_algorithm": self.config.similarity.algorithm.value,
            "analytics": self._analytics_summary(),
        }

    # -- Analytics ----------------------------------------------------------

    def _track(self, fp: str, text: str, tier: str, now: float) -> None:
        analytics = self.config.analytics
        if not analytics.enabled:
            return
        entry = {"fingerprint": fp[:16], "prompt": text[:100], "tier": tier, "timestamp": now}
        if analytics.track_patterns:
            entry["pattern"] = " ".join(text.split()[:5])
        self._recent.append(entry)

    def _analytics_summary(self) -> dict | None:
        if not self.config.analytics.enabled:
            return None
        return {
            "window_size": self.config.analytics.window_size,
            "recent_requests": len(self._recent),
            "unique_keys": len({e["fingerprint"] for e in self._recent}),
            "patterns": len({e["pattern"] for e in self._recent if "pattern" in e}),
        }

    def get_analytics(self, limit: int = 100, top: int = 20) -> dict | None:
        """Recent lookups plus the most repeated keys and prompt patterns.

        Everything is computed over the last ``analytics.window_size``
        lookups, so memory stays bounded. Returns None when disabled.
        """
        if not self.config.analytics.enabled:
            return None
        recent = list(self._recent)
        keys = Counter(e["fingerprint"] for e in recent)
        patterns = Counter(e["pattern"] for e in recent if "pattern" in e)
        hits = sum(1 for e in recent if e["tier"] != "miss")
        return {
            "window_size": self.config.analytics.window_size,
            "lookups": len(recent),
            "hit_rate": round(hits / len(recent), 4) if recent else 0.0,
            "by_tier": dict(Counter(e["tier"] for e in recent)),
            "recent_requests": recent[-limit:] if limit > 0 else [],
            "top_keys": [{"fingerprint": k, "count": c} for k, c in keys.most_common(top)],
            "top_patterns": [{"pattern": p, "count": c} for p, c in patterns.most_common(top)],
        }

    async def storage_ok(self) -> bool | None:
        """None when there is no persistent tier."""
        if self._engine is None:
            return None
        return await asyncio.to_thread(sqlite_health_check, self._engine)

    async def close(self) -> None:
        self._memory = self._new_memory_tier()
        self._index.clear()
        if self._engine is not None:
            await asyncio.to_thread(self._engine.dispose)
            self._engine = None
            self._session_factory = None

    # -- Storage (runs in a worker thread) ----------------------------------

    def _load_row(self, fp: str, now: float) -> dict | None:
        with self._session_factory() as session:
            row = session.get(CachedResponse, fp)
            if row is None or row.expires_at <= now:
                return None
            return {
                "response": row.response,
                "expires_at": row.expires_at,
                "embedding": row.embedding,
                "scope": row.scope,
                "normalized_prompt": row.normalized_prompt,
            }

    async def _touch(self, fp: str, now: float) -> None:
        if self.persistent:
            await asyncio.to_thread(self._touch_row, fp, now)

    def _touch_row(self, fp: str, now: float) -> None:
        with self._session_factory() as session:
            session.execute(
                update(CachedResponse)
                .where(CachedResponse.fingerprint == fp)
                .values(hit_count=CachedResponse.hit_count + 1, last_accessed=now)
            )
            session.commit()

    def _insert_row(self, row: CachedResponse, now: float) -> bool:
        with self._session_factory() as session:
            existing = session.get(CachedResponse, row.fingerprint)
            if existing is not None:
                if existing.expires_at > now:
                    return False
                session.delete(existing)
                session.flush()
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def _delete_rows(self, fp: str | None) -> int:
        with self._session_factory() as session:
            stmt = delete(CachedResponse)
            if fp is not None:
                stmt = stmt.where(CachedResponse.fingerprint == fp)
            result = session.execute(stmt)
            session.commit()
            return result.rowcount or 0

    def _delete_expired_rows(self, now: float) -> int:
        with self._session_factory() as session:
            result = session.execute(delete(CachedResponse).where(CachedResponse.expires_at <= now))
            session.commit()
            return result.rowcount or 0

    def _load_index_rows(self, now: float) -> list[tuple[str, str, list[float], str, float]]:
        with self._session_factory() as session:
            rows = session.execute(
                select(
                    CachedResponse.fingerprint,
                    CachedResponse.scope,
                    CachedResponse.embedding,
                    CachedResponse.normalized_prompt,
                    CachedResponse.expires_at,
                ).where(CachedResponse.expires_at > now, CachedResponse.embedding.is_not(None))
            ).all()
            return [(r[0], r[1], r[2], r[3], r[4]) for r in rows]
