"""Tests for request normalization and the two-tier response cache."""

from __future__ import annotations

import numpy as np
import pytest

from provider_gateway.gateway.cache_engine import (
    CacheEngine,
    HashingEmbedder,
    jaccard_similarity,
    levenshtein_distance,
    levenshtein_ratio,
)
from provider_gateway.gateway.config import CacheConfig
from provider_gateway.gateway.normalizer import (
    coerce_messages,
    fingerprint,
    normalize_result,
    prompt_messages,
    scope_key,
)
from provider_gateway.gateway.types import ChatMessage, CompletionRequest, CompletionResult, TokenUsage
from provider_gateway.models.cache_entry import CachedResponse


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _request(text: str = "What is the capital of France?", **kwargs) -> CompletionRequest:
    return CompletionRequest(messages=[ChatMessage("user", text)], **kwargs)


def _result(content: str = "Paris.", **kwargs) -> CompletionResult:
    return CompletionResult(
        provider=kwargs.pop("provider", "openai"),
        model="gpt-5.1-instant",
        content=content,
        usage=TokenUsage(10, 2, 12),
        cost=0.00009,
        latency_ms=420,
        request_id="orig-request",
        **kwargs,
    )


# ==========================================================================
# Normalizer
# ==========================================================================


class TestNormalizer:
    def test_fingerprint_ignores_whitespace_and_case(self):
        a = _request("What is  the capital\nof France?")
        b = _request("what is the capital of france?")
        assert fingerprint(a) == fingerprint(b)

    def test_fingerprint_ignores_request_identity(self):
        a = _request()
        b = _request()
        assert a.request_id != b.request_id
        assert fingerprint(a) == fingerprint(b)

    def test_fingerprint_depends_on_scope(self):
        base = _request()
        assert fingerprint(base) != fingerprint(_request(max_tokens=64))
        assert fingerprint(base) != fingerprint(_request(temperature=0.0))
        assert fingerprint(base) != fingerprint(_request(model="gpt-4o-2024-11-20"))
        assert scope_key(base) != scope_key(_request(provider="anthropic"))

    def test_fingerprint_depends_on_role(self):
        a = CompletionRequest(messages=[ChatMessage("system", "hi")])
        b = CompletionRequest(messages=[ChatMessage("user", "hi")])
        assert fingerprint(a) != fingerprint(b)

    def test_coerce_messages_accepts_dicts(self):
        messages = coerce_messages([{"role": "user", "content": "hi"}, ChatMessage("assistant", "hello")])
        assert messages == [ChatMessage("user", "hi"), ChatMessage("assistant", "hello")]

    def test_coerce_messages_rejects_bad_role(self):
        with pytest.raises(ValueError, match="role"):
            coerce_messages([{"role": "tool", "content": "x"}])

    def test_coerce_messages_rejects_empty(self):
        with pytest.raises(ValueError):
            coerce_messages([])

    def test_prompt_messages_rejects_blank(self):
        with pytest.raises(ValueError):
            prompt_messages("   ")

    def test_normalize_result_is_idempotent(self):
        result = _result(finish_reason="end_turn")
        result.usage.total_tokens = 0

        once = normalize_result(result)
        assert once.finish_reason == "stop"
        assert once.usage.total_tokens == 12

        twice = normalize_result(once)
        assert twice.to_dict() == once.to_dict()

    @pytest.mark.parametrize(
        "raw,canonical",
        [("max_tokens", "length"), ("MAX_TOKENS", "length"), ("content_filter", "SAFETY"), ("STOP", "stop")],
    )
    def test_finish_reason_canonicalized(self, raw, canonical):
        assert normalize_result(_result(finish_reason=raw)).finish_reason == canonical


class TestHashingEmbedder:
    def test_unit_length_and_deterministic(self):
        embed = HashingEmbedder(dim=64)
        v = embed("the quick brown fox")
        assert np.linalg.norm(v) == pytest.approx(1.0)
        assert np.array_equal(v, embed("the quick brown fox"))

    def test_similar_text_scores_higher(self):
        embed = HashingEmbedder()
        base = embed("how do i reset my password")
        near = embed("how do i reset my password please")
        far = embed("weather forecast for tomorrow in berlin")
        assert float(base @ near) > float(base @ far)

    def test_empty_text(self):
        assert not HashingEmbedder(dim=8)("").any()


# ==========================================================================
# Cache engine
# ==========================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def memory_cache(clock):
    cache = CacheEngine(CacheConfig(), clock=clock)
    yield cache
    await cache.close()


@pytest.fixture
async def persistent_cache(clock, tmp_path):
    config = CacheConfig.model_validate({"persistent": {"path": str(tmp_path / "cache.db"), "ttlSeconds": 600}})
    cache = CacheEngine(config, clock=clock)
    yield cache
    await cache.close()


class TestCacheEngine:
    @pytest.mark.asyncio
    async def test_miss_then_exact_hit(self, memory_cache):
        request = _request()
        assert await memory_cache.get(request) is None

        assert await memory_cache.set(request, _result())

        follow_up = _request()
        hit = await memory_cache.get(follow_up)
        assert hit is not None
        assert hit.tier == "memory"
        assert hit.result.cached is True
        assert hit.result.content == "Paris."
        assert hit.result.cost == 0.0
        assert hit.result.request_id == follow_up.request_id

    @pytest.mark.asyncio
    async def test_cached_results_are_not_rewritten(self, memory_cache):
        cached = _result()
        cached.cached = True
        assert not await memory_cache.set(_request(), cached)

    @pytest.mark.asyncio
    async def test_safety_results_are_not_cached(self, memory_cache):
        assert not await memory_cache.set(_request(), _result("", finish_reason="SAFETY"))
        assert await memory_cache.get(_request()) is None

    @pytest.mark.asyncio
    async def test_first_writer_wins(self, memory_cache):
        request = _request()
        assert await memory_cache.set(request, _result("first"))
        assert not await memory_cache.set(request, _result("second"))

        hit = await memory_cache.get(request)
        assert hit.result.content == "first"

    @pytest.mark.asyncio
    async def test_memory_entry_expires(self, memory_cache, clock):
        request = _request()
        await memory_cache.set(request, _result())

        clock.now += 3601
        assert await memory_cache.get(request) is None

    @pytest.mark.asyncio
    async def test_memory_tier_is_size_bounded(self, clock):
        cache = CacheEngine(CacheConfig.model_validate({"memory": {"maxSize": 2}}), clock=clock)
        for i in range(3):
            await cache.set(_request(f"question number {i}"), _result(f"answer {i}"))

        stats = cache.get_stats()
        assert stats["memory_entries"] == 2
        assert stats["evictions"] == 1
        await cache.close()

    @pytest.mark.asyncio
    async def test_similarity_hit(self, memory_cache):
        await memory_cache.set(_request("How do I reset my account password?"), _result("Use the reset link."))

        hit = await memory_cache.get(_request("how do I reset my account password"))

        assert hit is not None
        assert hit.tier == "similarity"
        assert hit.similarity >= 0.85
        assert hit.result.content == "Use the reset link."
        assert hit.result.similarity == hit.similarity

    @pytest.mark.asyncio
    async def test_similarity_respects_scope(self, memory_cache):
        await memory_cache.set(_request("How do I reset my account password?"), _result())
        assert await memory_cache.get(_request("how do I reset my account password", max_tokens=10)) is None

    @pytest.mark.asyncio
    async def test_similarity_below_threshold_misses(self, memory_cache):
        await memory_cache.set(_request("How do I reset my account password?"), _result())
        assert await memory_cache.get(_request("What is the weather in Berlin tomorrow?")) is None

    @pytest.mark.asyncio
    async def test_similarity_can_be_disabled(self, clock):
        cache = CacheEngine(CacheConfig.model_validate({"similarity": {"enabled": False}}), clock=clock)
        await cache.set(_request("How do I reset my account password?"), _result())
        assert await cache.get(_request("how do I reset my account password")) is None
        await cache.close()

    @pytest.mark.asyncio
    async def test_disabled_cache(self, clock):
        cache = CacheEngine(CacheConfig(enabled=False), clock=clock)
        assert not await cache.set(_request(), _result())
        assert await cache.get(_request()) is None
        await cache.close()

    @pytest.mark.asyncio
    async def test_similarity_index_follows_memory_evictions(self, clock):
        cache = CacheEngine(CacheConfig.model_validate({"memory": {"maxSize": 2}}), clock=clock)
        await cache.set(_request("How do I reset my account password?"), _result("Use the reset link."))
        for i in range(50):
            await cache.set(_request(f"unrelated question number {i}"), _result(f"answer {i}"))

        stats = cache.get_stats()
        assert stats["memory_entries"] == 2
        assert stats["indexed_entries"] == 2
        assert await cache.get(_request("how do I reset my account password")) is None
        await cache.close()

    @pytest.mark.asyncio
    async def test_similarity_index_drops_expired_memory_entries(self, memory_cache, clock):
        await memory_cache.set(_request("first question"), _result())

        clock.now += 3601
        await memory_cache.set(_request("second question"), _result())

        assert memory_cache.get_stats()["indexed_entries"] == 1

    @pytest.mark.asyncio
    async def test_clear_is_not_counted_as_evictions(self, memory_cache):
        await memory_cache.set(_request("a"), _result())
        await memory_cache.set(_request("b"), _result())

        assert await memory_cache.clear() == 2

        stats = memory_cache.get_stats()
        assert stats["evictions"] == 0
        assert stats["indexed_entries"] == 0


class TestSimilarityAlgorithms:
    def test_jaccard(self):
        assert jaccard_similarity("reset my password", "reset my password") == 1.0
        assert jaccard_similarity("reset my password", "reset my password now") == pytest.approx(0.75)
        assert jaccard_similarity("reset password", "weather in berlin") == 0.0
        assert jaccard_similarity("", "") == 1.0

    def test_levenshtein(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_ratio("kitten", "sitting") == pytest.approx(1 - 3 / 7)
        assert levenshtein_ratio("", "") == 1.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", ["jaccard", "levenshtein"])
    async def test_lexical_similarity_hit(self, clock, algorithm):
        cache = CacheEngine(CacheConfig.model_validate({"similarity": {"algorithm": algorithm}}), clock=clock)
        await cache.set(_request("How do I reset my account password?"), _result("Use the reset link."))

        hit = await cache.get(_request("how do I reset my account password"))
        miss = await cache.get(_request("What is the weather in Berlin tomorrow?"))

        assert hit is not None
        assert hit.tier == "similarity"
        assert hit.result.content == "Use the reset link."
        assert miss is None
        assert cache.get_stats()["similarity_algorithm"] == algorithm
        await cache.close()

    @pytest.mark.asyncio
    async def test_jaccard_ignores_word_order(self, clock):
        config = CacheConfig.model_validate({"similarity": {"algorithm": "jaccard", "threshold": 0.99}})
        cache = CacheEngine(config, clock=clock)
        await cache.set(_request("password reset for my account"), _result())

        hit = await cache.get(_request("my account password reset for"))

        assert hit is not None
        assert hit.similarity == 1.0
        await cache.close()

    @pytest.mark.asyncio
    async def test_lexical_index_rebuilt_from_persistent_tier(self, clock, tmp_path):
        config = CacheConfig.model_validate(
            {"persistent": {"path": str(tmp_path / "cache.db")}, "similarity": {"algorithm": "levenshtein"}}
        )
        first = CacheEngine(config, clock=clock)
        await first.set(_request("How do I reset my account password?"), _result("Use the reset link."))
        await first.close()

        second = CacheEngine(config, clock=clock)
        assert await second.warm() == 1
        hit = await second.get(_request("how do I reset my account password"))

        assert hit is not None
        assert hit.tier == "similarity"
        await second.close()

    @pytest.mark.asyncio
    async def test_persistent_index_survives_memory_eviction(self, clock, tmp_path):
        config = CacheConfig.model_validate({"memory": {"maxSize": 1}, "persistent": {"path": str(tmp_path / "c.db")}})
        cache = CacheEngine(config, clock=clock)
        await cache.set(_request("How do I reset my account password?"), _result("Use the reset link."))
        await cache.set(_request("What is the weather in Berlin tomorrow?"), _result("Rain."))

        hit = await cache.get(_request("how do I reset my account password"))

        assert hit is not None
        assert hit.result.content == "Use the reset link."
        await cache.close()


class TestCacheAnalytics:
    @pytest.mark.asyncio
    async def test_window_counts_lookups_by_tier(self, memory_cache):
        request = _request("How do I reset my account password?")
        await memory_cache.get(request)
        await memory_cache.set(request, _result())
        await memory_cache.get(request)
        await memory_cache.get(_request("How do I reset my account password?"))
        await memory_cache.get(_request("how do I reset my account password"))

        analytics = memory_cache.get_analytics()

        assert analytics["lookups"] == 4
        assert analytics["by_tier"] == {"miss": 1, "memory": 2, "similarity": 1}
        assert analytics["hit_rate"] == 0.75
        assert analytics["top_keys"][0] == {"fingerprint": fingerprint(request)[:16], "count": 4}
        assert analytics["top_patterns"][0] == {"pattern": "how do i reset my", "count": 4}
        assert analytics["recent_requests"][-1]["tier"] == "similarity"

    @pytest.mark.asyncio
    async def test_window_is_bounded(self, clock):
        cache = CacheEngine(CacheConfig.model_validate({"analytics": {"windowSize": 3}}), clock=clock)
        for i in range(5):
            await cache.get(_request(f"question {i}"))

        analytics = cache.get_analytics(limit=2)

        assert analytics["lookups"] == 3
        assert [r["prompt"] for r in analytics["recent_requests"]] == ["question 3", "question 4"]
        assert cache.get_stats()["analytics"]["recent_requests"] == 3
        await cache.close()

    @pytest.mark.asyncio
    async def test_patterns_can_be_turned_off(self, clock):
        cache = CacheEngine(CacheConfig.model_validate({"analytics": {"trackPatterns": False}}), clock=clock)
        await cache.get(_request())

        assert cache.get_analytics()["top_patterns"] == []
        await cache.close()

    @pytest.mark.asyncio
    async def test_disabled(self, clock):
        cache = CacheEngine(CacheConfig.model_validate({"analytics": {"enabled": False}}), clock=clock)
        await cache.get(_request())

        assert cache.get_analytics() is None
        assert cache.get_stats()["analytics"] is None
        await cache.close()


class TestPersistentCache:
    @pytest.mark.asyncio
    async def test_persistent_hit_after_memory_loss(self, persistent_cache):
        request = _request()
        await persistent_cache.set(request, _result())
        persistent_cache._memory.clear()

        hit = await persistent_cache.get(_request())
        assert hit.tier == "persistent"
        assert hit.result.content == "Paris."

        # Promoted back into memory
        hit = await persistent_cache.get(_request())
        assert hit.tier == "memory"

    @pytest.mark.asyncio
    async def test_survives_restart(self, clock, tmp_path):
        config = CacheConfig.model_validate({"persistent": {"path": str(tmp_path / "cache.db")}})
        first = CacheEngine(config, clock=clock)
        await first.set(_request("Explain circuit breakers"), _result("They trip."))
        await first.close()

        second = CacheEngine(config, clock=clock)
        assert await second.warm() == 1
        hit = await second.get(_request("explain   circuit breakers"))
        assert hit.result.content == "They trip."

        similar = await second.get(_request("Explain circuit breakers!"))
        assert similar.tier == "similarity"
        await second.close()

    @pytest.mark.asyncio
    async def test_expired_row_is_replaced(self, persistent_cache, clock):
        request = _request()
        await persistent_cache.set(request, _result("old"))

        clock.now += 601
        assert await persistent_cache.get(request) is None
        assert await persistent_cache.set(request, _result("new"))

        hit = await persistent_cache.get(request)
        assert hit.result.content == "new"

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, persistent_cache, clock):
        await persistent_cache.set(_request("one"), _result())
        await persistent_cache.set(_request("two"), _result())

        clock.now += 601
        assert await persistent_cache.cleanup_expired() == 2

    @pytest.mark.asyncio
    async def test_hit_count_tracked(self, persistent_cache):
        request = _request()
        await persistent_cache.set(request, _result())
        await persistent_cache.get(request)
        await persistent_cache.get(request)

        with persistent_cache._session_factory() as session:
            row = session.get(CachedResponse, fingerprint(request))
        assert row.hit_count == 2
        assert row.last_accessed == persistent_cache._clock()

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, persistent_cache):
        request = _request()
        await persistent_cache.set(request, _result())
        assert await persistent_cache.delete(fingerprint(request))
        assert await persistent_cache.get(request) is None

        await persistent_cache.set(_request("a"), _result())
        await persistent_cache.set(_request("b"), _result())
        assert await persistent_cache.clear() == 2
