import pytest

from src.seekrouter.cache import (
    SemanticCache,
    generate_cache_key,
    normalize,
    similarity,
)
from src.seekrouter.types import CachedAnswer


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_answer(text: str = "A cached answer that is long enough to be stored.") -> CachedAnswer:
    return CachedAnswer(
        answer=text,
        model="google/gemini-2.0-flash-exp:free",
        model_human="Gemini 2.0 Flash Exp",
        tier="fast",
        latency_ms=412,
        attempts=2,
    )


@pytest.mark.parametrize(
    "query",
    [
        "What is Quantum Computing?",
        "  can you   explain the concept  ",
        "Tell me about the history of Rome, please!",
        "how do I reverse a list in python",
        "",
        "the a an",
        "to-do list",
    ],
)
def test_normalize_is_idempotent(query: str) -> None:
    once = normalize(query)
    assert normalize(once) == once


def test_normalize_strips_filler_but_keeps_interrogatives() -> None:
    assert normalize("can you explain the concept") == "you concept"
    assert normalize("How does quantum entanglement work?") == "how quantum entanglement work"
    assert normalize("Why is the sky blue") == "why is sky blue"


def test_normalize_keeps_word_boundaries_around_removed_stopwords() -> None:
    assert normalize("state-of-the-art models") == "state- - -art models"
    assert similarity("state-of-the-art models", "state of the art models") < 1.0


def test_cache_key_is_deterministic() -> None:
    assert generate_cache_key("Hello World") == generate_cache_key("  hello   world  ")
    assert generate_cache_key("Hello World") == "hello world"
    assert generate_cache_key("Hello World", "stream") == "stream:hello world"


def test_similarity_bounds() -> None:
    assert similarity("quantum physics", "quantum physics") == 1.0
    assert similarity("quantum physics", "banana recipe") == 0.0
    score = similarity("quantum physics basics", "quantum physics history")
    assert 0.0 < score < 1.0


def test_similarity_of_two_empty_queries_is_one() -> None:
    assert similarity("", "") == 1.0
    assert similarity("the", "a an") == 1.0


def test_get_returns_value_for_equivalent_query() -> None:
    cache: SemanticCache[CachedAnswer] = SemanticCache(clock=FakeClock())
    answer = make_answer()
    cache.set("What is Quantum Computing?", answer, "answer")

    assert cache.get("what is quantum computing", "answer") == answer
    assert cache.get("what is quantum computing", "code") is None
    assert cache.has("WHAT IS QUANTUM COMPUTING", "answer")


def test_entries_expire_lazily_on_read() -> None:
    clock = FakeClock()
    cache: SemanticCache[CachedAnswer] = SemanticCache(ttl_s=60, clock=clock)
    cache.set("rust ownership", make_answer(), "answer")

    clock.now += 60
    assert cache.get("rust ownership", "answer") is not None

    clock.now += 1
    assert cache.get("rust ownership", "answer") is None
    assert len(cache) == 0


def test_sweep_reports_cleared_entries() -> None:
    clock = FakeClock()
    cache: SemanticCache[CachedAnswer] = SemanticCache(ttl_s=10, clock=clock)
    cache.set("first query", make_answer())
    clock.now += 5
    cache.set("second query", make_answer())
    clock.now += 6

    assert cache.sweep() == 1
    assert len(cache) == 1
    assert cache.sweep() == 0


def test_capacity_evicts_exactly_the_least_recently_accessed_entry() -> None:
    clock = FakeClock()
    cache: SemanticCache[CachedAnswer] = SemanticCache(max_size=500, clock=clock)
    for index in range(500):
        clock.now += 1
        cache.set(f"query number {index}", make_answer())

    # touching the oldest entry moves "query number 1" to the front of the line
    clock.now += 1
    assert cache.get("query number 0") is not None

    clock.now += 1
    cache.set("query number 500", make_answer())

    assert len(cache) == 500
    assert cache.has("query number 0")
    assert not cache.has("query number 1")
    assert cache.has("query number 500")


def test_overwriting_an_existing_key_does_not_evict() -> None:
    cache: SemanticCache[CachedAnswer] = SemanticCache(max_size=2, clock=FakeClock())
    cache.set("alpha", make_answer("first"))
    cache.set("beta", make_answer("second"))
    cache.set("alpha", make_answer("replacement"))

    assert len(cache) == 2
    assert cache.get("beta") is not None
    assert cache.get("alpha").answer == "replacement"


def test_stats_report_size_hit_rate_and_oldest_entry() -> None:
    clock = FakeClock(now=50.0)
    cache: SemanticCache[CachedAnswer] = SemanticCache(max_size=10, clock=clock)
    assert cache.stats() == {"size": 0, "maxSize": 10, "hitRate": 0.0, "oldestEntry": None}

    cache.set("first", make_answer())
    clock.now = 60.0
    cache.set("second", make_answer())
    cache.get("first")
    cache.get("first")

    stats = cache.stats()
    assert stats["size"] == 2
    assert stats["hitRate"] == 1.0
    assert stats["oldestEntry"] == 50.0

    cache.clear()
    assert cache.stats()["size"] == 0


def test_find_similar_orders_by_score() -> None:
    cache: SemanticCache[CachedAnswer] = SemanticCache(clock=FakeClock())
    cache.set("quantum computing basics", make_answer("basics"), "answer")
    cache.set("quantum computing basics explained simply", make_answer("simple"), "answer")
    cache.set("banana bread recipe", make_answer("banana"), "answer")

    matches = cache.find_similar("quantum computing basics", "answer", threshold=0.5)

    assert [value.answer for value, _ in matches] == ["basics", "simple"]
    assert matches[0][1] == 1.0


def test_rejects_non_positive_capacity() -> None:
    with pytest.raises(ValueError):
        SemanticCache(max_size=0)
