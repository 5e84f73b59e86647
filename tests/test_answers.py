from typing import Any

import pytest

from src.seekrouter.answers import FALLBACK_MODEL, NO_MODEL, SUGGESTIONS_PREFIX, AnswerService
from src.seekrouter.cache import SemanticCache
from src.seekrouter.catalog import CachedCatalog, StaticCatalogSource
from src.seekrouter.engine import CompletionEngine
from src.seekrouter.prompts import FALLBACK_ANSWER
from src.seekrouter.providers import DummyProvider
from src.seekrouter.router import DEFAULT_TASK_POLICIES, CandidatePlanner, HealthTracker, ProviderDef
from src.seekrouter.search import DummySearch, SearchChain
from src.seekrouter.types import ProviderChatResponse

MODELS = ["test/alpha-24b:free", "test/gamma-flash:free"]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class CountingProvider(DummyProvider):
    def __init__(self, reply: str | None = None, *, available: bool = True) -> None:
        super().__init__(ProviderDef(name="counting", type="dummy", base_url="", auth_env=None))
        self.reply = reply
        self._available = available
        self.chat_calls = 0
        self.stream_calls = 0
        self.last_messages: list[dict[str, Any]] = []

    @property
    def available(self) -> bool:
        return self._available

    async def chat(self, model, messages, temperature=0.6, max_tokens=800, *, top_p=None):
        self.chat_calls += 1
        self.last_messages = messages
        if self.reply is None:
            return await super().chat(model, messages, temperature, max_tokens, top_p=top_p)
        return ProviderChatResponse(model=model, content=self.reply)

    async def chat_stream(self, model, messages, temperature=0.6, max_tokens=800, *, top_p=None):
        self.stream_calls += 1
        async for chunk in super().chat_stream(model, messages, temperature, max_tokens, top_p=top_p):
            yield chunk


def make_service(provider: CountingProvider, *, min_answer_chars: int = 50) -> AnswerService:
    planner = CandidatePlanner(DEFAULT_TASK_POLICIES, HealthTracker())
    engine = CompletionEngine(provider, CachedCatalog(StaticCatalogSource(MODELS)), planner, transient_backoff_ms=0)
    search = SearchChain([DummySearch(ProviderDef(name="dummy_search", type="dummy_search", base_url="", auth_env=None))])
    return AnswerService(
        engine,
        SemanticCache(name="answers"),
        SemanticCache(name="suggestions"),
        search,
        min_answer_chars=min_answer_chars,
    )


@pytest.mark.anyio
async def test_answer_is_grounded_cached_and_reused() -> None:
    provider = CountingProvider()
    service = make_service(provider)

    first = await service.answer("What is quantum computing?")
    second = await service.answer("what is quantum computing")

    assert first.ok and not first.response.cached
    assert first.response.model == MODELS[0]
    assert "Offline search result 1" in provider.last_messages[-1]["content"]
    assert second.response.cached
    assert second.response.latency_ms == 0
    assert second.response.answer == first.response.answer
    assert second.response.cached_at is not None
    assert provider.chat_calls == 1


@pytest.mark.anyio
async def test_short_answers_are_not_cached() -> None:
    provider = CountingProvider(reply="Too short.")
    service = make_service(provider)

    await service.answer("tiny question")
    await service.answer("tiny question")

    assert provider.chat_calls == 2
    assert len(service.cache) == 0


@pytest.mark.anyio
async def test_answer_falls_back_when_ai_is_unavailable() -> None:
    service = make_service(CountingProvider(available=False))

    outcome = await service.answer("quantum computing")

    assert not outcome.ok
    assert outcome.status == 502
    assert outcome.response.answer == FALLBACK_ANSWER
    assert outcome.response.model == NO_MODEL
    assert outcome.error


@pytest.mark.anyio
async def test_stream_writes_cache_on_done() -> None:
    provider = CountingProvider()
    service = make_service(provider)
    task = service.task_for("history of rome")

    events = [event async for event in service.stream("history of rome", task)]

    assert events[-1].type == "done"
    cached = service.cached_answer("History of Rome!", task)
    assert cached is not None
    assert cached.answer == events[-1].content
    assert cached.original_query == "history of rome"
    hit = service.cache_hit_event(cached)
    assert hit.type == "cache_hit"
    assert hit.content == cached.answer


@pytest.mark.anyio
async def test_answer_and_code_tasks_do_not_share_entries() -> None:
    service = make_service(CountingProvider())
    events = [event async for event in service.stream("python list comprehension", "code")]
    assert events[-1].type == "done"

    assert service.cached_answer("python list comprehension", "code") is not None
    assert service.cached_answer("python list comprehension", "answer") is None


@pytest.mark.anyio
async def test_suggestions_parse_and_cache() -> None:
    provider = CountingProvider(reply='Here: ["rust traits", "rust lifetimes"]')
    service = make_service(provider)

    first = await service.suggest("rust")
    second = await service.suggest("rust")

    assert first.suggestions == ["rust traits", "rust lifetimes"]
    assert not first.cached
    assert second.cached
    assert provider.chat_calls == 1
    assert service.suggestions_cache.has("rust", SUGGESTIONS_PREFIX)


@pytest.mark.anyio
async def test_unparsable_suggestions_fall_back_without_caching() -> None:
    provider = CountingProvider(reply="I cannot produce JSON today.")
    service = make_service(provider)

    result = await service.suggest("rust")

    assert result.model == FALLBACK_MODEL
    assert result.model_human == "Fallback"
    assert result.suggestions[0] == "rust meaning"
    assert len(service.suggestions_cache) == 0
