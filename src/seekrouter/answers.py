"""Answer orchestration: cache lookup, grounding search, engine call, cache write."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Callable, Optional

from .cache import SemanticCache
from .engine import AllModelsFailedError, CompletionEngine, GlobalDeadlineExceeded
from .prompts import (
    FALLBACK_ANSWER,
    build_answer_messages,
    build_suggestion_messages,
    classify_task,
    fallback_suggestions,
    parse_suggestions,
)
from .search import SearchChain
from .types import (
    AnswerResponse,
    CachedAnswer,
    CacheHitEvent,
    DoneEvent,
    StreamEvent,
    SuggestionSet,
    SuggestionsResponse,
    TaskKind,
    cached_answer_from_done,
    cached_answer_from_result,
)

logger = logging.getLogger(__name__)

SUGGESTIONS_PREFIX = "suggest"
FALLBACK_MODEL = "fallback"
NO_MODEL = "none"
MIN_ANSWER_CHARS = 50


@dataclass
class AnswerOutcome:
    response: AnswerResponse
    ok: bool
    status: int = 200
    error: Optional[str] = None


class AnswerService:
    def __init__(
        self,
        engine: CompletionEngine,
        cache: SemanticCache[CachedAnswer],
        suggestions_cache: SemanticCache[SuggestionSet],
        search: SearchChain,
        *,
        min_answer_chars: int = MIN_ANSWER_CHARS,
        clock: Callable[[], float] = time.time,
    ):
        self.engine = engine
        self.cache = cache
        self.suggestions_cache = suggestions_cache
        self.search = search
        self.min_answer_chars = min_answer_chars
        self._clock = clock

    def task_for(self, query: str) -> TaskKind:
        return classify_task(query)

    def cached_answer(self, query: str, task: TaskKind) -> CachedAnswer | None:
        return self.cache.get(query, task)

    def remember(self, query: str, task: TaskKind, answer: CachedAnswer) -> bool:
        if len(answer.answer.strip()) < self.min_answer_chars:
            logger.info("answers.skip_cache task=%s chars=%d", task, len(answer.answer.strip()))
            return False
        self.cache.set(query, answer, task)
        return True

    @staticmethod
    def cache_hit_event(cached: CachedAnswer) -> CacheHitEvent:
        return CacheHitEvent(content=cached.answer, model=cached.model, model_human=cached.model_human)

    async def stream(self, query: str, task: TaskKind) -> AsyncIterator[StreamEvent]:
        """Stream a fresh answer; the ``done`` event writes the cache entry."""
        context = await self.search.search(query)
        messages = build_answer_messages(query, context, task)
        async for event in self.engine.stream(messages, task):
            if isinstance(event, DoneEvent):
                self.remember(query, task, cached_answer_from_done(event, query=query, now=self._clock()))
            yield event

    async def answer(self, query: str) -> AnswerOutcome:
        task = self.task_for(query)
        cached = self.cached_answer(query, task)
        if cached is not None:
            return AnswerOutcome(
                response=AnswerResponse(
                    answer=cached.answer,
                    model=cached.model,
                    model_human=cached.model_human,
                    latency_ms=0,
                    tier=cached.tier,
                    attempts=cached.attempts,
                    cached=True,
                    cached_at=cached.cached_at,
                ),
                ok=True,
            )
        context = await self.search.search(query)
        messages = build_answer_messages(query, context, task)
        started = self._clock()
        try:
            result = await self.engine.complete(messages, task)
        except (AllModelsFailedError, GlobalDeadlineExceeded) as exc:
            status = 504 if isinstance(exc, GlobalDeadlineExceeded) else 502
            logger.warning("answers.fallback task=%s attempts=%d detail=%s", task, exc.attempts, exc)
            return AnswerOutcome(
                response=AnswerResponse(
                    answer=FALLBACK_ANSWER,
                    model=NO_MODEL,
                    model_human=NO_MODEL,
                    latency_ms=int((self._clock() - started) * 1000),
                    tier=NO_MODEL,
                    attempts=exc.attempts,
                    cached=False,
                ),
                ok=False,
                status=status,
                error=str(exc),
            )
        self.remember(query, task, cached_answer_from_result(result, query=query, now=self._clock()))
        return AnswerOutcome(
            response=AnswerResponse(
                answer=result.content,
                model=result.model,
                model_human=result.model_human,
                latency_ms=result.latency_ms,
                tier=result.tier,
                attempts=result.attempts,
                cached=False,
            ),
            ok=True,
        )

    async def suggest(self, query: str) -> SuggestionsResponse:
        cached = self.suggestions_cache.get(query, SUGGESTIONS_PREFIX)
        if cached is not None:
            return SuggestionsResponse(
                suggestions=cached.suggestions,
                model=cached.model,
                model_human=cached.model_human,
                latency_ms=0,
                attempts=0,
                cached=True,
            )
        started = self._clock()
        try:
            result = await self.engine.complete(build_suggestion_messages(query), "suggestion")
        except (AllModelsFailedError, GlobalDeadlineExceeded) as exc:
            logger.warning("answers.suggest_fallback attempts=%d detail=%s", exc.attempts, exc)
            return self._fallback_suggestions(query, started, exc.attempts)
        suggestions = parse_suggestions(result.content)
        if suggestions is None:
            logger.warning("answers.suggest_unparsable model=%s", result.model)
            return self._fallback_suggestions(query, started, result.attempts)
        self.suggestions_cache.set(
            query,
            SuggestionSet(
                suggestions=suggestions,
                model=result.model,
                model_human=result.model_human,
                cached_at=self._clock(),
            ),
            SUGGESTIONS_PREFIX,
        )
        return SuggestionsResponse(
            suggestions=suggestions,
            model=result.model,
            model_human=result.model_human,
            latency_ms=result.latency_ms,
            attempts=result.attempts,
            cached=False,
        )

    def _fallback_suggestions(self, query: str, started: float, attempts: int) -> SuggestionsResponse:
        return SuggestionsResponse(
            suggestions=fallback_suggestions(query),
            model=FALLBACK_MODEL,
            model_human="Fallback",
            latency_ms=int((self._clock() - started) * 1000),
            attempts=attempts,
            cached=False,
        )
