"""Completion engine: ordered candidate selection plus two execution modes.

``complete`` walks candidates one at a time and returns the first non-empty
answer. ``stream`` races candidates in batches: every attempt in a batch runs
as its own task and reports into one results channel tagged with its attempt
index. The first attempt to deliver a content token before its TTFT deadline
wins; the rest of the batch is cancelled without a health penalty.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence

import httpx

from .catalog import CachedCatalog, humanize_model_name
from .metrics import OUTCOME_FAILURE, OUTCOME_WIN
from .providers import (
    BaseProvider,
    EmptyResponseError,
    TransientUpstreamError,
    UpstreamError,
    upstream_error_from_http,
)
from .router import CandidatePlanner, TaskPolicy
from .sse import TokenBuffer
from .types import (
    ChatMessage,
    CompletionResult,
    DoneEvent,
    ErrorEvent,
    ModelDescriptor,
    ModelSelectedEvent,
    StreamEvent,
    TaskKind,
    ThinkingEvent,
    TokenEvent,
    messages_as_dicts,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 2
TTFT_FAST_MS = 600
TTFT_DEFAULT_MS = 1000
TRANSIENT_BACKOFF_MS = 250

THINKING_MESSAGE = "Connecting to AI..."
ALL_FAILED_MESSAGE = "All models failed. Please try again."
DEADLINE_MESSAGE = "Request timed out before any model responded."
INTERRUPTED_MESSAGE = "The model stream was interrupted."
UNAVAILABLE_MESSAGE = "AI provider is not configured."


class GlobalDeadlineExceeded(RuntimeError):
    def __init__(self, message: str = DEADLINE_MESSAGE, *, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class AllModelsFailedError(RuntimeError):
    def __init__(self, message: str = ALL_FAILED_MESSAGE, *, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class EngineState(enum.Enum):
    IDLE = "idle"
    THINKING = "thinking"
    RACING = "racing"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


_TRANSITIONS: Dict[EngineState, frozenset[EngineState]] = {
    EngineState.IDLE: frozenset({EngineState.THINKING}),
    EngineState.THINKING: frozenset({EngineState.RACING, EngineState.ERROR}),
    EngineState.RACING: frozenset({EngineState.RACING, EngineState.STREAMING, EngineState.ERROR}),
    EngineState.STREAMING: frozenset({EngineState.DONE, EngineState.ERROR}),
    EngineState.DONE: frozenset(),
    EngineState.ERROR: frozenset(),
}


def _describe_error(exc: BaseException) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return str(upstream_error_from_http(exc))
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    return str(exc) or exc.__class__.__name__


@dataclass
class _Attempt:
    index: int
    descriptor: ModelDescriptor
    task: asyncio.Task[None]
    deadline: float


@dataclass
class _Winner:
    attempt: _Attempt
    first_token: str
    channel: asyncio.Queue


class CompletionEngine:
    def __init__(
        self,
        provider: BaseProvider,
        catalog: CachedCatalog,
        planner: CandidatePlanner,
        *,
        top_p: float = 1.0,
        batch_size: int = BATCH_SIZE,
        ttft_fast_ms: int = TTFT_FAST_MS,
        ttft_default_ms: int = TTFT_DEFAULT_MS,
        transient_backoff_ms: int = TRANSIENT_BACKOFF_MS,
        clock: Callable[[], float] = time.monotonic,
        outcome_hook: Callable[[str, str, str], None] | None = None,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.provider = provider
        self.catalog = catalog
        self.planner = planner
        self.health = planner.health
        self.top_p = top_p
        self.batch_size = batch_size
        self.ttft_fast_ms = ttft_fast_ms
        self.ttft_default_ms = ttft_default_ms
        self.transient_backoff_ms = transient_backoff_ms
        self._clock = clock
        self.outcome_hook = outcome_hook

    def policy(self, task: TaskKind | str) -> TaskPolicy:
        return self.planner.policy(task)

    def ttft_seconds(self, descriptor: ModelDescriptor) -> float:
        ms = self.ttft_fast_ms if descriptor.tier == "fast" else self.ttft_default_ms
        return ms / 1000.0

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    async def select_candidates(self, task: TaskKind | str) -> list[ModelDescriptor]:
        catalog = await self.catalog.refresh()
        return self.planner.plan(task, catalog.tiers)

    def _report(self, descriptor: ModelDescriptor, outcome: str) -> None:
        if self.outcome_hook is not None:
            self.outcome_hook(descriptor.id, descriptor.tier, outcome)

    def _penalize(self, descriptor: ModelDescriptor, detail: str) -> None:
        count = self.health.record_failure(descriptor.id)
        logger.warning(
            "engine.attempt_failed model=%s tier=%s failures=%d detail=%s",
            descriptor.id,
            descriptor.tier,
            count,
            detail,
        )
        self._report(descriptor, OUTCOME_FAILURE)

    # -- sequential, non-streaming ------------------------------------------

    async def complete(self, messages: Sequence[ChatMessage], task: TaskKind | str) -> CompletionResult:
        if not self.provider.available:
            raise AllModelsFailedError(UNAVAILABLE_MESSAGE, attempts=0)
        policy = self.policy(task)
        payload = messages_as_dicts(list(messages))
        started = self._clock()
        candidates = await self.select_candidates(task)
        attempts = 0
        for descriptor in candidates:
            elapsed = self._elapsed_ms(started)
            if elapsed >= policy.global_deadline_ms:
                logger.error("engine.deadline task=%s attempts=%d elapsed_ms=%d", task, attempts, elapsed)
                raise GlobalDeadlineExceeded(attempts=attempts)
            attempts += 1
            budget_ms = min(policy.per_attempt_timeout_ms, policy.global_deadline_ms - elapsed)
            try:
                response = await asyncio.wait_for(
                    self.provider.chat(
                        descriptor.id,
                        payload,
                        temperature=policy.temperature,
                        max_tokens=policy.max_tokens,
                        top_p=self.top_p,
                    ),
                    timeout=budget_ms / 1000.0,
                )
            except asyncio.TimeoutError:
                self._penalize(descriptor, f"timeout after {budget_ms}ms")
                continue
            except (httpx.HTTPStatusError, UpstreamError) as exc:
                error = upstream_error_from_http(exc) if isinstance(exc, httpx.HTTPStatusError) else exc
                if isinstance(error, TransientUpstreamError):
                    logger.info(
                        "engine.transient model=%s status=%s; trying next candidate",
                        descriptor.id,
                        error.status,
                    )
                    if self.transient_backoff_ms:
                        await asyncio.sleep(self.transient_backoff_ms / 1000.0)
                    continue
                self._penalize(descriptor, str(error))
                continue
            except httpx.HTTPError as exc:
                self._penalize(descriptor, _describe_error(exc))
                continue
            except ValueError as exc:
                # undecodable 200 body
                self._penalize(descriptor, f"malformed response: {_describe_error(exc)}")
                continue
            content = response.content or ""
            if not content.strip():
                self._penalize(descriptor, "empty content")
                continue
            latency_ms = self._elapsed_ms(started)
            logger.info(
                "engine.complete task=%s model=%s attempts=%d latency_ms=%d",
                task,
                descriptor.id,
                attempts,
                latency_ms,
            )
            self._report(descriptor, OUTCOME_WIN)
            return CompletionResult(
                content=content.strip(),
                model=descriptor.id,
                model_human=humanize_model_name(descriptor.id),
                tier=descriptor.tier,
                latency_ms=latency_ms,
                attempts=attempts,
            )
        logger.error("engine.exhausted task=%s attempts=%d", task, attempts)
        raise AllModelsFailedError(attempts=attempts)

    # -- racing, streaming --------------------------------------------------

    def stream(self, messages: Sequence[ChatMessage], task: TaskKind | str) -> AsyncIterator[StreamEvent]:
        return StreamSession(self, messages, task).events()

    async def _run_attempt(
        self,
        index: int,
        descriptor: ModelDescriptor,
        payload: List[dict[str, Any]],
        policy: TaskPolicy,
        channel: asyncio.Queue,
    ) -> None:
        stream = self.provider.chat_stream(
            descriptor.id,
            payload,
            temperature=policy.temperature,
            max_tokens=policy.max_tokens,
            top_p=self.top_p,
        )
        leading = ""
        started = False
        try:
            async for chunk in stream:
                text = chunk.content
                if not text:
                    continue
                if started:
                    await channel.put(("token", index, text))
                    continue
                leading += text
                if leading.strip():
                    started = True
                    await channel.put(("first", index, leading))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await channel.put(("error" if started else "failed", index, exc))
            return
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        if started:
            await channel.put(("done", index, None))
        else:
            await channel.put(("failed", index, EmptyResponseError("stream ended without content")))

    async def _race(
        self,
        batch: Sequence[ModelDescriptor],
        first_index: int,
        payload: List[dict[str, Any]],
        policy: TaskPolicy,
    ) -> _Winner | None:
        loop = asyncio.get_running_loop()
        channel: asyncio.Queue = asyncio.Queue()
        attempts: Dict[int, _Attempt] = {}
        for offset, descriptor in enumerate(batch):
            index = first_index + offset
            task = asyncio.create_task(self._run_attempt(index, descriptor, payload, policy, channel))
            attempts[index] = _Attempt(index, descriptor, task, loop.time() + self.ttft_seconds(descriptor))
            logger.debug("engine.attempt_start index=%d model=%s tier=%s", index, descriptor.id, descriptor.tier)
        pending = set(attempts)
        winner: _Attempt | None = None
        try:
            while pending:
                try:
                    kind, index, body = channel.get_nowait()
                except asyncio.QueueEmpty:
                    timeout = max(0.0, min(attempts[i].deadline for i in pending) - loop.time())
                    try:
                        kind, index, body = await asyncio.wait_for(channel.get(), timeout=timeout)
                    except asyncio.TimeoutError:
                        now = loop.time()
                        for expired in sorted(i for i in pending if attempts[i].deadline <= now):
                            pending.discard(expired)
                            attempts[expired].task.cancel()
                            self._penalize(attempts[expired].descriptor, "no first token before TTFT deadline")
                        continue
                if index not in pending:
                    continue
                if kind == "first":
                    winner = attempts[index]
                    return _Winner(attempt=winner, first_token=body, channel=channel)
                pending.discard(index)
                self._penalize(attempts[index].descriptor, _describe_error(body))
            return None
        finally:
            losers = [attempt.task for attempt in attempts.values() if attempt is not winner]
            for loser in losers:
                loser.cancel()
            if losers:
                await asyncio.gather(*losers, return_exceptions=True)


class StreamSession:
    """One streamed request driven through :class:`EngineState`."""

    def __init__(self, engine: CompletionEngine, messages: Sequence[ChatMessage], task: TaskKind | str):
        self.engine = engine
        self.messages = list(messages)
        self.task = task
        self.state = EngineState.IDLE
        self.attempts = 0

    def _transition(self, target: EngineState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid engine transition {self.state.value} -> {target.value}")
        logger.debug("engine.state task=%s %s->%s", self.task, self.state.value, target.value)
        self.state = target

    def _fail(self, message: str) -> ErrorEvent:
        self._transition(EngineState.ERROR)
        return ErrorEvent(error=message, attempts=self.attempts)

    async def events(self) -> AsyncIterator[StreamEvent]:
        engine = self.engine
        self._transition(EngineState.THINKING)
        yield ThinkingEvent(content=THINKING_MESSAGE)
        if not engine.provider.available:
            logger.warning("engine.unavailable task=%s detail=no provider credentials", self.task)
            yield self._fail(UNAVAILABLE_MESSAGE)
            return
        policy = engine.policy(self.task)
        payload = messages_as_dicts(self.messages)
        started = engine._clock()
        candidates = await engine.select_candidates(self.task)
        for first_index in range(0, len(candidates), engine.batch_size):
            elapsed = engine._elapsed_ms(started)
            if elapsed >= policy.global_deadline_ms:
                logger.error(
                    "engine.deadline task=%s attempts=%d elapsed_ms=%d", self.task, self.attempts, elapsed
                )
                yield self._fail(DEADLINE_MESSAGE)
                return
            batch = candidates[first_index:first_index + engine.batch_size]
            self.attempts += len(batch)
            self._transition(EngineState.RACING)
            winner = await engine._race(batch, first_index, payload, policy)
            if winner is None:
                continue
            self._transition(EngineState.STREAMING)
            try:
                async for event in self._drain(winner, policy, started):
                    yield event
            finally:
                if not winner.attempt.task.done():
                    winner.attempt.task.cancel()
                await asyncio.gather(winner.attempt.task, return_exceptions=True)
            return
        logger.error("engine.exhausted task=%s attempts=%d", self.task, self.attempts)
        yield self._fail(ALL_FAILED_MESSAGE)

    async def _drain(self, winner: _Winner, policy: TaskPolicy, started: float) -> AsyncIterator[StreamEvent]:
        engine = self.engine
        descriptor = winner.attempt.descriptor
        model_human = humanize_model_name(descriptor.id)
        logger.info(
            "engine.selected task=%s model=%s tier=%s attempts=%d",
            self.task,
            descriptor.id,
            descriptor.tier,
            self.attempts,
        )
        yield ModelSelectedEvent(
            model=descriptor.id,
            model_human=model_human,
            tier=descriptor.tier,
            attempts=self.attempts,
        )
        parts = [winner.first_token]
        yield TokenEvent(content=winner.first_token)
        buffer = TokenBuffer()
        idle_timeout = policy.per_attempt_timeout_ms / 1000.0
        while True:
            try:
                kind, index, body = await asyncio.wait_for(winner.channel.get(), timeout=idle_timeout)
            except asyncio.TimeoutError:
                kind, index, body = "error", winner.attempt.index, asyncio.TimeoutError()
            if index != winner.attempt.index:
                # late report from a cancelled loser
                continue
            if kind == "token":
                parts.append(body)
                text = buffer.push(body)
                if text:
                    yield TokenEvent(content=text)
                continue
            rest = buffer.flush()
            if rest:
                yield TokenEvent(content=rest)
            if kind == "done":
                break
            engine._penalize(descriptor, f"stream interrupted: {_describe_error(body)}")
            yield self._fail(INTERRUPTED_MESSAGE)
            return
        latency_ms = engine._elapsed_ms(started)
        self._transition(EngineState.DONE)
        engine._report(descriptor, OUTCOME_WIN)
        logger.info(
            "engine.done task=%s model=%s attempts=%d latency_ms=%d",
            self.task,
            descriptor.id,
            self.attempts,
            latency_ms,
        )
        yield DoneEvent(
            content="".join(parts),
            model=descriptor.id,
            model_human=model_human,
            tier=descriptor.tier,
            latency_ms=latency_ms,
            attempts=self.attempts,
        )
