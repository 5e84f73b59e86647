import asyncio
import logging
import os
import time
import uuid
from collections.abc import AsyncIterator
from typing import Any, Literal

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .answers import AnswerService
from .cache import SemanticCache
from .catalog import STATIC_MODELS, CachedCatalog, RemoteCatalogSource, StaticCatalogSource, humanize_model_name
from .engine import CompletionEngine
from .metrics import PROM_CONTENT_TYPE, MetricsLogger
from .providers import ProviderRegistry
from .rate_limiter import FixedWindowRateLimiter, client_key
from .router import CandidatePlanner, HealthTracker, load_config
from .search import SearchChain
from .sse import encode_event
from .types import CachedAnswer, DoneEvent, ErrorEvent, ModelSelectedEvent, SuggestionSet
from .validation import QueryValidationError, parse_start_index, validate_query

logger = logging.getLogger(__name__)

app = FastAPI(title="seekrouter")

_REPO_ROOT = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..")
CONFIG_DIR = os.environ.get("SEEK_CONFIG_DIR", os.path.join(_REPO_ROOT, "config"))
METRICS_DIR = os.environ.get("SEEK_METRICS_DIR", os.path.join(_REPO_ROOT, "metrics"))

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})

RATE_LIMIT_MESSAGE = "Too many requests. Please slow down."
STREAM_FAILURE_MESSAGE = "Failed to generate answer"
ANSWER_CACHE_CONTROL = "public, s-maxage=300, stale-while-revalidate=600"
SUGGEST_CACHE_CONTROL = "public, s-maxage=60, stale-while-revalidate=300"
STREAM_CACHE_CONTROL = "no-cache, no-transform"


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


USE_DUMMY: bool = _env_var_as_bool("SEEK_USE_DUMMY")
CACHE_SWEEP_INTERVAL: float = _env_var_as_float("SEEK_CACHE_SWEEP_INTERVAL", default=300.0)
ALLOWED_ORIGINS = _parse_env_list(os.environ.get("SEEK_CORS_ALLOW_ORIGINS", ""))


class ModelInfo(BaseModel):
    id: str
    object: Literal["model"] = "model"
    owned_by: str
    tier: str
    name: str
    failures: int = 0


class ModelListResponse(BaseModel):
    object: Literal["list"] = "list"
    source: str
    data: list[ModelInfo]


cfg = load_config(CONFIG_DIR, use_dummy=USE_DUMMY)
providers = ProviderRegistry(cfg.providers)
completion_provider = providers.get(cfg.router.defaults.provider)
if not completion_provider.available:
    logger.warning(
        "AI calls disabled: %s is not set for provider %s",
        completion_provider.defn.auth_env,
        completion_provider.name,
    )
health = HealthTracker(cfg.router.defaults.max_failures)
planner = CandidatePlanner(cfg.router.tasks, health)
catalog = CachedCatalog(
    RemoteCatalogSource(completion_provider, timeout_s=cfg.router.catalog.fetch_timeout_s),
    StaticCatalogSource(cfg.router.catalog.static_models or STATIC_MODELS),
    ttl_s=cfg.router.catalog.ttl_s,
    retry_backoff_s=cfg.router.catalog.retry_backoff_s,
)
metrics = MetricsLogger(METRICS_DIR)
engine = CompletionEngine(
    completion_provider,
    catalog,
    planner,
    top_p=cfg.router.defaults.top_p,
    batch_size=cfg.router.defaults.batch_size,
    ttft_fast_ms=cfg.router.defaults.ttft_fast_ms,
    ttft_default_ms=cfg.router.defaults.ttft_default_ms,
    transient_backoff_ms=cfg.router.defaults.transient_backoff_ms,
    outcome_hook=metrics.record_outcome,
)
answer_cache: SemanticCache[CachedAnswer] = SemanticCache(
    ttl_s=cfg.router.cache.ttl_s,
    max_size=cfg.router.cache.max_size,
    name="answers",
)
suggestions_cache: SemanticCache[SuggestionSet] = SemanticCache(
    ttl_s=cfg.router.suggestions_cache.ttl_s,
    max_size=cfg.router.suggestions_cache.max_size,
    name="suggestions",
)
search = SearchChain.from_defs(cfg.search_providers)
answers = AnswerService(
    engine,
    answer_cache,
    suggestions_cache,
    search,
    min_answer_chars=cfg.router.cache.min_answer_chars,
)
limiter = FixedWindowRateLimiter()

_cache_sweep_task: asyncio.Task[None] | None = None

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )


async def _cache_sweep_loop() -> None:
    try:
        while True:
            await asyncio.sleep(CACHE_SWEEP_INTERVAL if CACHE_SWEEP_INTERVAL > 0 else 60.0)
            answer_cache.sweep()
            suggestions_cache.sweep()
    except asyncio.CancelledError:
        raise


@app.on_event("startup")
async def _start_cache_sweep() -> None:
    global _cache_sweep_task
    if _cache_sweep_task is None or _cache_sweep_task.done():
        _cache_sweep_task = asyncio.create_task(_cache_sweep_loop())


@app.on_event("shutdown")
async def _stop_cache_sweep() -> None:
    global _cache_sweep_task
    task = _cache_sweep_task
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    _cache_sweep_task = None


def _make_response_headers(*, req_id: str, attempts: int) -> dict[str, str]:
    return {
        "x-seek-request-id": req_id,
        "x-seek-attempts": str(max(attempts, 0)),
    }


def _log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    model: str | None,
    attempts: int,
    detail: str | None = None,
) -> None:
    model_value = model or "none"
    message = f"{event} req_id={req_id} model={model_value} attempts={attempts}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


async def _log_metrics(
    *,
    req_id: str,
    route: str,
    start: float,
    ok: bool,
    status: int,
    task: str | None = None,
    model: str | None = None,
    tier: str | None = None,
    attempts: int = 0,
    cache: str | None = None,
    error: str | None = None,
) -> None:
    record: dict[str, Any] = {
        "req_id": req_id,
        "ts": time.time(),
        "route": route,
        "task": task,
        "model": model,
        "tier": tier,
        "latency_ms": int((time.perf_counter() - start) * 1000),
        "ok": ok,
        "status": status,
        "attempts": attempts,
        "cache": cache,
    }
    if error is not None:
        record["error"] = error
    await metrics.write(record)


def _error_response(message: str, status_code: int, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


def _check_rate_limit(req: Request, bucket: str) -> JSONResponse | None:
    limit = cfg.router.rate_limits[bucket]
    caller = client_key(req.headers)
    result = limiter.check(f"{bucket}:{caller}", limit)
    if result.allowed:
        return None
    logger.warning("rate_limited bucket=%s client=%s reset_at=%d", bucket, caller, result.reset_at)
    headers = {
        "Retry-After": str(result.retry_after_seconds(limiter.now())),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }
    return _error_response(RATE_LIMIT_MESSAGE, 429, headers)


def _validated(raw: str | None) -> tuple[str | None, JSONResponse | None]:
    try:
        return validate_query(raw), None
    except QueryValidationError as exc:
        return None, _error_response(str(exc), 400)


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    current = catalog.current
    return {
        "status": "ok",
        "provider": completion_provider.name,
        "ai_enabled": completion_provider.available,
        "catalog": current.summary() if current is not None else None,
        "unhealthy_models": health.unhealthy(),
        "search_providers": [provider.name for provider in search.providers],
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    return Response(metrics.render_prometheus(), media_type=PROM_CONTENT_TYPE)


@app.get("/v1/models", response_model=ModelListResponse)
async def list_models() -> ModelListResponse:
    current = await catalog.refresh()
    failures = health.snapshot()
    models = [
        ModelInfo(
            id=descriptor.id,
            owned_by=descriptor.id.split("/", 1)[0],
            tier=descriptor.tier,
            name=humanize_model_name(descriptor.id),
            failures=failures.get(descriptor.id, 0),
        )
        for descriptor in current.descriptors.values()
    ]
    return ModelListResponse(source=current.source, data=models)


@app.get("/api/ai/cache/stats")
async def cache_stats() -> dict[str, Any]:
    cleared = answer_cache.sweep()
    return {
        **answer_cache.stats(),
        "clearedExpired": cleared,
        "timestamp": int(time.time() * 1000),
    }


@app.get("/api/search")
async def web_search(req: Request, q: str | None = None, start: str | None = None):
    limited = _check_rate_limit(req, "search")
    if limited is not None:
        return limited
    query, invalid = _validated(q)
    if invalid is not None:
        return invalid
    req_id = str(uuid.uuid4())
    started = time.perf_counter()
    results = await search.search(query, parse_start_index(start))
    await _log_metrics(req_id=req_id, route="search", start=started, ok=True, status=200)
    return JSONResponse(
        {"results": [result.model_dump() for result in results]},
        headers={"Cache-Control": ANSWER_CACHE_CONTROL, "x-seek-request-id": req_id},
    )


@app.get("/api/ai/answer")
async def ai_answer(req: Request, q: str | None = None):
    limited = _check_rate_limit(req, "answer")
    if limited is not None:
        return limited
    query, invalid = _validated(q)
    if invalid is not None:
        return invalid
    req_id = str(uuid.uuid4())
    started = time.perf_counter()
    outcome = await answers.answer(query)
    body = outcome.response
    cache_label = "HIT" if body.cached else "MISS"
    headers = _make_response_headers(req_id=req_id, attempts=body.attempts)
    headers["X-Cache"] = cache_label
    await _log_metrics(
        req_id=req_id,
        route="answer",
        start=started,
        ok=outcome.ok,
        status=outcome.status,
        task=answers.task_for(query),
        model=body.model,
        tier=body.tier,
        attempts=body.attempts,
        cache=cache_label.lower(),
        error=outcome.error,
    )
    content = body.model_dump(by_alias=True, exclude_none=True)
    if not outcome.ok:
        _log_request_event(
            logging.ERROR,
            event="answer.failed",
            req_id=req_id,
            model=None,
            attempts=body.attempts,
            detail=outcome.error,
        )
        content["error"] = outcome.error
        return JSONResponse(content, status_code=outcome.status, headers=headers)
    headers["Cache-Control"] = ANSWER_CACHE_CONTROL
    _log_request_event(
        logging.INFO,
        event="answer.ok",
        req_id=req_id,
        model=body.model,
        attempts=body.attempts,
        detail=f"cache={cache_label.lower()}",
    )
    return JSONResponse(content, headers=headers)


@app.get("/api/ai/suggest")
async def ai_suggest(req: Request, q: str | None = None):
    limited = _check_rate_limit(req, "suggest")
    if limited is not None:
        return limited
    query, invalid = _validated(q)
    if invalid is not None:
        return invalid
    req_id = str(uuid.uuid4())
    started = time.perf_counter()
    body = await answers.suggest(query)
    cache_label = "HIT" if body.cached else "MISS"
    await _log_metrics(
        req_id=req_id,
        route="suggest",
        start=started,
        ok=True,
        status=200,
        task="suggestion",
        model=body.model,
        attempts=body.attempts,
        cache=cache_label.lower(),
    )
    headers = _make_response_headers(req_id=req_id, attempts=body.attempts)
    headers["X-Cache"] = cache_label
    headers["Cache-Control"] = SUGGEST_CACHE_CONTROL
    return JSONResponse(body.model_dump(by_alias=True), headers=headers)


def _stream_headers(*, req_id: str, cache_label: str, attempts: int) -> dict[str, str]:
    headers = _make_response_headers(req_id=req_id, attempts=attempts)
    headers.update(
        {
            "Cache-Control": STREAM_CACHE_CONTROL,
            "X-Cache": cache_label,
            "X-Accel-Buffering": "no",
        }
    )
    return headers


@app.get("/api/ai/stream")
async def ai_stream(req: Request, q: str | None = None):
    limited = _check_rate_limit(req, "stream")
    if limited is not None:
        return limited
    query, invalid = _validated(q)
    if invalid is not None:
        return invalid
    req_id = str(uuid.uuid4())
    started = time.perf_counter()
    task = answers.task_for(query)
    cached = answers.cached_answer(query, task)

    if cached is not None:
        await _log_metrics(
            req_id=req_id,
            route="stream",
            start=started,
            ok=True,
            status=200,
            task=task,
            model=cached.model,
            tier=cached.tier,
            attempts=cached.attempts,
            cache="hit",
        )
        hit_frame = encode_event(answers.cache_hit_event(cached))

        async def cached_source() -> AsyncIterator[bytes]:
            yield hit_frame

        return StreamingResponse(
            cached_source(),
            media_type="text/event-stream",
            headers=_stream_headers(req_id=req_id, cache_label="HIT", attempts=cached.attempts),
        )

    queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()

    async def producer() -> None:
        model: str | None = None
        tier: str | None = None
        attempts = 0
        ok = False
        error: str | None = None
        try:
            async for event in answers.stream(query, task):
                if isinstance(event, ModelSelectedEvent):
                    model, tier = event.model, event.tier
                elif isinstance(event, DoneEvent):
                    ok, attempts = True, event.attempts
                elif isinstance(event, ErrorEvent):
                    error = event.error
                    attempts = event.attempts or attempts
                await queue.put(("data", encode_event(event)))
        except asyncio.CancelledError:
            _log_request_event(
                logging.INFO, event="stream.cancelled", req_id=req_id, model=model, attempts=attempts
            )
            raise
        except Exception as exc:
            logger.exception("stream.failed req_id=%s", req_id)
            error = str(exc) or exc.__class__.__name__
            await queue.put(("data", encode_event(ErrorEvent(error=STREAM_FAILURE_MESSAGE, attempts=attempts))))
        _log_request_event(
            logging.INFO if ok else logging.ERROR,
            event="stream.ok" if ok else "stream.failed",
            req_id=req_id,
            model=model,
            attempts=attempts,
            detail=error,
        )
        await _log_metrics(
            req_id=req_id,
            route="stream",
            start=started,
            ok=ok,
            status=200 if ok else 502,
            task=task,
            model=model,
            tier=tier,
            attempts=attempts,
            cache="miss",
            error=error,
        )
        await queue.put(("done", None))

    async def event_source() -> AsyncIterator[bytes]:
        producer_task = asyncio.create_task(producer())
        try:
            while True:
                kind, payload = await queue.get()
                if kind == "data":
                    yield payload
                elif kind == "done":
                    break
        finally:
            if not producer_task.done():
                producer_task.cancel()
            try:
                await producer_task
            except asyncio.CancelledError:
                pass

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers=_stream_headers(req_id=req_id, cache_label="MISS", attempts=0),
    )
