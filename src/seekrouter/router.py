import os
import threading
from dataclasses import dataclass, field
from typing import Dict, Literal, Sequence

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised via tests
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, ValidationError, model_validator

from .types import TIERS, ModelDescriptor, TaskKind, Tier

COMPLETION_PROVIDER_TYPES = frozenset({"openrouter", "dummy"})
SEARCH_PROVIDER_TYPES = frozenset({"serpapi", "google_cse", "dummy_search"})

MAX_FAILURES = 3


@dataclass
class ProviderDef:
    name: str
    type: str
    base_url: str
    auth_env: str | None
    timeout_s: float = 45.0
    referer: str | None = None
    title: str | None = None
    extra_env: str | None = None


@dataclass(frozen=True)
class TaskPolicy:
    temperature: float
    max_tokens: int
    preferred_tiers: tuple[Tier, ...]
    per_attempt_timeout_ms: int
    global_deadline_ms: int


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int


@dataclass(frozen=True)
class CacheSettings:
    ttl_s: float
    max_size: int
    min_answer_chars: int = 0


@dataclass(frozen=True)
class CatalogSettings:
    ttl_s: float
    fetch_timeout_s: float
    static_models: tuple[str, ...]
    retry_backoff_s: float = 60.0


@dataclass(frozen=True)
class EngineDefaults:
    provider: str
    top_p: float
    batch_size: int
    ttft_fast_ms: int
    ttft_default_ms: int
    transient_backoff_ms: int
    max_failures: int


@dataclass
class RouterConfig:
    defaults: EngineDefaults
    tasks: Dict[str, TaskPolicy]
    catalog: CatalogSettings
    cache: CacheSettings
    suggestions_cache: CacheSettings
    rate_limits: Dict[str, RateLimitConfig]


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    search_providers: Dict[str, ProviderDef]
    router: RouterConfig
    watch_paths: tuple[str, ...] = field(default_factory=tuple)

    @property
    def completion_provider(self) -> ProviderDef:
        return self.providers[self.router.defaults.provider]


DEFAULT_TASK_POLICIES: Dict[str, TaskPolicy] = {
    "suggestion": TaskPolicy(
        temperature=0.6,
        max_tokens=200,
        preferred_tiers=("fast", "balanced"),
        per_attempt_timeout_ms=8_000,
        global_deadline_ms=15_000,
    ),
    "answer": TaskPolicy(
        temperature=0.6,
        max_tokens=800,
        preferred_tiers=("balanced", "fast", "heavy"),
        per_attempt_timeout_ms=20_000,
        global_deadline_ms=60_000,
    ),
    "code": TaskPolicy(
        temperature=0.2,
        max_tokens=1200,
        preferred_tiers=("code", "heavy", "balanced"),
        per_attempt_timeout_ms=25_000,
        global_deadline_ms=60_000,
    ),
}

DEFAULT_RATE_LIMITS: Dict[str, RateLimitConfig] = {
    "search": RateLimitConfig(max_requests=30, window_ms=60_000),
    "stream": RateLimitConfig(max_requests=20, window_ms=60_000),
    "suggest": RateLimitConfig(max_requests=60, window_ms=60_000),
    "answer": RateLimitConfig(max_requests=20, window_ms=60_000),
}


class _TaskModel(BaseModel):
    temperature: float = Field(ge=0.0, le=2.0)
    max_tokens: PositiveInt
    preferred_tiers: list[Literal["fast", "balanced", "heavy", "code"]] = Field(min_length=1)
    per_attempt_timeout_ms: PositiveInt
    global_deadline_ms: PositiveInt

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_deadlines(self) -> "_TaskModel":
        if self.global_deadline_ms < self.per_attempt_timeout_ms:
            raise ValueError("global_deadline_ms must be >= per_attempt_timeout_ms")
        return self


class _TtftModel(BaseModel):
    fast: PositiveInt = Field(default=600)
    default: PositiveInt = Field(default=1000)

    model_config = ConfigDict(extra="forbid")


class _DefaultsModel(BaseModel):
    provider: str | None = None
    top_p: float = Field(default=1.0, gt=0.0, le=1.0)
    batch_size: PositiveInt = Field(default=2)
    ttft_ms: _TtftModel = Field(default_factory=_TtftModel)
    transient_backoff_ms: int = Field(default=250, ge=0)
    max_failures: PositiveInt = Field(default=MAX_FAILURES)

    model_config = ConfigDict(extra="forbid")


class _CatalogModel(BaseModel):
    ttl_s: PositiveFloat = Field(default=1800.0)
    fetch_timeout_s: PositiveFloat = Field(default=5.0)
    retry_backoff_s: PositiveFloat = Field(default=60.0)
    static: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class _CacheModel(BaseModel):
    ttl_s: PositiveFloat = Field(default=1800.0)
    max_size: PositiveInt = Field(default=500)
    min_answer_chars: int = Field(default=50, ge=0)

    model_config = ConfigDict(extra="forbid")


class _RateLimitModel(BaseModel):
    max_requests: PositiveInt
    window_ms: PositiveInt = Field(default=60_000)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: object) -> object:
        # "stream: 20" is shorthand for a 60s window
        if isinstance(data, int) and not isinstance(data, bool):
            return {"max_requests": data}
        return data


class _RouterModel(BaseModel):
    defaults: _DefaultsModel = Field(default_factory=_DefaultsModel)
    tasks: Dict[str, _TaskModel] = Field(default_factory=dict)
    catalog: _CatalogModel = Field(default_factory=_CatalogModel)
    cache: _CacheModel = Field(default_factory=_CacheModel)
    suggestions_cache: _CacheModel = Field(
        default_factory=lambda: _CacheModel(ttl_s=600.0, max_size=200, min_answer_chars=0)
    )
    rate_limits: Dict[str, _RateLimitModel] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _known_tasks(self) -> "_RouterModel":
        unknown = sorted(set(self.tasks) - set(DEFAULT_TASK_POLICIES))
        if unknown:
            raise ValueError(
                "unknown task kinds: {names}; expected one of {known}".format(
                    names=", ".join(unknown),
                    known=", ".join(sorted(DEFAULT_TASK_POLICIES)),
                )
            )
        return self


def _read_timeout(name: str, raw_value: object) -> float:
    timeout = float(raw_value)
    if timeout <= 0:
        raise ValueError(
            "Provider '{name}' defines invalid timeout_s {value}; must be > 0.".format(
                name=name,
                value=timeout,
            )
        )
    return timeout


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def load_config(config_dir: str, use_dummy: bool = False) -> LoadedConfig:
    prov_path = os.path.join(config_dir, "providers.dummy.toml" if use_dummy else "providers.toml")
    with open(prov_path, "rb") as f:
        prov_data = tomllib.load(f)
    providers: Dict[str, ProviderDef] = {}
    search_providers: Dict[str, ProviderDef] = {}
    for name, d in prov_data.items():
        provider_type = str(d.get("type", "openrouter")).strip()
        defn = ProviderDef(
            name=name,
            type=provider_type,
            base_url=d.get("base_url", ""),
            auth_env=d.get("auth_env"),
            timeout_s=_read_timeout(name, d.get("timeout_s", 45)),
            referer=d.get("referer"),
            title=d.get("title"),
            extra_env=d.get("extra_env"),
        )
        if provider_type in COMPLETION_PROVIDER_TYPES:
            providers[name] = defn
        elif provider_type in SEARCH_PROVIDER_TYPES:
            search_providers[name] = defn
        else:
            raise ValueError(f"Unknown provider type '{provider_type or '<missing>'}' for provider '{name}'")
    router_path = os.path.join(config_dir, "router.yaml")
    with open(router_path, "r", encoding="utf-8") as f:
        rdata = yaml.safe_load(f) or {}
    try:
        parsed = _RouterModel.model_validate(rdata)
    except ValidationError as exc:
        raise ValueError(_format_validation_error(exc)) from exc
    router = _build_router_config(parsed, providers)
    return LoadedConfig(
        providers=providers,
        search_providers=search_providers,
        router=router,
        watch_paths=(prov_path, router_path),
    )


def _build_router_config(parsed: _RouterModel, providers: Dict[str, ProviderDef]) -> RouterConfig:
    defs = parsed.defaults
    if not providers:
        raise ValueError("no completion provider configured (expected type 'openrouter' or 'dummy')")
    provider_name = defs.provider or next(iter(providers))
    if provider_name not in providers:
        available = ", ".join(sorted(providers)) or "<none>"
        raise ValueError(
            "defaults.provider references undefined provider '{provider}'. Available providers: {available}".format(
                provider=provider_name,
                available=available,
            )
        )
    tasks: Dict[str, TaskPolicy] = dict(DEFAULT_TASK_POLICIES)
    for name, task in parsed.tasks.items():
        tasks[name] = TaskPolicy(
            temperature=float(task.temperature),
            max_tokens=int(task.max_tokens),
            preferred_tiers=tuple(task.preferred_tiers),
            per_attempt_timeout_ms=int(task.per_attempt_timeout_ms),
            global_deadline_ms=int(task.global_deadline_ms),
        )
    rate_limits: Dict[str, RateLimitConfig] = dict(DEFAULT_RATE_LIMITS)
    for name, limit in parsed.rate_limits.items():
        rate_limits[name] = RateLimitConfig(
            max_requests=int(limit.max_requests),
            window_ms=int(limit.window_ms),
        )
    return RouterConfig(
        defaults=EngineDefaults(
            provider=provider_name,
            top_p=float(defs.top_p),
            batch_size=int(defs.batch_size),
            ttft_fast_ms=int(defs.ttft_ms.fast),
            ttft_default_ms=int(defs.ttft_ms.default),
            transient_backoff_ms=int(defs.transient_backoff_ms),
            max_failures=int(defs.max_failures),
        ),
        tasks=tasks,
        catalog=CatalogSettings(
            ttl_s=float(parsed.catalog.ttl_s),
            fetch_timeout_s=float(parsed.catalog.fetch_timeout_s),
            retry_backoff_s=float(parsed.catalog.retry_backoff_s),
            static_models=tuple(parsed.catalog.static),
        ),
        cache=CacheSettings(
            ttl_s=float(parsed.cache.ttl_s),
            max_size=int(parsed.cache.max_size),
            min_answer_chars=int(parsed.cache.min_answer_chars),
        ),
        suggestions_cache=CacheSettings(
            ttl_s=float(parsed.suggestions_cache.ttl_s),
            max_size=int(parsed.suggestions_cache.max_size),
            min_answer_chars=int(parsed.suggestions_cache.min_answer_chars),
        ),
        rate_limits=rate_limits,
    )


class HealthTracker:
    """Per-model failure counters with a fixed eligibility threshold.

    Counts only grow until :meth:`reset_all`; there is no per-model recovery.
    """

    def __init__(self, max_failures: int = MAX_FAILURES):
        self.max_failures = max_failures
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def record_failure(self, model_id: str) -> int:
        with self._lock:
            count = self._failures.get(model_id, 0) + 1
            self._failures[model_id] = count
            return count

    def failure_count(self, model_id: str) -> int:
        return self._failures.get(model_id, 0)

    def is_eligible(self, model_id: str) -> bool:
        return self.failure_count(model_id) < self.max_failures

    def reset_all(self) -> None:
        with self._lock:
            self._failures.clear()

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._failures)

    def unhealthy(self) -> list[str]:
        return sorted(model for model, count in self.snapshot().items() if count >= self.max_failures)


def candidate_order(
    catalog: Dict[Tier, Sequence[str]],
    preferred_tiers: Sequence[Tier],
) -> list[ModelDescriptor]:
    tier_order: list[Tier] = []
    for tier in list(preferred_tiers) + list(TIERS):
        if tier not in tier_order:
            tier_order.append(tier)
    seen: set[str] = set()
    ordered: list[ModelDescriptor] = []
    for tier in tier_order:
        for model_id in catalog.get(tier, ()):
            if model_id in seen:
                continue
            seen.add(model_id)
            ordered.append(ModelDescriptor(id=model_id, tier=tier))
    return ordered


class CandidatePlanner:
    def __init__(self, tasks: Dict[str, TaskPolicy], health: HealthTracker):
        self.tasks = tasks
        self.health = health

    def policy(self, task: TaskKind | str) -> TaskPolicy:
        policy = self.tasks.get(task)
        if policy is None:
            raise ValueError(
                f"no policy configured for task '{task}'; expected one of {', '.join(sorted(self.tasks))}"
            )
        return policy

    def plan(self, task: TaskKind | str, catalog: Dict[Tier, Sequence[str]]) -> list[ModelDescriptor]:
        """Return the candidate order for ``task``.

        Models from the preferred tiers come first, the remaining tiers follow
        in canonical order, and the result is stably sorted by failure count.
        When no model is eligible the health map is reset and the full list
        is returned.
        """
        policy = self.policy(task)
        ordered = candidate_order(catalog, policy.preferred_tiers)
        ordered.sort(key=lambda descriptor: self.health.failure_count(descriptor.id))
        eligible = [descriptor for descriptor in ordered if self.health.is_eligible(descriptor.id)]
        if eligible or not ordered:
            return eligible
        self.health.reset_all()
        return ordered
