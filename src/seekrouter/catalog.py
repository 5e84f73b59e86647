"""Model catalog: tier classification and a TTL-cached, fallback-safe listing.

Sources implement :class:`CatalogSource`. :class:`CachedCatalog` wraps a
remote source with a static one so that :meth:`CachedCatalog.refresh` always
returns a usable catalog and never raises.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Protocol, Sequence

from pydantic import ValidationError

from .types import TIERS, CatalogEntry, ModelDescriptor, Tier

logger = logging.getLogger(__name__)

FREE_SUFFIX = ":free"

# Checked in this order; the first matching tier wins.
TIER_PATTERNS: tuple[tuple[Tier, re.Pattern[str]], ...] = (
    ("code", re.compile(r"coder|codestral|devstral|code-?llama|starcoder|\bcode\b")),
    (
        "fast",
        re.compile(
            r"flash|nano|-mini|tiny|small|lite|haiku|instant"
            r"|\b[1-9](\.\d)?b\b|-[1-9](\.\d)?b\b|(?<!\d)1[0-4]b\b"
        ),
    ),
    ("balanced", re.compile(r"(?<!\d)(2[0-9]|3[0-9])b\b|mistral|gemma|qwen|glm|medium")),
    (
        "heavy",
        re.compile(r"405b|235b|120b|70b|72b|\bthink|reason|r1\b|hermes-3|large|ultra|pro\b|-pro"),
    ),
)

STATIC_MODELS: tuple[str, ...] = (
    "google/gemini-2.0-flash-exp:free",
    "xiaomi/mimo-v2-flash:free",
    "nvidia/nemotron-3-nano-30b-a3b:free",
    "mistralai/mistral-7b-instruct:free",
    "google/gemma-3-12b-it:free",
    "cognitivecomputations/dolphin-mistral-24b-venice-edition:free",
    "nousresearch/hermes-3-llama-3.1-405b:free",
    "openai/gpt-oss-120b:free",
    "allenai/olmo-3.1-32b-think:free",
    "mistralai/devstral-2512:free",
    "qwen/qwen3-coder:free",
)

_UPPERCASE_TOKENS = frozenset({"gpt", "oss", "ai", "glm", "r1", "it", "vl", "moe"})


def classify(model_id: str) -> Tier:
    lowered = model_id.lower()
    name = lowered.split("/", 1)[-1]
    for tier, pattern in TIER_PATTERNS:
        if pattern.search(name):
            return tier
    return "balanced"


def normalize_model_id(model_id: str) -> str:
    stripped = model_id.strip()
    if stripped.endswith(FREE_SUFFIX):
        return stripped
    return f"{stripped}{FREE_SUFFIX}"


def humanize_model_name(model_id: str) -> str:
    name = model_id.split("/", 1)[-1]
    if name.endswith(FREE_SUFFIX):
        name = name[: -len(FREE_SUFFIX)]
    words: list[str] = []
    for token in re.split(r"[-_]+", name):
        if not token:
            continue
        lowered = token.lower()
        if lowered in _UPPERCASE_TOKENS:
            words.append(token.upper())
        elif token[0].isdigit():
            words.append(token.upper() if lowered.endswith("b") else token)
        else:
            words.append(token[0].upper() + token[1:])
    return " ".join(words) or model_id


def _price_is_zero(value: Any) -> bool:
    if value is None:
        return False
    try:
        return float(value) == 0.0
    except (TypeError, ValueError):
        return False


def _is_text_capable(entry: CatalogEntry) -> bool:
    modalities = entry.architecture.get("output_modalities")
    if modalities is None:
        modality = entry.architecture.get("modality")
        if isinstance(modality, str):
            return modality.split("->")[-1].find("text") >= 0
        return True
    if isinstance(modalities, list):
        return "text" in modalities
    return False


def is_free_text_model(entry: CatalogEntry) -> bool:
    pricing = entry.pricing or {}
    return (
        _price_is_zero(pricing.get("prompt"))
        and _price_is_zero(pricing.get("completion"))
        and _is_text_capable(entry)
    )


@dataclass(frozen=True)
class ModelCatalog:
    tiers: Dict[Tier, tuple[str, ...]]
    source: str
    fetched_at: float
    descriptors: Dict[str, ModelDescriptor] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.descriptors:
            mapping = {
                model_id: ModelDescriptor(id=model_id, tier=tier)
                for tier, ids in self.tiers.items()
                for model_id in ids
            }
            object.__setattr__(self, "descriptors", mapping)

    def __len__(self) -> int:
        return len(self.descriptors)

    def describe(self, model_id: str) -> ModelDescriptor:
        descriptor = self.descriptors.get(model_id)
        if descriptor is None:
            return ModelDescriptor(id=model_id, tier=classify(model_id))
        return descriptor

    def summary(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "fetched_at": self.fetched_at,
            "tiers": {tier: len(self.tiers.get(tier, ())) for tier in TIERS},
        }


def build_catalog(model_ids: Iterable[str], *, source: str, fetched_at: float) -> ModelCatalog:
    tiers: Dict[Tier, list[str]] = {tier: [] for tier in TIERS}
    seen: set[str] = set()
    for raw_id in model_ids:
        model_id = normalize_model_id(raw_id)
        if model_id in seen:
            continue
        seen.add(model_id)
        tiers[classify(model_id)].append(model_id)
    return ModelCatalog(
        tiers={tier: tuple(ids) for tier, ids in tiers.items()},
        source=source,
        fetched_at=fetched_at,
    )


class CatalogSource(Protocol):
    name: str

    async def fetch(self) -> list[str]:
        """Return the usable model ids, raising on failure."""
        ...


class StaticCatalogSource:
    name = "static"

    def __init__(self, model_ids: Sequence[str] = STATIC_MODELS):
        self.model_ids = tuple(model_ids) or STATIC_MODELS

    async def fetch(self) -> list[str]:
        return list(self.model_ids)


class CatalogUnavailableError(RuntimeError):
    pass


class RemoteCatalogSource:
    """Reads ``GET /models`` through a provider and keeps free text models."""

    name = "remote"

    def __init__(self, provider: Any, *, timeout_s: float = 5.0):
        self.provider = provider
        self.timeout_s = timeout_s

    async def fetch(self) -> list[str]:
        raw_entries = await asyncio.wait_for(
            self.provider.list_models(timeout_s=self.timeout_s),
            timeout=self.timeout_s,
        )
        model_ids: list[str] = []
        for raw in raw_entries:
            try:
                entry = CatalogEntry.model_validate(raw)
            except ValidationError:
                continue
            if is_free_text_model(entry):
                model_ids.append(entry.id)
        if not model_ids:
            raise CatalogUnavailableError("upstream catalog contained no free text models")
        return model_ids


class CachedCatalog:
    def __init__(
        self,
        source: CatalogSource,
        fallback: CatalogSource | None = None,
        *,
        ttl_s: float = 1800.0,
        retry_backoff_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.fallback = fallback or StaticCatalogSource()
        self.ttl_s = ttl_s
        self.retry_backoff_s = retry_backoff_s
        self._clock = clock
        self._catalog: ModelCatalog | None = None
        self._retry_at: float | None = None
        self._inflight: asyncio.Task[ModelCatalog] | None = None

    @property
    def current(self) -> ModelCatalog | None:
        return self._catalog

    def is_fresh(self, now: float | None = None) -> bool:
        if self._catalog is None:
            return False
        current_time = self._clock() if now is None else now
        if self._retry_at is not None:
            # last refresh failed; retry once the back-off elapses
            return current_time < self._retry_at
        return current_time - self._catalog.fetched_at < self.ttl_s

    async def refresh(self) -> ModelCatalog:
        if self._catalog is not None and self.is_fresh():
            return self._catalog
        task = self._inflight
        if task is None or task.done():
            task = asyncio.ensure_future(self._reload())
            self._inflight = task
        return await asyncio.shield(task)

    async def _reload(self) -> ModelCatalog:
        now = self._clock()
        try:
            model_ids = await self.source.fetch()
        except Exception as exc:
            return await self._keep_previous(exc, now)
        catalog = build_catalog(model_ids, source=self.source.name, fetched_at=now)
        logger.info(
            "catalog.refresh source=%s models=%d tiers=%s",
            catalog.source,
            len(catalog),
            catalog.summary()["tiers"],
        )
        self._catalog = catalog
        self._retry_at = None
        return catalog

    async def _keep_previous(self, exc: Exception, now: float) -> ModelCatalog:
        detail = str(exc) or exc.__class__.__name__
        self._retry_at = now + self.retry_backoff_s
        previous = self._catalog
        if previous is not None:
            logger.warning(
                "catalog.refresh failed detail=%s; keeping previous catalog, retry in %.0fs",
                detail,
                self.retry_backoff_s,
            )
            return previous
        logger.warning("catalog.refresh failed detail=%s; using %s catalog", detail, self.fallback.name)
        model_ids = await self.fallback.fetch()
        self._catalog = build_catalog(model_ids, source=self.fallback.name, fetched_at=now)
        return self._catalog
