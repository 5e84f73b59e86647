from typing import Any

import pytest

from src.seekrouter.catalog import (
    STATIC_MODELS,
    CachedCatalog,
    CatalogUnavailableError,
    RemoteCatalogSource,
    StaticCatalogSource,
    build_catalog,
    classify,
    humanize_model_name,
    normalize_model_id,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.parametrize(
    ("model_id", "tier"),
    [
        ("google/gemini-2.0-flash-exp:free", "fast"),
        ("mistralai/mistral-7b-instruct:free", "fast"),
        ("google/gemma-3-12b-it:free", "fast"),
        ("nvidia/nemotron-3-nano-30b-a3b:free", "fast"),
        ("cognitivecomputations/dolphin-mistral-24b-venice-edition:free", "balanced"),
        ("nousresearch/hermes-3-llama-3.1-405b:free", "heavy"),
        ("openai/gpt-oss-120b:free", "heavy"),
        ("qwen/qwen3-coder:free", "code"),
        ("mistralai/devstral-2512:free", "code"),
        ("someone/unknown-model:free", "balanced"),
    ],
)
def test_classify(model_id: str, tier: str) -> None:
    assert classify(model_id) == tier


def test_classify_is_deterministic() -> None:
    assert [classify(m) for m in STATIC_MODELS] == [classify(m) for m in STATIC_MODELS]


@pytest.mark.parametrize(
    ("model_id", "expected"),
    [
        ("google/gemini-2.0-flash-exp:free", "Gemini 2.0 Flash Exp"),
        ("openai/gpt-oss-120b:free", "GPT OSS 120B"),
        ("qwen/qwen3-coder", "Qwen3 Coder"),
    ],
)
def test_humanize_model_name(model_id: str, expected: str) -> None:
    assert humanize_model_name(model_id) == expected


def test_normalize_model_id_appends_free_suffix_once() -> None:
    assert normalize_model_id("a/b") == "a/b:free"
    assert normalize_model_id("a/b:free") == "a/b:free"


def test_build_catalog_dedupes_and_groups_by_tier() -> None:
    catalog = build_catalog(
        ["x/alpha-flash", "x/alpha-flash:free", "x/beta-24b", "x/coder"],
        source="static",
        fetched_at=0.0,
    )
    assert catalog.tiers["fast"] == ("x/alpha-flash:free",)
    assert catalog.tiers["balanced"] == ("x/beta-24b:free",)
    assert catalog.tiers["code"] == ("x/coder:free",)
    assert catalog.tiers["heavy"] == ()
    assert len(catalog) == 3
    assert catalog.describe("x/coder:free").tier == "code"
    assert catalog.summary()["tiers"] == {"fast": 1, "balanced": 1, "heavy": 0, "code": 1}


class FakeProvider:
    def __init__(self, entries: Any = None, error: Exception | None = None) -> None:
        self.entries = entries or []
        self.error = error
        self.calls = 0

    async def list_models(self, *, timeout_s: float = 5.0) -> list[dict[str, Any]]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.entries


def _entry(model_id: str, prompt: str = "0", completion: str = "0", modalities=("text",)) -> dict[str, Any]:
    return {
        "id": model_id,
        "pricing": {"prompt": prompt, "completion": completion},
        "architecture": {"output_modalities": list(modalities)},
    }


@pytest.mark.anyio
async def test_remote_source_keeps_only_free_text_models() -> None:
    provider = FakeProvider(
        [
            _entry("x/free-flash"),
            _entry("x/paid-24b", prompt="0.000001"),
            _entry("x/image-gen", modalities=("image",)),
            {"pricing": {}},
            _entry("x/legacy", prompt="0", completion="0") | {"architecture": {"modality": "text->text"}},
        ]
    )
    source = RemoteCatalogSource(provider)

    assert await source.fetch() == ["x/free-flash", "x/legacy"]


@pytest.mark.anyio
async def test_remote_source_raises_when_nothing_usable() -> None:
    source = RemoteCatalogSource(FakeProvider([_entry("x/paid", prompt="1")]))
    with pytest.raises(CatalogUnavailableError):
        await source.fetch()


@pytest.mark.anyio
async def test_cached_catalog_reuses_fresh_listing() -> None:
    now = [100.0]
    provider = FakeProvider([_entry("x/free-flash")])
    catalog = CachedCatalog(RemoteCatalogSource(provider), ttl_s=60, clock=lambda: now[0])

    first = await catalog.refresh()
    now[0] += 59
    second = await catalog.refresh()

    assert first is second
    assert provider.calls == 1
    assert first.source == "remote"

    now[0] += 1
    await catalog.refresh()
    assert provider.calls == 2


@pytest.mark.anyio
async def test_cached_catalog_falls_back_to_static_list() -> None:
    provider = FakeProvider(error=RuntimeError("boom"))
    catalog = CachedCatalog(
        RemoteCatalogSource(provider),
        StaticCatalogSource(["x/static-flash"]),
        clock=lambda: 0.0,
    )

    result = await catalog.refresh()

    assert result.source == "static"
    assert result.tiers["fast"] == ("x/static-flash:free",)


@pytest.mark.anyio
async def test_cached_catalog_keeps_previous_listing_on_failure() -> None:
    now = [0.0]
    provider = FakeProvider([_entry("x/remote-24b")])
    catalog = CachedCatalog(RemoteCatalogSource(provider), ttl_s=10, retry_backoff_s=5, clock=lambda: now[0])
    await catalog.refresh()

    provider.error = RuntimeError("upstream down")
    now[0] = 20.0
    result = await catalog.refresh()

    assert result.source == "remote"
    assert result.tiers["balanced"] == ("x/remote-24b:free",)
    assert result.fetched_at == 0.0
    assert catalog.is_fresh()
    assert provider.calls == 2


@pytest.mark.anyio
async def test_cached_catalog_retries_after_backoff_not_full_ttl() -> None:
    now = [0.0]
    provider = FakeProvider(error=RuntimeError("upstream down"))
    catalog = CachedCatalog(
        RemoteCatalogSource(provider),
        StaticCatalogSource(["x/static-flash"]),
        ttl_s=1800,
        retry_backoff_s=60,
        clock=lambda: now[0],
    )

    assert (await catalog.refresh()).source == "static"
    now[0] = 59.0
    await catalog.refresh()
    assert provider.calls == 1

    provider.error = None
    provider.entries = [_entry("x/remote-24b")]
    now[0] = 60.0
    recovered = await catalog.refresh()

    assert provider.calls == 2
    assert recovered.source == "remote"
    assert recovered.fetched_at == 60.0
    now[0] = 1_000.0
    assert catalog.is_fresh()


def test_static_source_defaults_when_empty() -> None:
    assert StaticCatalogSource([]).model_ids == STATIC_MODELS
