import asyncio
import os
from collections.abc import AsyncIterator
from typing import Any, Dict, List

import httpx

from ..router import ProviderDef
from ..types import ProviderChatResponse, ProviderStreamChunk

TRANSIENT_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503})


class UpstreamError(RuntimeError):
    """A completion attempt failed in a way that counts against the model."""

    def __init__(self, message: str, *, status: int | None = None, retry_after: int | None = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class TransientUpstreamError(UpstreamError):
    """Upstream is overloaded or rate limited; try the next model without penalty."""


class EmptyResponseError(UpstreamError):
    pass


def _http_status_error_message(exc: httpx.HTTPStatusError) -> str:
    response = exc.response
    message: str | None = None
    try:
        payload = response.json()
    except (ValueError, httpx.ResponseNotRead):
        payload = None
    if isinstance(payload, dict):
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                message = error_message
        if message is None:
            nested_message = payload.get("message")
            if isinstance(nested_message, str) and nested_message:
                message = nested_message
    if message is None:
        try:
            text = response.text
        except httpx.ResponseNotRead:
            text = ""
        if text:
            message = text[:200]
    if message is None:
        message = response.reason_phrase or str(exc)
    return message


def _retry_after_seconds(response: httpx.Response) -> int | None:
    header = response.headers.get("Retry-After")
    if not header:
        return None
    value = header.strip()
    if value.isdigit():
        return max(int(value), 0)
    return None


def upstream_error_from_http(exc: httpx.HTTPStatusError) -> UpstreamError:
    status = exc.response.status_code
    message = _http_status_error_message(exc)
    retry_after = _retry_after_seconds(exc.response)
    error_cls = TransientUpstreamError if status in TRANSIENT_STATUSES else UpstreamError
    return error_cls(f"HTTP {status}: {message}", status=status, retry_after=retry_after)


class BaseProvider:
    def __init__(self, defn: ProviderDef):
        self.defn = defn
        self.name = defn.name

    @property
    def api_key(self) -> str | None:
        if not self.defn.auth_env:
            return None
        return os.environ.get(self.defn.auth_env) or None

    @property
    def available(self) -> bool:
        return True

    async def chat(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature=0.6,
        max_tokens=800,
        *,
        top_p: float | None = None,
    ) -> ProviderChatResponse:
        raise NotImplementedError

    def chat_stream(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature=0.6,
        max_tokens=800,
        *,
        top_p: float | None = None,
    ) -> AsyncIterator[ProviderStreamChunk]:
        raise NotImplementedError

    async def list_models(self, *, timeout_s: float = 5.0) -> list[dict[str, Any]]:
        raise NotImplementedError


DUMMY_MODELS: tuple[str, ...] = (
    "dummy/fast-flash",
    "dummy/balanced-24b",
    "dummy/heavy-405b",
    "dummy/coder",
)


class DummyProvider(BaseProvider):
    """Offline provider: answers are derived from the prompt, never from the network."""

    def _answer(self, model: str, messages: List[dict[str, Any]]) -> str:
        last_user = next((m["content"] for m in reversed(messages) if m["role"] == "user"), "ping")
        topic = " ".join(str(last_user).split())[:120]
        return (
            f"This is an offline answer from {model}. "
            f"It restates the request so that callers can exercise the full pipeline: {topic}"
        )

    async def chat(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature=0.6,
        max_tokens=800,
        *,
        top_p: float | None = None,
    ) -> ProviderChatResponse:
        _ = (temperature, max_tokens, top_p)
        return ProviderChatResponse(
            status_code=200,
            model=model,
            content=self._answer(model, messages),
            finish_reason="stop",
        )

    async def chat_stream(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature=0.6,
        max_tokens=800,
        *,
        top_p: float | None = None,
    ) -> AsyncIterator[ProviderStreamChunk]:
        _ = (temperature, max_tokens, top_p)
        words = self._answer(model, messages).split(" ")
        for index, word in enumerate(words):
            await asyncio.sleep(0)
            yield ProviderStreamChunk(content=word if index == 0 else f" {word}")
        yield ProviderStreamChunk(finish_reason="stop")

    async def list_models(self, *, timeout_s: float = 5.0) -> list[dict[str, Any]]:
        _ = timeout_s
        return [
            {
                "id": model_id,
                "pricing": {"prompt": "0", "completion": "0"},
                "architecture": {"output_modalities": ["text"]},
                "context_length": 8192,
            }
            for model_id in DUMMY_MODELS
        ]


from .openrouter import OpenRouterProvider


class ProviderRegistry:
    _PROVIDER_FACTORIES: dict[str, type[BaseProvider]] = {
        "openrouter": OpenRouterProvider,
        "dummy": DummyProvider,
    }

    def __init__(self, providers: Dict[str, ProviderDef]):
        self.providers: dict[str, BaseProvider] = {}
        for name, d in providers.items():
            factory = self._PROVIDER_FACTORIES.get(d.type)
            if factory is None:
                display_type = d.type.strip() if d.type and d.type.strip() else "<missing>"
                raise ValueError(
                    f"Unknown provider type '{display_type}' for provider '{name}'"
                )
            self.providers[name] = factory(d)

    def get(self, name: str) -> BaseProvider:
        return self.providers[name]


__all__ = [
    "TRANSIENT_STATUSES",
    "UpstreamError",
    "TransientUpstreamError",
    "EmptyResponseError",
    "upstream_error_from_http",
    "BaseProvider",
    "DummyProvider",
    "OpenRouterProvider",
    "ProviderRegistry",
]
