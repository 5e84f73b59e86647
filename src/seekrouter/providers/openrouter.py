from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, List
from urllib.parse import urlparse, urlunparse

import httpx

from ..sse import delta_content, finish_reason, iter_upstream_payloads
from ..types import ProviderChatResponse, ProviderStreamChunk
from . import BaseProvider, UpstreamError

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


def _token_count(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return 0


class OpenRouterProvider(BaseProvider):
    @property
    def available(self) -> bool:
        return self.api_key is not None

    def _endpoint(self, suffix: str) -> str:
        raw_base = (self.defn.base_url or DEFAULT_BASE_URL).strip()
        parsed = urlparse(raw_base)
        path_segments = [segment for segment in (parsed.path or "").split("/") if segment]
        lowered = [segment.lower() for segment in path_segments]
        # base_url may already point at a concrete endpoint
        for known in (["chat", "completions"], ["models"]):
            if lowered[-len(known):] == known:
                path_segments = path_segments[: -len(known)]
                break
        path_segments.extend(suffix.split("/"))
        rebuilt = parsed._replace(path="/" + "/".join(path_segments))
        return urlunparse(rebuilt)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        key = self.api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"
        if self.defn.referer:
            headers["HTTP-Referer"] = self.defn.referer
        if self.defn.title:
            headers["X-Title"] = self.defn.title
        return headers

    def _build_chat_request(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature: float,
        max_tokens: int,
        *,
        stream: bool,
        top_p: float | None,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        if top_p is not None:
            payload["top_p"] = top_p
        return self._endpoint("chat/completions"), self._headers(), payload

    async def chat(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature=0.6,
        max_tokens=800,
        *,
        top_p: float | None = None,
    ) -> ProviderChatResponse:
        url, headers, payload = self._build_chat_request(
            model,
            messages,
            temperature,
            max_tokens,
            stream=False,
            top_p=top_p,
        )
        async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
            r = await client.post(url, headers=headers, json=payload)
            r.raise_for_status()
            try:
                data = r.json()
            except ValueError as exc:
                raise UpstreamError("upstream returned invalid JSON", status=r.status_code) from exc
        if not isinstance(data, dict):
            raise UpstreamError("upstream returned a non-object body", status=r.status_code)
        raw_choices = data.get("choices")
        if not isinstance(raw_choices, list):
            raw_choices = []
        first_choice = raw_choices[0] if raw_choices and isinstance(raw_choices[0], dict) else {}
        message = first_choice.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        reason = first_choice.get("finish_reason")
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        upstream_model = data.get("model")
        return ProviderChatResponse(
            status_code=r.status_code,
            model=upstream_model if isinstance(upstream_model, str) and upstream_model else model,
            content=content if isinstance(content, str) else None,
            finish_reason=reason if isinstance(reason, str) else None,
            usage_prompt_tokens=_token_count(usage.get("prompt_tokens")),
            usage_completion_tokens=_token_count(usage.get("completion_tokens")),
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
        url, headers, payload = self._build_chat_request(
            model,
            messages,
            temperature,
            max_tokens,
            stream=True,
            top_p=top_p,
        )
        async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
            async with client.stream("POST", url, headers=headers, json=payload) as response:
                if response.is_error:
                    await response.aread()
                response.raise_for_status()
                async for frame in iter_upstream_payloads(response.aiter_lines()):
                    error_payload = frame.get("error")
                    if isinstance(error_payload, dict):
                        message = error_payload.get("message") or "upstream stream error"
                        code = error_payload.get("code")
                        raise UpstreamError(
                            str(message),
                            status=code if isinstance(code, int) else None,
                        )
                    content = delta_content(frame)
                    reason = finish_reason(frame)
                    usage = frame.get("usage")
                    if content is None and reason is None and not isinstance(usage, dict):
                        continue
                    yield ProviderStreamChunk(
                        content=content,
                        finish_reason=reason,
                        usage=usage if isinstance(usage, dict) else None,
                        raw=frame,
                    )

    async def list_models(self, *, timeout_s: float = 5.0) -> list[dict[str, Any]]:
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            r = await client.get(self._endpoint("models"), headers=self._headers())
            r.raise_for_status()
            data = r.json()
        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise UpstreamError("model catalog response has no 'data' list", status=r.status_code)
        return [entry for entry in entries if isinstance(entry, dict)]
