import json
import string
from collections.abc import AsyncIterator, Iterable
from typing import Any

from pydantic import ValidationError

from .types import STREAM_EVENT_ADAPTER, StreamEvent

DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"
MIN_TOKEN_CHARS = 20

_BOUNDARY_CHARS = frozenset(string.whitespace) | frozenset(string.punctuation)


def encode_event(event: StreamEvent) -> bytes:
    data_text = event.model_dump_json(by_alias=True, exclude_none=True)
    return f"data: {data_text}\n\n".encode("utf-8")


def decode_event(line: str) -> StreamEvent | None:
    stripped = line.strip()
    if not stripped.startswith(DATA_PREFIX):
        return None
    data_text = stripped[len(DATA_PREFIX):].strip()
    if not data_text:
        return None
    try:
        return STREAM_EVENT_ADAPTER.validate_json(data_text)
    except ValidationError:
        return None


def decode_events(body: str | Iterable[str]) -> list[StreamEvent]:
    lines = body.splitlines() if isinstance(body, str) else body
    events: list[StreamEvent] = []
    for line in lines:
        event = decode_event(line)
        if event is not None:
            events.append(event)
    return events


async def iter_upstream_payloads(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Re-frame an upstream SSE line stream into JSON payloads.

    Frames are separated by blank lines and may span several ``data:`` lines.
    Comments (``:``) and ``event:`` lines are ignored; ``data: [DONE]`` ends
    the stream. Non-JSON or non-object frames are skipped.
    """
    data_lines: list[str] = []
    async for raw_line in lines:
        if raw_line is None:
            continue
        line = raw_line.strip("\r")
        if line == "":
            if not data_lines:
                continue
            data_text = "\n".join(data_lines)
            data_lines.clear()
            if data_text == DONE_SENTINEL:
                return
            payload = _load_payload(data_text)
            if payload is not None:
                yield payload
            continue
        if line.startswith(":") or line.startswith("event:"):
            continue
        if line.startswith(DATA_PREFIX):
            data_lines.append(line[len(DATA_PREFIX):].lstrip())
    if data_lines:
        data_text = "\n".join(data_lines)
        if data_text and data_text != DONE_SENTINEL:
            payload = _load_payload(data_text)
            if payload is not None:
                yield payload


def _load_payload(data_text: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(data_text)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def delta_content(payload: dict[str, Any]) -> str | None:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if isinstance(delta, dict):
        content = delta.get("content")
        return content if isinstance(content, str) else None
    if isinstance(delta, str):
        return delta
    return None


def finish_reason(payload: dict[str, Any]) -> str | None:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        reason = choices[0].get("finish_reason")
        return reason if isinstance(reason, str) else None
    return None


class TokenBuffer:
    """Coalesces small fragments before they become ``token`` events.

    A fragment is held back while the pending text is shorter than
    ``min_chars`` and does not end on whitespace or punctuation.
    """

    def __init__(self, min_chars: int = MIN_TOKEN_CHARS):
        self.min_chars = min_chars
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def push(self, fragment: str) -> str | None:
        if not fragment:
            return None
        self._pending += fragment
        if len(self._pending) >= self.min_chars or self._pending[-1] in _BOUNDARY_CHARS:
            return self.flush()
        return None

    def flush(self) -> str | None:
        if not self._pending:
            return None
        text, self._pending = self._pending, ""
        return text
