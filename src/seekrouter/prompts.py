"""Prompt construction and post-processing for the AI endpoints."""

import json
import re
from typing import List, Sequence

from pydantic import TypeAdapter, ValidationError

from .types import ChatMessage, SearchResult, TaskKind

ANSWER_SYSTEM_PROMPT = (
    "You are SeekEngine AI. Provide a professional, concise markdown summary. "
    "Use headers and bold text for clarity."
)
CODE_SYSTEM_PROMPT = (
    "You are SeekEngine AI, a programming assistant. Answer with a short explanation "
    "followed by a minimal, correct code example in a fenced markdown block."
)
CONTEXT_PREAMBLE = "Use the following web results as grounding. Cite them as [n] where relevant."
FALLBACK_ANSWER = "AI summary unavailable."
MAX_CONTEXT_RESULTS = 5

_CODE_HINTS = re.compile(
    r"```|\b(code|function|snippet|regex|compile|syntax|stack ?trace|traceback|exception|bug|debug"
    r"|python|javascript|typescript|java|golang|rust|c\+\+|c#|sql|bash|api|npm|pip)\b"
    r"|\b\w+\(\)|=>|::",
    re.IGNORECASE,
)
_JSON_ARRAY = re.compile(r"\[[\s\S]*?\]")
_SUGGESTIONS_ADAPTER = TypeAdapter(List[str])


def classify_task(query: str) -> TaskKind:
    if _CODE_HINTS.search(query):
        return "code"
    return "answer"


def format_context(results: Sequence[SearchResult], limit: int = MAX_CONTEXT_RESULTS) -> str:
    lines = []
    for index, result in enumerate(results[:limit], start=1):
        snippet = " ".join(result.snippet.split())
        lines.append(f"[{index}] {result.title} — {snippet} ({result.link})")
    return "\n".join(lines)


def build_answer_messages(
    query: str,
    context: Sequence[SearchResult] = (),
    task: TaskKind = "answer",
) -> list[ChatMessage]:
    system = CODE_SYSTEM_PROMPT if task == "code" else ANSWER_SYSTEM_PROMPT
    user_content = f'Respond to: "{query}"'
    grounding = format_context(context)
    if grounding:
        user_content = f"{CONTEXT_PREAMBLE}\n{grounding}\n\n{user_content}"
    return [
        ChatMessage(role="system", content=system),
        ChatMessage(role="user", content=user_content),
    ]


def build_suggestion_messages(query: str) -> list[ChatMessage]:
    return [
        ChatMessage(
            role="user",
            content=(
                f'Generate 5-7 concise search query suggestions for: "{query}". '
                "Return ONLY a JSON array of strings."
            ),
        )
    ]


def fallback_suggestions(query: str) -> list[str]:
    return [
        f"{query} meaning",
        f"what is {query}",
        f"how to use {query}",
        f"{query} examples",
        f"{query} latest news",
    ]


def parse_suggestions(content: str | None) -> list[str] | None:
    """Extract the first JSON string array from model output.

    Returns ``None`` when the output holds no usable array.
    """
    if not content:
        return None
    match = _JSON_ARRAY.search(content)
    if match is None:
        return None
    try:
        suggestions = _SUGGESTIONS_ADAPTER.validate_python(json.loads(match.group(0)))
    except (json.JSONDecodeError, ValidationError):
        return None
    cleaned = [item.strip() for item in suggestions if item.strip()]
    return cleaned or None
