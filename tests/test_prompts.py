import pytest

from src.seekrouter.prompts import (
    ANSWER_SYSTEM_PROMPT,
    CODE_SYSTEM_PROMPT,
    build_answer_messages,
    build_suggestion_messages,
    classify_task,
    fallback_suggestions,
    format_context,
    parse_suggestions,
)
from src.seekrouter.types import SearchResult


@pytest.mark.parametrize(
    ("query", "task"),
    [
        ("how to reverse a list in python", "code"),
        ("fix this traceback", "code"),
        ("what does map() return", "code"),
        ("history of the roman empire", "answer"),
        ("best hiking trails near denver", "answer"),
    ],
)
def test_classify_task(query: str, task: str) -> None:
    assert classify_task(query) == task


def test_parse_suggestions_extracts_first_array() -> None:
    content = 'Sure! Here you go:\n["rust ownership", " rust borrow checker ", ""]\nand ["ignored"]'
    assert parse_suggestions(content) == ["rust ownership", "rust borrow checker"]


@pytest.mark.parametrize(
    "content",
    [None, "", "no array here", "[1, 2, 3]", '["unterminated', "[]", '["   "]'],
)
def test_parse_suggestions_rejects_unusable_output(content) -> None:
    assert parse_suggestions(content) is None


def test_fallback_suggestions_mention_query() -> None:
    suggestions = fallback_suggestions("kubernetes")
    assert len(suggestions) == 5
    assert all("kubernetes" in item for item in suggestions)


def test_answer_messages_include_grounding() -> None:
    results = [
        SearchResult(title=f"Title {i}", link=f"https://example.org/{i}", snippet=f"snippet\n{i}")
        for i in range(7)
    ]
    messages = build_answer_messages("what is rust", results, "answer")

    assert [m.role for m in messages] == ["system", "user"]
    assert messages[0].content == ANSWER_SYSTEM_PROMPT
    assert "[1] Title 0" in messages[1].content
    assert "[5] Title 4" in messages[1].content
    assert "[6]" not in messages[1].content
    assert messages[1].content.endswith('Respond to: "what is rust"')


def test_code_messages_use_code_prompt_without_context() -> None:
    messages = build_answer_messages("python decorators", task="code")
    assert messages[0].content == CODE_SYSTEM_PROMPT
    assert messages[1].content == 'Respond to: "python decorators"'


def test_format_context_collapses_whitespace() -> None:
    result = SearchResult(title="T", link="https://x", snippet="a\n  b")
    assert format_context([result]) == "[1] T — a b (https://x)"


def test_suggestion_prompt_requests_json_array() -> None:
    (message,) = build_suggestion_messages("rust")
    assert message.role == "user"
    assert "JSON array" in message.content
