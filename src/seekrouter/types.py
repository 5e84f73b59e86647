from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

Tier = Literal["fast", "balanced", "heavy", "code"]
TaskKind = Literal["suggestion", "answer", "code"]

TIERS: tuple[Tier, ...] = ("fast", "balanced", "heavy", "code")


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    tier: Tier
    is_free: bool = True


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant"]
    content: str


class ProviderChatResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    status_code: int = 200
    model: str
    content: Optional[str] = None
    finish_reason: Optional[str] = None
    usage_prompt_tokens: Optional[int] = 0
    usage_completion_tokens: Optional[int] = 0


class ProviderStreamChunk(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, int]] = None
    raw: Optional[Dict[str, Any]] = None


class CatalogEntry(BaseModel):
    """One row of the upstream ``GET /models`` listing."""

    model_config = ConfigDict(extra="ignore")

    id: str
    pricing: Dict[str, Any] = Field(default_factory=dict)
    architecture: Dict[str, Any] = Field(default_factory=dict)
    context_length: Optional[int] = None


class SearchResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str
    link: str
    snippet: str = ""
    source: str = ""


class CachedAnswer(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    answer: str
    model: str
    model_human: str = Field(alias="modelHuman")
    tier: str
    latency_ms: int = Field(alias="latencyMs")
    attempts: int
    cached_at: float = Field(default=0.0, alias="cachedAt")
    original_query: str = Field(default="", alias="originalQuery")


class CompletionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    content: str
    model: str
    model_human: str = Field(alias="modelHuman")
    tier: str
    latency_ms: int = Field(alias="latencyMs")
    attempts: int


class SuggestionSet(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    suggestions: List[str]
    model: str
    model_human: str = Field(alias="modelHuman")
    cached_at: float = Field(default=0.0, alias="cachedAt")


class AnswerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    answer: str
    model: str
    model_human: str = Field(alias="modelHuman")
    latency_ms: int = Field(alias="latencyMs")
    tier: str
    attempts: int
    cached: bool
    cached_at: Optional[float] = Field(default=None, alias="cachedAt")


class SuggestionsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    suggestions: List[str]
    model: str
    model_human: str = Field(alias="modelHuman")
    latency_ms: int = Field(alias="latencyMs")
    attempts: int
    cached: bool


class _EventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=(), frozen=True)


class ThinkingEvent(_EventBase):
    type: Literal["thinking"] = "thinking"
    content: str


class ModelSelectedEvent(_EventBase):
    type: Literal["model_selected"] = "model_selected"
    model: str
    model_human: str = Field(alias="modelHuman")
    tier: str
    attempts: int


class TokenEvent(_EventBase):
    type: Literal["token"] = "token"
    content: str


class DoneEvent(_EventBase):
    type: Literal["done"] = "done"
    content: str
    model: str
    model_human: str = Field(alias="modelHuman")
    tier: str
    latency_ms: int = Field(alias="latencyMs")
    attempts: int


class ErrorEvent(_EventBase):
    type: Literal["error"] = "error"
    error: str
    attempts: Optional[int] = None


class CacheHitEvent(_EventBase):
    type: Literal["cache_hit"] = "cache_hit"
    content: str
    model: str
    model_human: str = Field(alias="modelHuman")


StreamEvent = Annotated[
    Union[
        ThinkingEvent,
        ModelSelectedEvent,
        TokenEvent,
        DoneEvent,
        ErrorEvent,
        CacheHitEvent,
    ],
    Field(discriminator="type"),
]

STREAM_EVENT_ADAPTER: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def cached_answer_from_done(event: DoneEvent, *, query: str, now: float) -> CachedAnswer:
    return CachedAnswer(
        answer=event.content,
        model=event.model,
        model_human=event.model_human,
        tier=event.tier,
        latency_ms=event.latency_ms,
        attempts=event.attempts,
        cached_at=now,
        original_query=query,
    )


def cached_answer_from_result(result: CompletionResult, *, query: str, now: float) -> CachedAnswer:
    return CachedAnswer(
        answer=result.content,
        model=result.model,
        model_human=result.model_human,
        tier=result.tier,
        latency_ms=result.latency_ms,
        attempts=result.attempts,
        cached_at=now,
        original_query=query,
    )


def messages_as_dicts(messages: List[ChatMessage]) -> list[dict[str, Any]]:
    return [message.model_dump(mode="json", exclude_none=True) for message in messages]
