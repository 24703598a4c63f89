from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union
from uuid import uuid4

Role = Literal["user", "assistant", "tool"]


@dataclass(frozen=True)
class TextPart:
    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ImagePart:
    mime_type: str
    data: str  # base64
    type: Literal["image"] = "image"


@dataclass(frozen=True)
class ToolCallPart:
    id: str
    name: str
    arguments: dict[str, Any]
    signature: str | None = None  # opaque reasoning token some vendors require back
    type: Literal["tool_call"] = "tool_call"


@dataclass(frozen=True)
class ToolResultPart:
    tool_call_id: str
    name: str
    content: str
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"


@dataclass(frozen=True)
class ThinkingPart:
    """A reasoning block kept in history so it can be replayed to the vendor that produced it."""

    text: str = ""
    signature: str | None = None
    redacted_data: str | None = None
    type: Literal["thinking"] = "thinking"

    @property
    def replayable(self) -> bool:
        return bool(self.signature or self.redacted_data)


ContentPart = Union[TextPart, ImagePart, ToolCallPart, ToolResultPart, ThinkingPart]


@dataclass(frozen=True)
class Message:
    role: Role
    content: tuple[ContentPart, ...]

    @classmethod
    def user(cls, text: str, *images: ImagePart) -> Message:
        return cls("user", (TextPart(text), *images))

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls("assistant", (TextPart(text),))

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.content if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.content if isinstance(p, ToolResultPart)]

    @property
    def images(self) -> list[ImagePart]:
        return [p for p in self.content if isinstance(p, ImagePart)]

    @property
    def thinking(self) -> list[ThinkingPart]:
        return [p for p in self.content if isinstance(p, ThinkingPart)]


@dataclass(frozen=True)
class ModelConfig:
    id: str
    provider: str
    model_id: str = ""
    url: str | None = None
    api_key_env: str | None = None
    max_output_tokens: int | None = None
    supports_temperature: bool | None = None
    supports_tools: bool = True
    thinking_enabled: bool = False
    thinking_budget: int = 0
    concurrency: int | None = None

    @property
    def vendor_model(self) -> str:
        return self.model_id or self.id


@dataclass(frozen=True)
class ToolDefinition:
    id: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    name: str = ""
    timeout_seconds: float | None = None
    concurrency: int | None = None
    builtin: bool = False
    endpoint: str | None = None
    passthrough: bool = False

    @property
    def function_name(self) -> str:
        from llm_gateway.tool import normalize_tool_name

        return normalize_tool_name(self.name or self.id)


@dataclass(frozen=True)
class ChatOptions:
    temperature: float | None = None
    max_tokens: int | None = None
    response_schema: dict[str, Any] | None = None
    response_format: Literal["text", "json"] = "text"
    tool_choice: Literal["auto", "required", "none"] | None = None


@dataclass(frozen=True)
class ChatRequest:
    """A fully resolved request: everything the core needs for one turn."""

    model: ModelConfig
    messages: tuple[Message, ...]
    tools: tuple[ToolDefinition, ...] = ()
    system_prompt: str = ""
    options: ChatOptions = field(default_factory=ChatOptions)
    stream: bool = True
    turn_id: str | None = None


class TurnStatus(str, Enum):
    BUILDING = "building"
    STREAMING = "streaming"
    AWAITING_TOOLS = "awaiting-tools"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnStatus.DONE, TurnStatus.ERROR, TurnStatus.CANCELLED)


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    requests: int = 0

    def add(self, input_tokens: int | None, output_tokens: int | None) -> None:
        self.input_tokens += input_tokens or 0
        self.output_tokens += output_tokens or 0
        self.requests += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.input_tokens + self.output_tokens,
            "requests": self.requests,
        }


@dataclass
class ChatTurn:
    model: ModelConfig
    tools: tuple[ToolDefinition, ...]
    messages: list[Message]
    system_prompt: str = ""
    options: ChatOptions = field(default_factory=ChatOptions)
    id: str = field(default_factory=lambda: f"turn_{uuid4().hex[:12]}")
    status: TurnStatus = TurnStatus.BUILDING
    iterations: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    _seq: int = 0

    @classmethod
    def from_request(cls, request: ChatRequest) -> ChatTurn:
        turn = cls(
            model=request.model,
            tools=request.tools,
            messages=list(request.messages),
            system_prompt=request.system_prompt,
            options=request.options,
        )
        if request.turn_id:
            turn.id = request.turn_id
        return turn

    def next_seq(self) -> int:
        self._seq += 1
        return self._seq

    @property
    def last_seq(self) -> int:
        return self._seq

    def append(self, message: Message) -> None:
        self.messages.append(message)


def dump_tool_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)
