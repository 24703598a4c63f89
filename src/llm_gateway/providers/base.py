"""Provider adapter contract and the normalized fragment vocabulary."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal, Union

from loguru import logger

from llm_gateway.models import ChatOptions, Message, ModelConfig, ThinkingPart, ToolCallPart, ToolDefinition

# Reserved tool used to force structured output where the vendor has no native JSON-schema mode.
STRUCTURED_OUTPUT_TOOL = "structured_output"


@dataclass(frozen=True)
class WireRequest:
    provider: str
    operation: str
    url: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    stream: bool = True


@dataclass(frozen=True)
class TextDelta:
    text: str
    kind: ClassVar[str] = "text"


@dataclass(frozen=True)
class ToolCallDelta:
    """A piece of a tool call. ``complete`` marks vendors that send whole calls."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""
    complete: bool = False
    signature: str | None = None
    kind: ClassVar[str] = "tool_call"


@dataclass(frozen=True)
class ImageFragment:
    mime_type: str
    data: str
    kind: ClassVar[str] = "image"


@dataclass(frozen=True)
class ThinkingDelta:
    """Reasoning text. Vendors that sign their reasoning key the pieces by ``block``."""

    text: str
    block: int | None = None
    signature: str | None = None
    redacted_data: str | None = None
    kind: ClassVar[str] = "thinking"


@dataclass(frozen=True)
class Citation:
    source: str
    title: str | None = None
    text: str | None = None
    start: int | None = None
    end: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "span": {"start": self.start, "end": self.end, "text": self.text},
            "source": {"url": self.source, "title": self.title},
        }


@dataclass(frozen=True)
class GroundingFragment:
    citations: tuple[Citation, ...]
    kind: ClassVar[str] = "grounding"


@dataclass(frozen=True)
class SafetyFragment:
    category: str
    detail: str
    kind: ClassVar[str] = "safety"


@dataclass(frozen=True)
class UsageFragment:
    input_tokens: int | None = None
    output_tokens: int | None = None
    kind: ClassVar[str] = "usage"


@dataclass(frozen=True)
class FinishFragment:
    reason: str
    kind: ClassVar[str] = "finish"


@dataclass(frozen=True)
class ParseErrorFragment:
    message: str
    raw: str = ""
    index: int | None = None
    kind: ClassVar[str] = "parse_error"


Fragment = Union[
    TextDelta,
    ToolCallDelta,
    ImageFragment,
    ThinkingDelta,
    GroundingFragment,
    SafetyFragment,
    UsageFragment,
    FinishFragment,
    ParseErrorFragment,
]


@dataclass
class NormalizedResponse:
    text: str = ""
    tool_calls: list[ToolCallPart] = field(default_factory=list)
    images: list[ImageFragment] = field(default_factory=list)
    thinking: str = ""
    thinking_blocks: list[ThinkingPart] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
    safety: list[SafetyFragment] = field(default_factory=list)
    finish_reason: str | None = None
    usage: UsageFragment | None = None

    def fragments(self) -> Iterator[Fragment]:
        """Replay the response through the same vocabulary a stream would use."""
        if self.thinking_blocks:
            for block, part in enumerate(self.thinking_blocks):
                yield ThinkingDelta(part.text, block, part.signature, part.redacted_data)
        elif self.thinking:
            yield ThinkingDelta(self.thinking)
        if self.text:
            yield TextDelta(self.text)
        for image in self.images:
            yield image
        if self.citations:
            yield GroundingFragment(tuple(self.citations))
        yield from self.safety
        for index, call in enumerate(self.tool_calls):
            yield ToolCallDelta(
                index=index,
                id=call.id,
                name=call.name,
                arguments=json.dumps(call.arguments),
                complete=True,
                signature=call.signature,
            )
        if self.usage is not None:
            yield self.usage
        if self.finish_reason:
            yield FinishFragment(self.finish_reason)

    @classmethod
    def collect(cls, fragments: Sequence[Fragment]) -> NormalizedResponse:
        """Fold a fragment sequence (all from one response) into a response object."""
        response = cls()
        calls: dict[int, dict[str, Any]] = {}
        blocks: dict[int, dict[str, Any]] = {}
        for fragment in fragments:
            if isinstance(fragment, TextDelta):
                response.text += fragment.text
            elif isinstance(fragment, ThinkingDelta):
                response.thinking += fragment.text
                if fragment.block is not None:
                    acc = blocks.setdefault(fragment.block, {"text": "", "signature": None, "redacted_data": None})
                    acc["text"] += fragment.text
                    acc["signature"] = fragment.signature or acc["signature"]
                    acc["redacted_data"] = fragment.redacted_data or acc["redacted_data"]
            elif isinstance(fragment, ImageFragment):
                response.images.append(fragment)
            elif isinstance(fragment, GroundingFragment):
                response.citations.extend(fragment.citations)
            elif isinstance(fragment, SafetyFragment):
                response.safety.append(fragment)
            elif isinstance(fragment, UsageFragment):
                response.usage = fragment
            elif isinstance(fragment, FinishFragment):
                response.finish_reason = fragment.reason
            elif isinstance(fragment, ToolCallDelta):
                acc = calls.setdefault(fragment.index, {"id": "", "name": "", "parts": [], "signature": None})
                acc["id"] = fragment.id or acc["id"]
                acc["name"] = fragment.name or acc["name"]
                acc["signature"] = fragment.signature or acc["signature"]
                acc["parts"].append(fragment.arguments)
            elif isinstance(fragment, ParseErrorFragment):
                logger.warning(f"Dropping unparseable response part: {fragment.message}")
        response.thinking_blocks = [ThinkingPart(**blocks[block]) for block in sorted(blocks)]
        for index in sorted(calls):
            acc = calls[index]
            raw = "".join(acc["parts"])
            try:
                arguments = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse tool call arguments: {raw[:200]}")
                arguments = {}
            response.tool_calls.append(
                ToolCallPart(acc["id"] or f"call_{index}", acc["name"], arguments, acc["signature"])
            )
        return response


class ProviderAdapter(ABC):
    """Stateless translation between the normalized chat model and one vendor.

    Instances are shared across turns and must not hold per-turn state.
    """

    provider: ClassVar[str]
    default_base_url: ClassVar[str] = ""

    @abstractmethod
    def create_request(
        self,
        model: ModelConfig,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
        options: ChatOptions,
        *,
        system_prompt: str = "",
        stream: bool = True,
    ) -> WireRequest:
        """Map the message history and tool set into the vendor's request shape."""
        raise NotImplementedError

    @abstractmethod
    def parse_stream_chunk(self, raw: str | dict[str, Any]) -> list[Fragment]:
        """Normalize one raw stream chunk into zero or more fragments."""
        raise NotImplementedError

    @abstractmethod
    def parse_response(self, raw: dict[str, Any]) -> NormalizedResponse:
        """Normalize a complete (non-streaming) response."""
        raise NotImplementedError

    def base_url(self, model: ModelConfig) -> str:
        return (model.url or self.default_base_url).rstrip("/")

    @staticmethod
    def load_chunk(raw: str | dict[str, Any]) -> dict[str, Any] | ParseErrorFragment | None:
        """Decode a raw SSE payload. ``None`` means "nothing to parse"."""
        if isinstance(raw, dict):
            return raw
        data = raw.strip()
        if not data or data == "[DONE]":
            return None
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as ex:
            logger.warning(f"Malformed stream chunk ({ex.msg}): {data[:200]}")
            return ParseErrorFragment(f"Malformed stream chunk: {ex.msg}", raw=data[:500])
        if not isinstance(parsed, dict):
            return ParseErrorFragment("Stream chunk is not a JSON object", raw=data[:500])
        return parsed
