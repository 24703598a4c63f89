"""Turns an adapter's fragment sequence into emitted events and tool-call records."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from loguru import logger

from llm_gateway.app_config import StreamLimits
from llm_gateway.errors import StreamLimitError, StreamParseError
from llm_gateway.events import UnifiedEventEmitter
from llm_gateway.models import Message, TextPart, ThinkingPart
from llm_gateway.providers.base import (
    FinishFragment,
    Fragment,
    GroundingFragment,
    ImageFragment,
    ParseErrorFragment,
    SafetyFragment,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    UsageFragment,
)
from llm_gateway.tool_calls import ToolCallRecord, ToolCallState


@dataclass
class StreamOutcome:
    """What one model response left behind once its stream ended."""

    text: str = ""
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    finish_reason: str = "stop"
    input_tokens: int | None = None
    output_tokens: int | None = None
    thinking: list[ThinkingPart] = field(default_factory=list)
    parse_errors: list[StreamParseError] = field(default_factory=list)

    @property
    def ready_calls(self) -> list[ToolCallRecord]:
        return [c for c in self.tool_calls if c.state == ToolCallState.READY]

    @property
    def wants_tools(self) -> bool:
        return self.finish_reason == "tool_calls" and bool(self.ready_calls)

    def find_call(self, name: str) -> ToolCallRecord | None:
        return next((c for c in self.ready_calls if c.name == name), None)

    def to_message(self, *, include_calls: bool = True) -> Message:
        # Signed reasoning precedes the calls it produced.
        parts: list = [p for p in self.thinking if p.replayable]
        if self.text:
            parts.append(TextPart(self.text))
        if include_calls:
            # Calls without a name cannot be answered, so they never reach history.
            parts.extend(c.to_part() for c in self.tool_calls if c.name)
        return Message("assistant", tuple(parts))


class StreamingHandler:
    """Accumulates one turn's model responses.

    Text, thinking, image, citation and safety fragments are emitted the
    moment they arrive, whatever the response's finish reason turns out to
    be. Tool-call fragments are collected into ``ToolCallRecord`` buffers
    and only surface through ``finish()``.
    """

    def __init__(self, emitter: UnifiedEventEmitter, limits: StreamLimits | None = None) -> None:
        self._emitter = emitter
        self._limits = limits or StreamLimits()
        self._turn_text_chars = 0
        self.begin()

    def begin(self) -> None:
        """Reset per-response state before the next model call."""
        self._text: list[str] = []
        self._calls: list[ToolCallRecord] = []
        self._open_by_index: dict[int, ToolCallRecord] = {}
        self._by_id: dict[str, ToolCallRecord] = {}
        self._finish_reason: str | None = None
        self._thinking: dict[int, dict] = {}
        self._usage = UsageFragment()
        self._parse_errors: list[StreamParseError] = []

    @property
    def turn_text_chars(self) -> int:
        return self._turn_text_chars

    def accumulate(self, fragments: Iterable[Fragment]) -> None:
        for fragment in fragments:
            self._handle(fragment)

    def _handle(self, fragment: Fragment) -> None:
        if isinstance(fragment, TextDelta):
            self._on_text(fragment.text)
        elif isinstance(fragment, ToolCallDelta):
            self._on_tool_call(fragment)
        elif isinstance(fragment, ThinkingDelta):
            self._on_thinking(fragment)
        elif isinstance(fragment, ImageFragment):
            self._emitter.image(fragment.mime_type, fragment.data)
        elif isinstance(fragment, GroundingFragment):
            for citation in fragment.citations:
                self._emitter.citation(citation)
        elif isinstance(fragment, SafetyFragment):
            self._emitter.safety_warning(fragment.category, fragment.detail)
        elif isinstance(fragment, UsageFragment):
            self._usage = UsageFragment(
                fragment.input_tokens if fragment.input_tokens is not None else self._usage.input_tokens,
                fragment.output_tokens if fragment.output_tokens is not None else self._usage.output_tokens,
            )
        elif isinstance(fragment, FinishFragment):
            self._on_finish(fragment.reason)
        elif isinstance(fragment, ParseErrorFragment):
            self._on_parse_error(fragment)
        else:
            logger.warning(f"Ignoring unknown fragment {fragment!r}")

    def _on_text(self, text: str) -> None:
        if not text:
            return
        self._turn_text_chars += len(text)
        if self._turn_text_chars > self._limits.max_text_chars:
            raise StreamLimitError(f"Response text exceeded {self._limits.max_text_chars:,} characters")
        self._text.append(text)
        self._emitter.chunk(text)

    def _on_thinking(self, fragment: ThinkingDelta) -> None:
        if fragment.text:
            self._emitter.thinking(fragment.text)
        if fragment.block is None:
            return
        block = self._thinking.setdefault(fragment.block, {"text": [], "signature": None, "redacted_data": None})
        block["text"].append(fragment.text)
        block["signature"] = fragment.signature or block["signature"]
        block["redacted_data"] = fragment.redacted_data or block["redacted_data"]

    def _on_tool_call(self, delta: ToolCallDelta) -> None:
        if delta.complete:
            self._on_complete_call(delta)
            return

        record = self._open_by_index.get(delta.index)
        if record is None:
            if not (delta.id or delta.name):
                # Server-side tool blocks stream arguments with no call of ours behind them.
                logger.debug(f"Dropping argument fragment at index {delta.index}: no tool call open there")
                return
            if delta.id and delta.id in self._by_id:
                logger.warning(f"Dropping fragment for finished tool call {delta.id}")
                return
            record = self._new_record()
            self._open_by_index[delta.index] = record
        elif not record.is_open:
            logger.warning(f"Dropping late fragment for tool call {record.id or record.index} ({record.state.value})")
            return
        elif delta.id and record.id and delta.id != record.id:
            logger.warning(
                f"Dropping fragment: call id {delta.id} does not match {record.id} at index {delta.index}"
            )
            return

        record.feed(call_id=delta.id, name=delta.name, arguments=delta.arguments, signature=delta.signature)
        if record.id:
            self._by_id.setdefault(record.id, record)
        if record.argument_chars > self._limits.max_tool_argument_chars:
            raise StreamLimitError(
                f"Tool call {record.id or record.index} arguments exceeded "
                f"{self._limits.max_tool_argument_chars:,} characters"
            )

    def _on_complete_call(self, delta: ToolCallDelta) -> None:
        if delta.id and delta.id in self._by_id:
            existing = self._by_id[delta.id]
            if existing.name == (delta.name or existing.name) and existing.raw_arguments == delta.arguments:
                logger.debug(f"Dropping repeated tool call {delta.id}")
            else:
                logger.warning(f"Dropping conflicting repeat of tool call {delta.id}")
            return
        record = self._new_record()
        record.feed(call_id=delta.id, name=delta.name, arguments=delta.arguments, signature=delta.signature)
        if record.argument_chars > self._limits.max_tool_argument_chars:
            raise StreamLimitError(
                f"Tool call {record.id or record.index} arguments exceeded "
                f"{self._limits.max_tool_argument_chars:,} characters"
            )
        record.finalize()
        self._by_id[record.id] = record

    def _new_record(self) -> ToolCallRecord:
        if len(self._calls) >= self._limits.max_tool_calls:
            raise StreamLimitError(f"Response requested more than {self._limits.max_tool_calls} tool calls")
        record = ToolCallRecord(index=len(self._calls))
        self._calls.append(record)
        return record

    def _on_finish(self, reason: str) -> None:
        if self._finish_reason and self._finish_reason != reason:
            logger.debug(f"Finish reason changed from {self._finish_reason} to {reason}")
        self._finish_reason = reason
        if reason == "tool_calls":
            self._finalize_open()

    def _on_parse_error(self, fragment: ParseErrorFragment) -> None:
        record = self._open_by_index.get(fragment.index) if fragment.index is not None else None
        call_id = record.id if record is not None and record.id else None
        self._parse_errors.append(StreamParseError(fragment.message, raw=fragment.raw, call_id=call_id))
        if record is not None and record.is_open:
            record.fail(fragment.message)
            logger.warning(f"Tool call {record.id or record.index} failed: {fragment.message}")
        else:
            logger.warning(f"Skipping malformed stream data: {fragment.message}")

    def _finalize_open(self) -> None:
        for record in self._calls:
            if record.is_open:
                record.finalize()
                if record.id:
                    self._by_id.setdefault(record.id, record)

    def finish(self) -> StreamOutcome:
        """Close the current response: finalize every open call and settle the finish reason."""
        self._finalize_open()
        reason = self._finish_reason
        has_ready = any(c.state == ToolCallState.READY for c in self._calls)
        if reason is None:
            logger.warning("Stream ended without a finish reason")
            reason = "tool_calls" if has_ready else "stop"
        elif reason == "stop" and has_ready:
            # Some vendors report a normal stop even though the response carries calls.
            reason = "tool_calls"
        return StreamOutcome(
            text="".join(self._text),
            tool_calls=list(self._calls),
            finish_reason=reason,
            input_tokens=self._usage.input_tokens,
            output_tokens=self._usage.output_tokens,
            thinking=[
                ThinkingPart("".join(block["text"]), block["signature"], block["redacted_data"])
                for _, block in sorted(self._thinking.items())
            ],
            parse_errors=self._parse_errors + [c.parse_error for c in self._calls if c.parse_error],
        )
