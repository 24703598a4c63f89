"""Per-call accumulator for streamed tool-call arguments."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from llm_gateway.errors import StreamParseError
from llm_gateway.models import ToolCallPart


class ToolCallState(str, Enum):
    ACCUMULATING = "accumulating"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ToolCallRecord:
    index: int
    id: str = ""
    name: str = ""
    state: ToolCallState = ToolCallState.ACCUMULATING
    arguments: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    signature: str | None = None
    parse_error: StreamParseError | None = None
    _buffer: list[str] = field(default_factory=list)
    _size: int = 0

    @property
    def raw_arguments(self) -> str:
        return "".join(self._buffer)

    @property
    def argument_chars(self) -> int:
        return self._size

    @property
    def is_open(self) -> bool:
        return self.state == ToolCallState.ACCUMULATING

    def feed(
        self,
        *,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str = "",
        signature: str | None = None,
    ) -> None:
        if not self.is_open:
            raise ValueError(f"tool call {self.id or self.index} is already {self.state.value}")
        if call_id and not self.id:
            self.id = call_id
        if name and not self.name:
            self.name = name
        if signature:
            self.signature = signature
        if arguments:
            self._buffer.append(arguments)
            self._size += len(arguments)

    def finalize(self) -> ToolCallState:
        """Parse the buffered arguments: ``ready`` on success, ``failed`` otherwise.

        A broken buffer fails only this call; the rest of the turn carries on.
        """
        if not self.is_open:
            return self.state
        if not self.id:
            self.id = f"call_{self.index}"
        if not self.name:
            return self.fail("Tool call is missing a function name")
        raw = self.raw_arguments
        try:
            parsed = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as ex:
            logger.warning(f"Tool call {self.id} ({self.name}): invalid argument JSON: {raw[:200]}")
            self.parse_error = StreamParseError(f"Invalid JSON in tool arguments: {ex.msg}", raw=raw, call_id=self.id)
            return self.fail(self.parse_error.message)
        if not isinstance(parsed, dict):
            return self.fail("Tool arguments must be a JSON object")
        self.arguments = parsed
        self.state = ToolCallState.READY
        return self.state

    def fail(self, error: str) -> ToolCallState:
        self.error = error
        self.state = ToolCallState.FAILED
        return self.state

    def start(self) -> None:
        if self.state != ToolCallState.READY:
            raise ValueError(f"tool call {self.id} cannot start from {self.state.value}")
        self.state = ToolCallState.EXECUTING

    def complete(self, error: str | None = None) -> None:
        if error is None:
            self.state = ToolCallState.COMPLETED
        else:
            self.fail(error)

    def to_part(self) -> ToolCallPart:
        return ToolCallPart(self.id, self.name, self.arguments, self.signature)
