"""Provider-independent event protocol and the per-turn outbound channel."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from llm_gateway.errors import CancellationError, GatewayError
from llm_gateway.models import ChatTurn, TurnStatus
from llm_gateway.providers.base import Citation

CONNECTED = "connected"
SESSION_START = "session.start"
CHUNK = "chunk"
THINKING = "thinking"
IMAGE = "image"
TOOL_CALL_START = "tool.call.start"
TOOL_CALL_PROGRESS = "tool.call.progress"
TOOL_CALL_END = "tool.call.end"
CITATION = "citation"
SAFETY_WARNING = "safety.warning"
SESSION_END = "session.end"
DONE = "done"
ERROR = "error"
CANCELLED = "cancelled"

TERMINAL_EVENTS = frozenset({DONE, ERROR, CANCELLED})

_TERMINAL_STATUS = {DONE: TurnStatus.DONE, ERROR: TurnStatus.ERROR, CANCELLED: TurnStatus.CANCELLED}


@dataclass(frozen=True)
class StreamEvent:
    type: str
    turn_id: str
    seq: int
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "turn_id": self.turn_id, "seq": self.seq, "data": self.data}

    def to_sse(self) -> str:
        payload = json.dumps(self.to_dict(), ensure_ascii=False, default=str)
        return f"event: {self.type}\nid: {self.seq}\ndata: {payload}\n\n"


class EventChannel:
    """Single-producer, single-consumer queue of events for one turn.

    Iteration ends once the channel is closed and drained.
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: StreamEvent) -> None:
        if self._closed:
            raise RuntimeError("event channel is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self

    async def __anext__(self) -> StreamEvent:
        item = await self._queue.get()
        if item is self._CLOSED:
            # Leave the marker for any later reader.
            self._queue.put_nowait(self._CLOSED)
            raise StopAsyncIteration
        return item


class UnifiedEventEmitter:
    """The only writer of a turn's events.

    Sequence numbers come from the turn's counter so they are gapless, and
    the first terminal event closes the channel: anything emitted after it
    is dropped.
    """

    def __init__(self, turn: ChatTurn, channel: EventChannel) -> None:
        self._turn = turn
        self._channel = channel
        self._terminal: StreamEvent | None = None

    @property
    def terminal(self) -> StreamEvent | None:
        return self._terminal

    @property
    def terminated(self) -> bool:
        return self._terminal is not None

    def emit(self, event_type: str, **data: Any) -> StreamEvent | None:
        if self._terminal is not None:
            logger.bind(turn_id=self._turn.id).debug(
                f"Dropping {event_type} after terminal {self._terminal.type}"
            )
            return None
        event = StreamEvent(event_type, self._turn.id, self._turn.next_seq(), data)
        self._channel.put(event)
        if event.is_terminal:
            self._terminal = event
            self._turn.status = _TERMINAL_STATUS[event_type]
            self._channel.close()
        return event

    def connected(self) -> StreamEvent | None:
        return self.emit(CONNECTED)

    def session_start(self) -> StreamEvent | None:
        return self.emit(SESSION_START, turn_id=self._turn.id, model=self._turn.model.id)

    def chunk(self, text: str) -> StreamEvent | None:
        return self.emit(CHUNK, text=text)

    def thinking(self, text: str) -> StreamEvent | None:
        return self.emit(THINKING, text=text)

    def image(self, mime_type: str, data: str) -> StreamEvent | None:
        return self.emit(IMAGE, mime_type=mime_type, data=data)

    def citation(self, citation: Citation) -> StreamEvent | None:
        return self.emit(CITATION, **citation.to_dict())

    def safety_warning(self, category: str, detail: str) -> StreamEvent | None:
        return self.emit(SAFETY_WARNING, category=category, detail=detail)

    def tool_call_start(self, call_id: str, name: str, arguments: dict[str, Any]) -> StreamEvent | None:
        return self.emit(TOOL_CALL_START, call_id=call_id, name=name, arguments=arguments)

    def tool_call_progress(self, call_id: str, name: str, status: str) -> StreamEvent | None:
        return self.emit(TOOL_CALL_PROGRESS, call_id=call_id, name=name, status=status)

    def tool_call_end(
        self,
        call_id: str,
        name: str,
        *,
        result: str | None = None,
        error: str | None = None,
    ) -> StreamEvent | None:
        if error is not None:
            return self.emit(TOOL_CALL_END, call_id=call_id, name=name, is_error=True, error=error)
        return self.emit(TOOL_CALL_END, call_id=call_id, name=name, is_error=False, result=result)

    def session_end(self) -> StreamEvent | None:
        return self.emit(SESSION_END, turn_id=self._turn.id)

    def done(self, finish_reason: str, usage: dict[str, int] | None = None) -> StreamEvent | None:
        if usage is None:
            return self.emit(DONE, finish_reason=finish_reason)
        return self.emit(DONE, finish_reason=finish_reason, usage=usage)

    def error(self, error: GatewayError) -> StreamEvent | None:
        return self.emit(ERROR, **error.to_payload())

    def cancelled(self, reason: str = "cancelled by caller") -> StreamEvent | None:
        return self.emit(CANCELLED, reason=reason, **CancellationError(f"Turn cancelled: {reason}").to_payload())
