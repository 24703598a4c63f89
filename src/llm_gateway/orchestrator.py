"""Turn lifecycle: owns each ChatTurn from request to terminal event."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from typing import Any

from loguru import logger

from llm_gateway import events as ev
from llm_gateway.app_config import GatewaySettings
from llm_gateway.errors import GatewayError, TurnTimeoutError
from llm_gateway.events import EventChannel, StreamEvent, UnifiedEventEmitter
from llm_gateway.models import ChatRequest, ChatTurn, TurnStatus
from llm_gateway.tool_executor import ToolExecutor


@dataclass
class ChatResult:
    turn_id: str
    status: str = TurnStatus.BUILDING.value
    text: str = ""
    thinking: str = ""
    images: list[dict[str, Any]] = field(default_factory=list)
    citations: list[dict[str, Any]] = field(default_factory=list)
    safety: list[dict[str, Any]] = field(default_factory=list)
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict[str, int] | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "status": self.status,
            "text": self.text,
            "thinking": self.thinking,
            "images": self.images,
            "citations": self.citations,
            "safety": self.safety,
            "tool_calls": self.tool_calls,
            "finish_reason": self.finish_reason,
            "usage": self.usage,
            "error": self.error,
        }


class ResponseCollector:
    """Folds a turn's event sequence into one ``ChatResult``."""

    def __init__(self, turn_id: str) -> None:
        self.result = ChatResult(turn_id=turn_id)
        self._calls: dict[str, dict[str, Any]] = {}

    def add(self, event: StreamEvent) -> None:
        data = event.data
        if event.type == ev.CHUNK:
            self.result.text += data["text"]
        elif event.type == ev.THINKING:
            self.result.thinking += data["text"]
        elif event.type == ev.IMAGE:
            self.result.images.append(dict(data))
        elif event.type == ev.CITATION:
            self.result.citations.append(dict(data))
        elif event.type == ev.SAFETY_WARNING:
            self.result.safety.append(dict(data))
        elif event.type == ev.TOOL_CALL_START:
            entry = {"id": data["call_id"], "name": data["name"], "arguments": data["arguments"]}
            self._calls[data["call_id"]] = entry
            self.result.tool_calls.append(entry)
        elif event.type == ev.TOOL_CALL_END:
            entry = self._calls.get(data["call_id"])
            if entry is not None:
                entry["is_error"] = data["is_error"]
                entry["result"] = data["error"] if data["is_error"] else data["result"]
        elif event.type == ev.DONE:
            self.result.status = TurnStatus.DONE.value
            self.result.finish_reason = data["finish_reason"]
            self.result.usage = data.get("usage")
        elif event.type == ev.ERROR:
            self.result.status = TurnStatus.ERROR.value
            self.result.error = dict(data)
        elif event.type == ev.CANCELLED:
            self.result.status = TurnStatus.CANCELLED.value


class TurnHandle:
    def __init__(self, turn: ChatTurn, channel: EventChannel, task: asyncio.Task) -> None:
        self.turn = turn
        self._channel = channel
        self._task = task

    @property
    def id(self) -> str:
        return self.turn.id

    @property
    def done(self) -> bool:
        return self._task.done()

    def events(self) -> AsyncIterator[StreamEvent]:
        return self._channel

    def cancel(self) -> bool:
        return self._task.cancel()

    async def wait(self) -> TurnStatus:
        await asyncio.wait({self._task})
        return self.turn.status


class ChatOrchestrator:
    """Entry point for running chat turns.

    Settings are read once when a turn starts; ``update_settings`` only
    affects turns started afterwards.
    """

    def __init__(self, executor: ToolExecutor, settings: GatewaySettings | None = None) -> None:
        self._executor = executor
        self._settings = settings or GatewaySettings()

    @property
    def settings(self) -> GatewaySettings:
        return self._settings

    def update_settings(self, settings: GatewaySettings) -> None:
        self._settings = settings

    def start_turn(self, request: ChatRequest) -> TurnHandle:
        settings = self._settings
        turn = ChatTurn.from_request(request)
        turn.options = replace(
            turn.options,
            temperature=turn.options.temperature if turn.options.temperature is not None else settings.default_temperature,
            max_tokens=turn.options.max_tokens or settings.default_max_tokens,
        )
        channel = EventChannel()
        emitter = UnifiedEventEmitter(turn, channel)
        emitter.connected()

        task = asyncio.create_task(self._run_turn(turn, emitter, settings, stream=request.stream), name=turn.id)
        task.add_done_callback(lambda t: self._ensure_terminal(t, emitter))
        logger.bind(turn_id=turn.id).info(
            f"Turn started: model={turn.model.id}, messages={len(turn.messages)}, tools={len(turn.tools)}"
        )
        return TurnHandle(turn, channel, task)

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Yield the turn's events as they happen. Closing the iterator cancels the turn."""
        handle = self.start_turn(request)
        try:
            async for event in handle.events():
                yield event
        finally:
            if not handle.done:
                handle.cancel()
                await handle.wait()

    async def complete(self, request: ChatRequest) -> ChatResult:
        """Run the turn against the non-streaming provider call and return the buffered result."""
        handle = self.start_turn(replace(request, stream=False))
        collector = ResponseCollector(handle.id)
        try:
            async for event in handle.events():
                collector.add(event)
        finally:
            if not handle.done:
                handle.cancel()
                await handle.wait()
        return collector.result

    async def _run_turn(
        self,
        turn: ChatTurn,
        emitter: UnifiedEventEmitter,
        settings: GatewaySettings,
        *,
        stream: bool,
    ) -> None:
        log = logger.bind(turn_id=turn.id)
        emitter.session_start()
        try:
            run = self._executor.run(turn, emitter, settings, stream=stream)
            if settings.turn_timeout_seconds:
                try:
                    finish_reason = await asyncio.wait_for(run, settings.turn_timeout_seconds)
                except TimeoutError:
                    raise TurnTimeoutError(settings.turn_timeout_seconds) from None
            else:
                finish_reason = await run
        except asyncio.CancelledError:
            log.info("Turn cancelled")
            emitter.session_end()
            emitter.cancelled()
            raise
        except GatewayError as ex:
            log.warning(f"Turn failed: {ex.code}: {ex.message}")
            emitter.session_end()
            emitter.error(ex)
        except Exception as ex:
            log.exception("Unexpected error during turn")
            emitter.session_end()
            emitter.error(GatewayError(f"Internal error: {ex}"))
        else:
            log.info(
                f"Turn finished: {finish_reason} after {turn.iterations} tool iteration(s), "
                f"tokens in={turn.usage.input_tokens} out={turn.usage.output_tokens}"
            )
            emitter.session_end()
            emitter.done(finish_reason, usage=turn.usage.to_dict())

    @staticmethod
    def _ensure_terminal(task: asyncio.Task, emitter: UnifiedEventEmitter) -> None:
        # A task cancelled before its first step never reaches _run_turn's handlers.
        if emitter.terminated:
            return
        if task.cancelled():
            emitter.cancelled()
        else:
            emitter.error(GatewayError("Turn ended without a terminal event"))
