from __future__ import annotations

import asyncio
import json
from contextlib import aclosing, nullcontext
from typing import Protocol

from loguru import logger

from llm_gateway.app_config import GatewaySettings
from llm_gateway.errors import ToolExecutionError, ToolLoopExceededError, ToolTimeoutError
from llm_gateway.events import UnifiedEventEmitter
from llm_gateway.models import ChatTurn, Message, TextPart, ToolResultPart, TurnStatus, dump_tool_result
from llm_gateway.provider import AdapterRegistry
from llm_gateway.providers.base import STRUCTURED_OUTPUT_TOOL, ProviderAdapter
from llm_gateway.streaming import StreamingHandler, StreamOutcome
from llm_gateway.throttle import RequestThrottler, model_key, tool_key
from llm_gateway.tool import ProgressCallback, Tool
from llm_gateway.tool_calls import ToolCallRecord, ToolCallState
from llm_gateway.tool_registry import ToolRegistry
from llm_gateway.transport import ProviderTransport

PASSTHROUGH_COMPLETE = "tool_passthrough_complete"


class TransportSource(Protocol):
    def for_model(self, model) -> ProviderTransport: ...


class ToolExecutor:
    """Drives one turn through Sending -> Streaming -> ExecutingTools until it finishes.

    Every provider call holds a permit on the model's throttle key for the
    whole response; every tool holds one on its own key while it runs.
    Passthrough tools stream their output straight to the caller and end
    the turn without another model call.
    """

    def __init__(
        self,
        *,
        adapters: AdapterRegistry,
        transports: TransportSource,
        throttler: RequestThrottler,
        tools: ToolRegistry,
    ) -> None:
        self._adapters = adapters
        self._transports = transports
        self._throttler = throttler
        self._tools = tools

    async def run(
        self,
        turn: ChatTurn,
        emitter: UnifiedEventEmitter,
        settings: GatewaySettings,
        *,
        stream: bool = True,
    ) -> str:
        """Run the turn to completion and return the final finish reason."""
        log = logger.bind(turn_id=turn.id)
        adapter = self._adapters.for_model(turn.model)
        transport = self._transports.for_model(turn.model)
        handler = StreamingHandler(emitter, settings.stream_limits)

        while True:
            outcome = await self._call_model(turn, adapter, transport, handler, settings, stream=stream)
            turn.usage.add(outcome.input_tokens, outcome.output_tokens)
            log.debug(
                f"Model response: finish={outcome.finish_reason}, text={len(outcome.text)} chars, "
                f"calls={len(outcome.tool_calls)}, usage=({outcome.input_tokens}, {outcome.output_tokens})"
            )
            for error in outcome.parse_errors:
                log.warning(f"Stream parse error ({error.call_id or 'no call'}): {error.message}")

            structured = outcome.find_call(STRUCTURED_OUTPUT_TOOL)
            if structured is not None:
                text = json.dumps(structured.arguments, ensure_ascii=False)
                emitter.chunk(text)
                turn.append(Message("assistant", (TextPart(text),)))
                return "stop"

            if not outcome.wants_tools:
                turn.append(outcome.to_message(include_calls=False))
                return outcome.finish_reason

            if turn.iterations >= settings.max_tool_iterations:
                log.warning(f"Tool loop hit {settings.max_tool_iterations} iterations")
                raise ToolLoopExceededError(settings.max_tool_iterations)
            turn.iterations += 1

            turn.append(outcome.to_message())
            turn.status = TurnStatus.AWAITING_TOOLS
            calls = [c for c in outcome.tool_calls if c.name]
            results = await self.execute_tools(turn, calls, emitter, settings)
            turn.append(Message("tool", tuple(results)))

            passthrough = [r for r in results if self._is_passthrough(r.name, turn)]
            if passthrough:
                turn.append(Message("assistant", (TextPart("".join(r.content for r in passthrough)),)))
                log.info(f"Passthrough tool answered directly: {', '.join(r.name for r in passthrough)}")
                return PASSTHROUGH_COMPLETE

    async def _call_model(
        self,
        turn: ChatTurn,
        adapter: ProviderAdapter,
        transport: ProviderTransport,
        handler: StreamingHandler,
        settings: GatewaySettings,
        *,
        stream: bool,
    ) -> StreamOutcome:
        turn.status = TurnStatus.BUILDING
        request = adapter.create_request(
            turn.model,
            turn.messages,
            turn.tools,
            turn.options,
            system_prompt=turn.system_prompt,
            stream=stream,
        )
        handler.begin()
        async with self._throttler.permit(model_key(turn.model.id), settings.throttle_acquire_timeout_seconds):
            turn.status = TurnStatus.STREAMING
            if stream:
                async with aclosing(transport.stream(request)) as chunks:
                    async for raw in chunks:
                        handler.accumulate(adapter.parse_stream_chunk(raw))
            else:
                raw = await transport.send(request)
                handler.accumulate(adapter.parse_response(raw).fragments())
        return handler.finish()

    async def execute_tools(
        self,
        turn: ChatTurn,
        calls: list[ToolCallRecord],
        emitter: UnifiedEventEmitter,
        settings: GatewaySettings,
    ) -> list[ToolResultPart]:
        # Passthrough tools write to the caller's text stream one at a time.
        output_lock = asyncio.Lock()
        tasks = [
            asyncio.ensure_future(self._run_one(turn, call, emitter, settings, output_lock)) for call in calls
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except Exception:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_one(
        self,
        turn: ChatTurn,
        call: ToolCallRecord,
        emitter: UnifiedEventEmitter,
        settings: GatewaySettings,
        output_lock: asyncio.Lock,
    ) -> ToolResultPart:
        emitter.tool_call_start(call.id, call.name, call.arguments)

        resolved = self._tools.resolve(call.name, turn.tools)
        passthrough = resolved is not None and resolved.definition.passthrough

        if call.state == ToolCallState.FAILED:
            return self._failed(call, emitter, call.error or "Invalid tool call", passthrough=passthrough)

        if resolved is None or resolved.tool is None:
            return self._failed(call, emitter, f'Error: unknown tool "{call.name}"', passthrough=passthrough)

        definition, tool = resolved.definition, resolved.tool
        timeout = definition.timeout_seconds or settings.tool_timeout_seconds
        call.start()

        def progress(status: str) -> None:
            emitter.tool_call_progress(call.id, call.name, status)

        async with self._throttler.permit(tool_key(definition.id), settings.throttle_acquire_timeout_seconds):
            try:
                if passthrough:
                    async with output_lock:
                        content = await self._with_timeout(
                            self._stream_output(tool, call, progress, emitter), definition.id, timeout
                        )
                else:
                    result = await self._with_timeout(tool.execute(call.arguments, progress), definition.id, timeout)
                    content = self._truncate_tool_result(
                        dump_tool_result(result), call.name, settings.max_tool_result_chars
                    )
            except ToolExecutionError as ex:
                return self._failed(call, emitter, ex.message, passthrough=passthrough)
            except Exception as ex:
                logger.bind(turn_id=turn.id).opt(exception=ex).debug(f"{call.name} raised")
                return self._failed(call, emitter, f'Error executing tool "{call.name}": {ex}', passthrough=passthrough)

        call.complete()
        emitter.tool_call_end(call.id, call.name, result=content)
        return ToolResultPart(call.id, call.name, content)

    @staticmethod
    async def _with_timeout(awaitable, tool_id: str, timeout: float):
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except TimeoutError:
            raise ToolTimeoutError(tool_id, timeout) from None

    @staticmethod
    async def _stream_output(
        tool: Tool,
        call: ToolCallRecord,
        progress: ProgressCallback,
        emitter: UnifiedEventEmitter,
    ) -> str:
        """Forward a passthrough tool's output to the caller as ``chunk`` events and return it whole."""
        result = await tool.execute(call.arguments, progress)
        if not hasattr(result, "__aiter__"):
            if isinstance(result, dict) and isinstance(result.get("answer"), str):
                text = result["answer"]
            else:
                text = dump_tool_result(result)
            if text:
                emitter.chunk(text)
            return text

        pieces: list[str] = []
        async with (aclosing(result) if hasattr(result, "aclose") else nullcontext(result)) as output:
            async for piece in output:
                text = piece if isinstance(piece, str) else dump_tool_result(piece)
                if text:
                    emitter.chunk(text)
                    pieces.append(text)
        return "".join(pieces)

    def _is_passthrough(self, function_name: str, turn: ChatTurn) -> bool:
        resolved = self._tools.resolve(function_name, turn.tools)
        return resolved is not None and resolved.definition.passthrough

    def _failed(
        self,
        call: ToolCallRecord,
        emitter: UnifiedEventEmitter,
        error: str,
        *,
        passthrough: bool = False,
    ) -> ToolResultPart:
        logger.warning(f"Tool call {call.id} ({call.name}) failed: {error}")
        call.complete(error)
        emitter.tool_call_end(call.id, call.name, error=error)
        if passthrough:
            message = f"I encountered an error while processing your request: Passthrough tool execution failed: {error}"
            emitter.chunk(message)
            return ToolResultPart(call.id, call.name, message, is_error=True)
        return ToolResultPart(call.id, call.name, error, is_error=True)

    @staticmethod
    def _truncate_tool_result(result: str, tool_name: str, max_chars: int) -> str:
        if max_chars <= 0 or len(result) <= max_chars:
            return result

        original_length = len(result)
        truncated = result[:max_chars]
        message = f"\n\n[OUTPUT TRUNCATED: Showing {max_chars:,} of {original_length:,} characters from {tool_name}]"
        logger.warning(f"{tool_name} output truncated from {original_length:,} to {max_chars:,} chars")
        return truncated + message
