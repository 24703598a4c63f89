import asyncio
from collections.abc import Sequence
from typing import Any

from llm_gateway.app_config import GatewaySettings
from llm_gateway.models import ChatOptions, ChatRequest, Message, ModelConfig, ToolDefinition
from llm_gateway.orchestrator import ChatOrchestrator
from llm_gateway.provider import AdapterRegistry
from llm_gateway.providers.base import NormalizedResponse, ProviderAdapter, WireRequest
from llm_gateway.throttle import RequestThrottler, ThrottleConfig
from llm_gateway.tool_executor import ToolExecutor
from llm_gateway.tool_registry import ToolRegistry

FAKE_MODEL = ModelConfig(id="modelA", provider="fake", model_id="fake-1")
OPENAI_MODEL = ModelConfig(id="gpt", provider="openai", model_id="gpt-4o")


class FragmentAdapter(ProviderAdapter):
    """Treats every raw chunk as an already-normalized list of fragments."""

    provider = "fake"

    def create_request(self, model, messages, tools, options, *, system_prompt="", stream=True) -> WireRequest:
        return WireRequest(
            provider=self.provider,
            operation="fake",
            url="fake://model",
            body={"messages": list(messages), "tools": list(tools)},
            stream=stream,
        )

    def parse_stream_chunk(self, raw):
        return list(raw) if isinstance(raw, (list, tuple)) else [raw]

    def parse_response(self, raw):
        return NormalizedResponse.collect(raw)


class FakeTransport:
    """Replays scripted responses; the last one repeats once the script runs out.

    A response is a list of raw chunks when streamed, or the raw body for
    ``send``. An exception instance in place of a response is raised.
    """

    def __init__(self, *responses: Any, gate: asyncio.Event | None = None, delay: float = 0.0):
        self._responses = list(responses)
        self._gate = gate
        self._delay = delay
        self.requests: list[WireRequest] = []
        self.active = 0
        self.max_active = 0
        self.closed_streams = 0

    def _next(self) -> Any:
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    async def stream(self, request: WireRequest):
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            chunks = self._next()
            if self._gate is not None:
                await self._gate.wait()
            for chunk in chunks:
                if self._delay:
                    await asyncio.sleep(self._delay)
                yield chunk
        finally:
            self.active -= 1
            self.closed_streams += 1

    async def send(self, request: WireRequest) -> Any:
        self.requests.append(request)
        return self._next()

    async def aclose(self) -> None:
        return None


class FakeTransportSource:
    def __init__(self, transport: FakeTransport):
        self.transport = transport

    def for_model(self, model):
        return self.transport


def make_orchestrator(
    transport: FakeTransport,
    *,
    adapters: AdapterRegistry | None = None,
    tools: ToolRegistry | None = None,
    throttle: ThrottleConfig | None = None,
    settings: GatewaySettings | None = None,
) -> tuple[ChatOrchestrator, RequestThrottler]:
    throttler = RequestThrottler(throttle)
    executor = ToolExecutor(
        adapters=adapters or AdapterRegistry({"fake": FragmentAdapter()}),
        transports=FakeTransportSource(transport),
        throttler=throttler,
        tools=tools or ToolRegistry(),
    )
    return ChatOrchestrator(executor, settings or GatewaySettings()), throttler


def make_request(
    text: str = "hi",
    *,
    model: ModelConfig = FAKE_MODEL,
    tools: Sequence[ToolDefinition] = (),
    options: ChatOptions | None = None,
    stream: bool = True,
) -> ChatRequest:
    return ChatRequest(
        model=model,
        messages=(Message.user(text),),
        tools=tuple(tools),
        options=options or ChatOptions(),
        stream=stream,
    )


async def collect(orchestrator: ChatOrchestrator, request: ChatRequest) -> list:
    return [event async for event in orchestrator.stream(request)]


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def openai_text_chunks(*parts: str, finish: str = "stop") -> list[dict]:
    chunks = [{"choices": [{"index": 0, "delta": {"content": p}}]} for p in parts]
    chunks.append({"choices": [{"index": 0, "delta": {}, "finish_reason": finish}]})
    return chunks


def openai_tool_chunks(call_id: str, name: str, *argument_parts: str) -> list[dict]:
    chunks = [
        {
            "choices": [
                {
                    "index": 0,
                    "delta": {
                        "tool_calls": [
                            {"index": 0, "id": call_id, "type": "function", "function": {"name": name, "arguments": ""}}
                        ]
                    },
                }
            ]
        }
    ]
    for part in argument_parts:
        chunks.append(
            {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": part}}]}}]}
        )
    chunks.append({"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]})
    return chunks
