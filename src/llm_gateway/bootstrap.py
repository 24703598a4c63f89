from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import httpx

from llm_gateway.app_config import GatewayConfig, RuntimeEnv
from llm_gateway.logging_config import setup_logging
from llm_gateway.models import ChatOptions, ChatRequest, Message
from llm_gateway.orchestrator import ChatOrchestrator
from llm_gateway.provider import AdapterRegistry
from llm_gateway.throttle import RequestThrottler
from llm_gateway.tool_registry import ToolRegistry, build_registry
from llm_gateway.tool_executor import ToolExecutor
from llm_gateway.transport import TransportPool


@dataclass
class GatewayRuntime:
    config: GatewayConfig
    orchestrator: ChatOrchestrator
    throttler: RequestThrottler
    tools: ToolRegistry
    transports: TransportPool
    http_client: httpx.AsyncClient
    log_descriptions: list[str]

    def build_request(
        self,
        messages: Sequence[Message],
        *,
        model_id: str | None = None,
        options: ChatOptions | None = None,
        stream: bool = True,
    ) -> ChatRequest:
        """Resolve the model and tool set from configuration into a ready request."""
        model = self.config.model(model_id)
        return ChatRequest(
            model=model,
            messages=tuple(messages),
            tools=self.config.tools if model.supports_tools else (),
            system_prompt=self.config.system_prompt,
            options=options or ChatOptions(),
            stream=stream,
        )

    async def aclose(self) -> None:
        await self.transports.aclose()
        await self.http_client.aclose()


def bootstrap_runtime(config: GatewayConfig, env: RuntimeEnv, *, configure_logging: bool = True) -> GatewayRuntime:
    log_descriptions = (
        setup_logging(level=config.log_level, consumers=config.log_consumers) if configure_logging else []
    )

    http_client = httpx.AsyncClient(timeout=config.http_timeout_seconds)
    tools = build_registry(config.tools, http_client=http_client)
    throttler = RequestThrottler(config.throttle)
    transports = TransportPool(env, retry=config.retry, timeout=config.http_timeout_seconds)
    executor = ToolExecutor(
        adapters=AdapterRegistry.default(),
        transports=transports,
        throttler=throttler,
        tools=tools,
    )
    return GatewayRuntime(
        config=config,
        orchestrator=ChatOrchestrator(executor, config.settings),
        throttler=throttler,
        tools=tools,
        transports=transports,
        http_client=http_client,
        log_descriptions=log_descriptions,
    )
