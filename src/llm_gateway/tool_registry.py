from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Callable

import httpx

from llm_gateway.models import ToolDefinition
from llm_gateway.tool import Tool, normalize_tool_name
from llm_gateway.tools.http_endpoint_tool import HttpEndpointTool


@dataclass(frozen=True)
class ResolvedTool:
    definition: ToolDefinition
    tool: Tool | None


class ToolRegistry:
    """Maps tool ids to implementations.

    The model only ever sees normalized function names, so lookups go
    through the turn's tool definitions to recover the tool id.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool_id: str, tool: Tool) -> None:
        self._tools[tool_id] = tool

    def get(self, tool_id: str) -> Tool | None:
        return self._tools.get(tool_id)

    def __contains__(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def resolve(self, function_name: str, definitions: Iterable[ToolDefinition]) -> ResolvedTool | None:
        normalized = normalize_tool_name(function_name)
        for definition in definitions:
            if definition.builtin:
                continue
            if definition.function_name == normalized or definition.id == function_name:
                return ResolvedTool(definition, self._tools.get(definition.id))
        return None


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[ToolDefinition], bool]
    build: Callable[[ToolDefinition, dict], Tool]


def _has_endpoint(definition: ToolDefinition) -> bool:
    return bool(definition.endpoint) and not definition.builtin


def _http_tool(definition: ToolDefinition, ctx: dict) -> Tool:
    return HttpEndpointTool(definition, client=ctx.get("http_client"))


_GROUPS = [
    ToolGroup(enabled=_has_endpoint, build=_http_tool),
]


def build_registry(
    definitions: Iterable[ToolDefinition],
    *,
    http_client: httpx.AsyncClient | None = None,
) -> ToolRegistry:
    """Create implementations for every configured tool that has one."""
    ctx = {"http_client": http_client}
    registry = ToolRegistry()
    for definition in definitions:
        for group in _GROUPS:
            if group.enabled(definition):
                registry.register(definition.id, group.build(definition, ctx))
                break
    return registry
