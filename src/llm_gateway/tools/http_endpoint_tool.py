import json
from typing import Any

import httpx
from loguru import logger

from llm_gateway.errors import ToolExecutionError
from llm_gateway.models import ToolDefinition
from llm_gateway.tool import ProgressCallback

_TIMEOUT_SECONDS = 60
_MAX_RESPONSE_BYTES = 2_000_000  # 2 MB

_HEADERS = {
    "Accept": "application/json, text/plain;q=0.9, */*;q=0.5",
    "Content-Type": "application/json",
}


class HttpEndpointTool:
    """Executes a tool by POSTing its arguments as JSON to a remote endpoint.

    JSON responses are returned decoded; anything else is returned as text.
    Non-2xx responses raise ``ToolExecutionError`` so the failure is fed back
    to the model as the tool's result.
    """

    def __init__(self, definition: ToolDefinition, client: httpx.AsyncClient | None = None):
        if not definition.endpoint:
            raise ValueError(f"Tool {definition.id!r} has no endpoint")
        self._definition = definition
        self._client = client

    @property
    def name(self) -> str:
        return self._definition.id

    @property
    def description(self) -> str:
        return self._definition.description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._definition.parameters

    async def execute(self, tool_input: dict[str, Any], progress: ProgressCallback) -> Any:
        progress(f"POST {self._definition.endpoint}")
        if self._client is not None:
            response = await self._post(self._client, tool_input)
        else:
            async with httpx.AsyncClient(headers=_HEADERS, timeout=_TIMEOUT_SECONDS) as client:
                response = await self._post(client, tool_input)

        body = response.content[:_MAX_RESPONSE_BYTES]
        if response.status_code >= 400:
            raise ToolExecutionError(
                self._definition.id,
                f"HTTP {response.status_code}: {body.decode('utf-8', errors='replace')[:500]}",
            )

        content_type = response.headers.get("content-type", "")
        text = body.decode(response.encoding or "utf-8", errors="replace")
        if "json" in content_type:
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                logger.warning(f"{self._definition.id}: endpoint returned invalid JSON")
        return text

    async def _post(self, client: httpx.AsyncClient, tool_input: dict[str, Any]) -> httpx.Response:
        try:
            return await client.post(self._definition.endpoint, json=tool_input, headers=_HEADERS)
        except httpx.TimeoutException as ex:
            raise ToolExecutionError(self._definition.id, "Request to tool endpoint timed out") from ex
        except httpx.HTTPError as ex:
            raise ToolExecutionError(self._definition.id, f"Request to tool endpoint failed: {ex}") from ex
