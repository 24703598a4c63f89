import asyncio
import json
import unittest

import httpx

from llm_gateway.errors import ToolExecutionError
from llm_gateway.models import ToolDefinition
from llm_gateway.tools.http_endpoint_tool import HttpEndpointTool

_DEFINITION = ToolDefinition(id="lookup", description="Look up a record", endpoint="http://tools.local/lookup")


def _run(handler, tool_input: dict, progress=None):
    updates: list[str] = []

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            tool = HttpEndpointTool(_DEFINITION, client=client)
            return await tool.execute(tool_input, progress or updates.append)

    return asyncio.run(scenario()), updates


class HttpEndpointToolTests(unittest.TestCase):
    def test_posts_arguments_and_decodes_json(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": 7, "name": "Ada"})

        result, updates = _run(handler, {"id": 7})

        self.assertEqual({"id": 7, "name": "Ada"}, result)
        self.assertEqual("POST", seen[0].method)
        self.assertEqual({"id": 7}, json.loads(seen[0].content))
        self.assertEqual(["POST http://tools.local/lookup"], updates)

    def test_plain_text_response(self) -> None:
        result, _ = _run(lambda request: httpx.Response(200, text="no record"), {})
        self.assertEqual("no record", result)

    def test_invalid_json_falls_back_to_text(self) -> None:
        handler = lambda request: httpx.Response(200, headers={"content-type": "application/json"}, content=b"{oops")
        result, _ = _run(handler, {})
        self.assertEqual("{oops", result)

    def test_error_status_raises(self) -> None:
        with self.assertRaises(ToolExecutionError) as ctx:
            _run(lambda request: httpx.Response(500, text="database down"), {})
        self.assertEqual("lookup", ctx.exception.tool_id)
        self.assertEqual("HTTP 500: database down", ctx.exception.message)

    def test_connection_failure_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(ToolExecutionError) as ctx:
            _run(handler, {})
        self.assertIn("Request to tool endpoint failed", ctx.exception.message)

    def test_definition_without_endpoint(self) -> None:
        with self.assertRaises(ValueError):
            HttpEndpointTool(ToolDefinition(id="local"))

    def test_exposes_definition(self) -> None:
        tool = HttpEndpointTool(_DEFINITION)
        self.assertEqual("lookup", tool.name)
        self.assertEqual("Look up a record", tool.description)
        self.assertEqual({"type": "object", "properties": {}}, tool.input_schema)


if __name__ == "__main__":
    unittest.main()
