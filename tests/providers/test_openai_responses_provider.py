import json
import unittest

from llm_gateway.errors import UpstreamProviderError
from llm_gateway.models import ChatOptions, Message, ModelConfig, ToolCallPart, ToolDefinition, ToolResultPart
from llm_gateway.providers.base import (
    FinishFragment,
    GroundingFragment,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    UsageFragment,
)
from llm_gateway.providers.openai_responses_provider import OpenAIResponsesAdapter

MODEL = ModelConfig(id="gpt5", provider="openai-responses", model_id="gpt-5", thinking_enabled=True, thinking_budget=50)
LOOKUP = ToolDefinition(id="lookup", description="Look up", parameters={"type": "object", "properties": {}})


class OpenAIResponsesAdapterRequestTests(unittest.TestCase):
    def setUp(self) -> None:
        self.adapter = OpenAIResponsesAdapter()

    def test_internally_tagged_tools(self) -> None:
        request = self.adapter.create_request(MODEL, [Message.user("hi")], [LOOKUP], ChatOptions(), system_prompt="sys")

        self.assertEqual("responses", request.operation)
        self.assertEqual("https://api.openai.com/v1/responses", request.url)
        tool = request.body["tools"][0]
        self.assertEqual({"type": "function", "name": "lookup", "description": "Look up"}, {k: tool[k] for k in ("type", "name", "description")})
        self.assertNotIn("function", tool)
        self.assertEqual("sys", request.body["instructions"])
        self.assertFalse(request.body["store"])

    def test_reasoning_model_settings(self) -> None:
        body = self.adapter.create_request(MODEL, [Message.user("hi")], [], ChatOptions(temperature=0.5, max_tokens=300)).body
        self.assertNotIn("temperature", body)
        self.assertEqual(300, body["max_output_tokens"])
        self.assertEqual({"effort": "low", "summary": "auto"}, body["reasoning"])

    def test_structured_output_uses_text_format(self) -> None:
        schema = {"type": "object", "properties": {"a": {"type": "string"}}}
        body = self.adapter.create_request(MODEL, [Message.user("hi")], [], ChatOptions(response_schema=schema)).body
        fmt = body["text"]["format"]
        self.assertEqual("json_schema", fmt["type"])
        self.assertTrue(fmt["strict"])
        self.assertFalse(fmt["schema"]["additionalProperties"])

    def test_tool_history_items(self) -> None:
        messages = [
            Message.user("look"),
            Message("assistant", (ToolCallPart("call_1", "lookup", {"id": 1}),)),
            Message("tool", (ToolResultPart("call_1", "lookup", "found"),)),
        ]
        items = self.adapter.create_request(MODEL, messages, [LOOKUP], ChatOptions()).body["input"]

        self.assertEqual({"role": "user", "content": [{"type": "input_text", "text": "look"}]}, items[0])
        self.assertEqual("function_call", items[1]["type"])
        self.assertEqual({"id": 1}, json.loads(items[1]["arguments"]))
        self.assertEqual({"type": "function_call_output", "call_id": "call_1", "output": "found"}, items[2])

    def test_web_search_builtin(self) -> None:
        search = ToolDefinition(id="web_search", builtin=True)
        body = self.adapter.create_request(MODEL, [Message.user("news")], [search], ChatOptions()).body
        self.assertEqual([{"type": "web_search"}], body["tools"])


class OpenAIResponsesAdapterParseTests(unittest.TestCase):
    def setUp(self) -> None:
        self.adapter = OpenAIResponsesAdapter()

    def test_stream_events(self) -> None:
        events = [
            {"type": "response.created", "response": {}},
            {"type": "response.reasoning_summary_text.delta", "delta": "plan"},
            {"type": "response.output_text.delta", "delta": "Hi"},
            {
                "type": "response.output_text.annotation.added",
                "annotation": {"type": "url_citation", "url": "https://a.example", "title": "A", "start_index": 0, "end_index": 2},
            },
            {
                "type": "response.output_item.added",
                "output_index": 1,
                "item": {"type": "function_call", "call_id": "call_7", "name": "lookup", "arguments": ""},
            },
            {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": '{"id": 3}'},
            {
                "type": "response.completed",
                "response": {
                    "status": "completed",
                    "output": [{"type": "function_call"}],
                    "usage": {"input_tokens": 5, "output_tokens": 7},
                },
            },
        ]
        fragments = [f for event in events for f in self.adapter.parse_stream_chunk(event)]

        self.assertEqual(ThinkingDelta("plan"), fragments[0])
        self.assertEqual(TextDelta("Hi"), fragments[1])
        self.assertIsInstance(fragments[2], GroundingFragment)
        self.assertEqual(ToolCallDelta(1, "call_7", "lookup", ""), fragments[3])
        self.assertEqual(ToolCallDelta(1, arguments='{"id": 3}'), fragments[4])
        self.assertEqual([UsageFragment(5, 7), FinishFragment("tool_calls")], fragments[5:])

    def test_incomplete_response_is_length(self) -> None:
        fragments = self.adapter.parse_stream_chunk({"type": "response.incomplete", "response": {"status": "incomplete"}})
        self.assertEqual([FinishFragment("length")], fragments)

    def test_failed_response_raises(self) -> None:
        with self.assertRaises(UpstreamProviderError):
            self.adapter.parse_stream_chunk({"type": "response.failed", "response": {"error": {"message": "nope"}}})

    def test_parse_response(self) -> None:
        response = self.adapter.parse_response(
            {
                "status": "completed",
                "output": [
                    {"type": "reasoning", "summary": [{"type": "summary_text", "text": "thought"}]},
                    {
                        "type": "message",
                        "content": [{"type": "output_text", "text": "Answer", "annotations": []}],
                    },
                ],
                "usage": {"input_tokens": 1, "output_tokens": 2},
            }
        )
        self.assertEqual(("Answer", "thought", "stop"), (response.text, response.thinking, response.finish_reason))


if __name__ == "__main__":
    unittest.main()
