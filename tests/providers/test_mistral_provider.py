import unittest

from llm_gateway.models import ChatOptions, ImagePart, Message, ModelConfig, ToolDefinition
from llm_gateway.providers.base import FinishFragment, TextDelta, ThinkingDelta, ToolCallDelta
from llm_gateway.providers.mistral_provider import MistralAdapter

MISTRAL = ModelConfig(id="mistral", provider="mistral", model_id="mistral-large-latest")
LOOKUP = ToolDefinition(id="lookup", parameters={"type": "object", "properties": {}})


class MistralAdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.adapter = MistralAdapter()

    def test_request_uses_max_tokens_and_any(self) -> None:
        request = self.adapter.create_request(
            MISTRAL, [Message.user("hi")], [LOOKUP], ChatOptions(max_tokens=10, tool_choice="required")
        )
        self.assertEqual("https://api.mistral.ai/v1/chat/completions", request.url)
        self.assertEqual(10, request.body["max_tokens"])
        self.assertEqual("any", request.body["tool_choice"])

    def test_reasoning_model_still_uses_max_tokens(self) -> None:
        model = ModelConfig(id="m", provider="mistral", model_id="magistral-medium", supports_temperature=False)
        body = self.adapter.create_request(model, [Message.user("hi")], [], ChatOptions(max_tokens=10)).body
        self.assertEqual(10, body["max_tokens"])
        self.assertNotIn("max_completion_tokens", body)

    def test_image_url_is_a_plain_string(self) -> None:
        body = self.adapter.create_request(
            MISTRAL, [Message.user("what?", ImagePart("image/jpeg", "QUJD"))], [], ChatOptions()
        ).body
        self.assertEqual("data:image/jpeg;base64,QUJD", body["messages"][0]["content"][1]["image_url"])

    def test_tool_calls_arrive_complete(self) -> None:
        fragments = self.adapter.parse_stream_chunk(
            {
                "choices": [
                    {
                        "index": 0,
                        "delta": {
                            "tool_calls": [
                                {"id": "abc123xyz", "index": 0, "function": {"name": "lookup", "arguments": {"id": 1}}}
                            ]
                        },
                        "finish_reason": "tool_calls",
                    }
                ]
            }
        )
        self.assertEqual(
            [ToolCallDelta(0, "abc123xyz", "lookup", '{"id": 1}', complete=True), FinishFragment("tool_calls")],
            fragments,
        )

    def test_typed_content_chunks(self) -> None:
        fragments = self.adapter.parse_stream_chunk(
            {
                "choices": [
                    {
                        "index": 0,
                        "delta": {
                            "content": [
                                {"type": "thinking", "thinking": [{"type": "text", "text": "step 1"}]},
                                {"type": "text", "text": "Result"},
                            ]
                        },
                    }
                ]
            }
        )
        self.assertEqual([ThinkingDelta("step 1"), TextDelta("Result")], fragments)

    def test_model_length_finish(self) -> None:
        fragments = self.adapter.parse_stream_chunk(
            {"choices": [{"index": 0, "delta": {"content": ""}, "finish_reason": "model_length"}]}
        )
        self.assertEqual([FinishFragment("length")], fragments)


if __name__ == "__main__":
    unittest.main()
