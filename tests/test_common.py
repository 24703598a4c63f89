import unittest

from llm_gateway.models import ModelConfig, ToolDefinition
from llm_gateway.providers.common import (
    accepts_temperature,
    normalize_finish_reason,
    parse_tool_result_content,
    sanitize_schema,
)
from llm_gateway.tool import normalize_tool_name


class ToolNameTests(unittest.TestCase):
    def test_normalization(self) -> None:
        self.assertEqual("get_weather", normalize_tool_name("get weather"))
        self.assertEqual("files.read-all", normalize_tool_name("files.read-all"))
        self.assertEqual("tool_42lookup", normalize_tool_name("42lookup"))
        self.assertEqual("_private", normalize_tool_name("_private"))
        self.assertEqual("unnamed_tool", normalize_tool_name(""))
        self.assertEqual("unnamed_tool", normalize_tool_name(None))

    def test_definition_prefers_name_over_id(self) -> None:
        self.assertEqual("search_docs", ToolDefinition(id="docs", name="search docs").function_name)
        self.assertEqual("docs", ToolDefinition(id="docs").function_name)


class FinishReasonTests(unittest.TestCase):
    def test_vendor_reasons_map_to_four_values(self) -> None:
        cases = {
            "end_turn": "stop",
            "STOP": "stop",
            "max_tokens": "length",
            "MAX_TOKENS": "length",
            "tool_use": "tool_calls",
            "SAFETY": "content_filter",
            "RECITATION": "content_filter",
            "refusal": "content_filter",
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(expected, normalize_finish_reason(raw))

    def test_missing_reason(self) -> None:
        self.assertIsNone(normalize_finish_reason(None))
        self.assertIsNone(normalize_finish_reason(""))


class TemperatureSupportTests(unittest.TestCase):
    def test_reasoning_families(self) -> None:
        for name in ("o1-preview", "o3-mini", "o4-mini", "gpt-5", "gpt-5-mini"):
            with self.subTest(name=name):
                self.assertFalse(accepts_temperature(ModelConfig(id="x", provider="openai", model_id=name)))
        self.assertTrue(accepts_temperature(ModelConfig(id="x", provider="openai", model_id="gpt-4o")))

    def test_explicit_flag_wins(self) -> None:
        model = ModelConfig(id="x", provider="openai", model_id="o3", supports_temperature=True)
        self.assertTrue(accepts_temperature(model))


class SchemaTests(unittest.TestCase):
    def test_google_schema_is_stripped_recursively(self) -> None:
        schema = {
            "type": "object",
            "properties": {
                "title": {"type": "string", "maxLength": 5},
                "items": {"type": "array", "items": {"type": "integer", "exclusiveMinimum": 0}},
            },
        }
        cleaned = sanitize_schema(schema, "google")

        self.assertEqual({"type": "string"}, cleaned["properties"]["title"])
        self.assertEqual({"type": "integer"}, cleaned["properties"]["items"]["items"])
        self.assertEqual(5, schema["properties"]["title"]["maxLength"])

    def test_other_providers_keep_schema(self) -> None:
        schema = {"type": "object", "title": "X", "properties": {}}
        self.assertEqual(schema, sanitize_schema(schema, "openai"))

    def test_empty_schema_defaults_to_object(self) -> None:
        self.assertEqual({"type": "object", "properties": {}}, sanitize_schema(None, "anthropic"))

    def test_tool_result_content_for_google(self) -> None:
        self.assertEqual({"a": 1}, parse_tool_result_content('{"a": 1}'))
        self.assertEqual({"result": [1, 2]}, parse_tool_result_content("[1, 2]"))
        self.assertEqual({"result": "plain text"}, parse_tool_result_content("plain text"))


if __name__ == "__main__":
    unittest.main()
