import asyncio
import unittest

from llm_gateway.app_config import StreamLimits
from llm_gateway.errors import StreamLimitError, StreamParseError
from llm_gateway.events import EventChannel, UnifiedEventEmitter
from llm_gateway.models import ChatTurn, TextPart, ThinkingPart, ToolCallPart
from llm_gateway.providers.base import (
    Citation,
    FinishFragment,
    GroundingFragment,
    ImageFragment,
    ParseErrorFragment,
    SafetyFragment,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    UsageFragment,
)
from llm_gateway.providers.google_provider import GoogleAdapter
from llm_gateway.streaming import StreamingHandler
from llm_gateway.tool_calls import ToolCallState
from tests.fakes import FAKE_MODEL


class StreamingHandlerTests(unittest.TestCase):
    def _run(self, fragments, limits: StreamLimits | None = None):
        async def scenario():
            turn = ChatTurn(model=FAKE_MODEL, tools=(), messages=[])
            channel = EventChannel()
            handler = StreamingHandler(UnifiedEventEmitter(turn, channel), limits)
            error = None
            outcome = None
            try:
                for fragment in fragments:
                    handler.accumulate([fragment])
                outcome = handler.finish()
            except StreamLimitError as ex:
                error = ex
            channel.close()
            events = [e async for e in channel]
            return outcome, events, error

        return asyncio.run(scenario())

    def test_text_is_emitted_per_delta(self) -> None:
        outcome, events, _ = self._run([TextDelta("Hel"), TextDelta("lo"), FinishFragment("stop")])

        self.assertEqual(["Hel", "lo"], [e.data["text"] for e in events])
        self.assertEqual("Hello", outcome.text)
        self.assertEqual("stop", outcome.finish_reason)

    def test_side_channel_fragments_emit_without_tool_finish(self) -> None:
        outcome, events, _ = self._run(
            [
                ThinkingDelta("let me look"),
                ImageFragment("image/png", "iVBOR"),
                GroundingFragment((Citation("https://example.com", "Example", "quoted", 0, 6),)),
                SafetyFragment("HARM_CATEGORY_HARASSMENT", "probability=HIGH"),
                TextDelta("Here"),
                FinishFragment("stop"),
            ]
        )

        self.assertEqual(["thinking", "image", "citation", "safety.warning", "chunk"], [e.type for e in events])
        citation = events[2].data
        self.assertEqual("https://example.com", citation["source"]["url"])
        self.assertEqual({"start": 0, "end": 6, "text": "quoted"}, citation["span"])
        self.assertEqual("stop", outcome.finish_reason)

    def test_tool_call_fragments_become_ready_records(self) -> None:
        outcome, events, _ = self._run(
            [
                ToolCallDelta(0, "call_1", "lookup"),
                ToolCallDelta(0, arguments='{"id"'),
                ToolCallDelta(0, arguments=": 42}"),
                FinishFragment("tool_calls"),
            ]
        )

        self.assertEqual([], events)
        self.assertTrue(outcome.wants_tools)
        self.assertEqual({"id": 42}, outcome.ready_calls[0].arguments)

    def test_parallel_calls_keep_their_own_buffers(self) -> None:
        outcome, _, _ = self._run(
            [
                ToolCallDelta(0, "a", "lookup", '{"id": 1'),
                ToolCallDelta(1, "b", "lookup", '{"id": 2'),
                ToolCallDelta(1, arguments="}"),
                ToolCallDelta(0, arguments="}"),
                FinishFragment("tool_calls"),
            ]
        )

        self.assertEqual([{"id": 1}, {"id": 2}], [c.arguments for c in outcome.ready_calls])

    def test_broken_call_does_not_sink_its_sibling(self) -> None:
        outcome, _, _ = self._run(
            [
                ToolCallDelta(0, "a", "lookup", '{"id": '),
                ToolCallDelta(1, "b", "lookup", '{"id": 2}'),
                FinishFragment("tool_calls"),
            ]
        )

        states = [c.state for c in outcome.tool_calls]
        self.assertEqual([ToolCallState.FAILED, ToolCallState.READY], states)
        self.assertTrue(outcome.wants_tools)

    def test_repeated_complete_call_is_dropped(self) -> None:
        call = ToolCallDelta(0, "call_1", "lookup", '{"id": 1}', complete=True)
        outcome, _, _ = self._run([call, call, FinishFragment("tool_calls")])
        self.assertEqual(1, len(outcome.tool_calls))

    def test_complete_calls_sharing_an_index_are_distinct(self) -> None:
        outcome, _, _ = self._run(
            [
                ToolCallDelta(0, "g1", "lookup", '{"id": 1}', complete=True),
                ToolCallDelta(0, "g2", "lookup", '{"id": 2}', complete=True),
                FinishFragment("tool_calls"),
            ]
        )
        self.assertEqual(["g1", "g2"], [c.id for c in outcome.ready_calls])

    def test_late_fragment_after_finish_is_dropped(self) -> None:
        outcome, _, _ = self._run(
            [
                ToolCallDelta(0, "a", "lookup", "{}"),
                FinishFragment("tool_calls"),
                ToolCallDelta(0, arguments="garbage"),
            ]
        )
        self.assertEqual({}, outcome.ready_calls[0].arguments)

    def test_stop_with_ready_calls_is_treated_as_tool_calls(self) -> None:
        outcome, _, _ = self._run([ToolCallDelta(0, "a", "lookup", "{}"), FinishFragment("stop")])
        self.assertEqual("tool_calls", outcome.finish_reason)

    def test_missing_finish_reason_defaults_to_stop(self) -> None:
        outcome, _, _ = self._run([TextDelta("partial")])
        self.assertEqual("stop", outcome.finish_reason)

    def test_parse_error_does_not_end_the_stream(self) -> None:
        outcome, events, error = self._run(
            [TextDelta("a"), ParseErrorFragment("Malformed stream chunk"), TextDelta("b"), FinishFragment("stop")]
        )
        self.assertIsNone(error)
        self.assertEqual("ab", outcome.text)
        self.assertEqual(["Malformed stream chunk"], [e.message for e in outcome.parse_errors])
        self.assertEqual(2, len(events))

    def test_usage_is_merged_across_fragments(self) -> None:
        outcome, _, _ = self._run([UsageFragment(input_tokens=10), UsageFragment(output_tokens=3), FinishFragment("stop")])
        self.assertEqual((10, 3), (outcome.input_tokens, outcome.output_tokens))

    def test_invalid_call_arguments_are_recorded_as_parse_errors(self) -> None:
        outcome, _, _ = self._run([ToolCallDelta(0, "c1", "lookup", '{"id": '), FinishFragment("tool_calls")])

        self.assertEqual(ToolCallState.FAILED, outcome.tool_calls[0].state)
        [error] = outcome.parse_errors
        self.assertIsInstance(error, StreamParseError)
        self.assertEqual("c1", error.call_id)
        self.assertEqual('{"id": ', error.raw)

    def test_signed_thinking_precedes_calls_in_history(self) -> None:
        outcome, events, _ = self._run(
            [
                ThinkingDelta("plan", 0),
                ThinkingDelta("", 0, "SIGX"),
                TextDelta("Checking."),
                ToolCallDelta(1, "toolu_1", "lookup", '{"id": 42}'),
                FinishFragment("tool_calls"),
            ]
        )

        self.assertEqual([ThinkingPart("plan", "SIGX")], outcome.thinking)
        self.assertEqual(["plan"], [e.data["text"] for e in events if e.type == "thinking"])
        content = outcome.to_message().content
        self.assertEqual(ThinkingPart("plan", "SIGX"), content[0])
        self.assertEqual(TextPart("Checking."), content[1])
        self.assertEqual(ToolCallPart("toolu_1", "lookup", {"id": 42}), content[2])

    def test_unsigned_thinking_stays_out_of_history(self) -> None:
        outcome, _, _ = self._run([ThinkingDelta("loose"), ThinkingDelta("draft", 0), TextDelta("Hi"), FinishFragment("stop")])
        self.assertEqual((TextPart("Hi"),), outcome.to_message().content)

    def test_call_signature_reaches_history(self) -> None:
        outcome, _, _ = self._run(
            [ToolCallDelta(0, "call_x", "lookup", "{}", complete=True, signature="SIG123"), FinishFragment("stop")]
        )
        self.assertEqual("SIG123", outcome.to_message().content[-1].signature)

    def test_argument_fragments_without_a_call_are_dropped(self) -> None:
        outcome, _, error = self._run(
            [
                ToolCallDelta(3, arguments='{"query": "x"}'),
                ToolCallDelta(0, "c1", "lookup", "{}"),
                FinishFragment("tool_calls"),
            ],
            StreamLimits(max_tool_calls=1),
        )
        self.assertIsNone(error)
        self.assertEqual(["c1"], [c.id for c in outcome.tool_calls])
        self.assertEqual(ToolCallState.READY, outcome.tool_calls[0].state)

    def test_identical_gemini_calls_are_kept_once(self) -> None:
        adapter = GoogleAdapter()
        chunk = {"candidates": [{"content": {"parts": [{"functionCall": {"name": "lookup", "args": {"id": "a"}}}]}}]}
        outcome, _, _ = self._run(
            adapter.parse_stream_chunk(chunk) + adapter.parse_stream_chunk(chunk) + [FinishFragment("tool_calls")]
        )
        self.assertEqual(1, len(outcome.ready_calls))

    def test_text_limit(self) -> None:
        _, _, error = self._run([TextDelta("12345"), TextDelta("6")], StreamLimits(max_text_chars=5))
        self.assertIsInstance(error, StreamLimitError)
        self.assertEqual("STREAM_LIMIT_EXCEEDED", error.code)

    def test_tool_call_count_limit(self) -> None:
        _, _, error = self._run(
            [ToolCallDelta(i, f"c{i}", "lookup", "{}") for i in range(3)],
            StreamLimits(max_tool_calls=2),
        )
        self.assertIsInstance(error, StreamLimitError)

    def test_tool_argument_limit(self) -> None:
        _, _, error = self._run(
            [ToolCallDelta(0, "c", "lookup", '{"q": "' + "x" * 50 + '"}')],
            StreamLimits(max_tool_argument_chars=20),
        )
        self.assertIsInstance(error, StreamLimitError)


if __name__ == "__main__":
    unittest.main()
