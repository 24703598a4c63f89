import unittest

from llm_gateway.tool_calls import ToolCallRecord, ToolCallState


class ToolCallRecordTests(unittest.TestCase):
    def test_fragments_accumulate_into_arguments(self) -> None:
        record = ToolCallRecord(index=0)
        record.feed(call_id="call_1", name="lookup")
        record.feed(arguments='{"id": ')
        record.feed(arguments="42}")

        self.assertEqual(ToolCallState.READY, record.finalize())
        self.assertEqual({"id": 42}, record.arguments)
        self.assertEqual("call_1", record.to_part().id)

    def test_empty_buffer_means_no_arguments(self) -> None:
        record = ToolCallRecord(index=0)
        record.feed(call_id="c", name="now")
        self.assertEqual(ToolCallState.READY, record.finalize())
        self.assertEqual({}, record.arguments)

    def test_invalid_json_fails_only_the_call(self) -> None:
        record = ToolCallRecord(index=0)
        record.feed(call_id="c", name="lookup", arguments='{"id": 4')

        self.assertEqual(ToolCallState.FAILED, record.finalize())
        self.assertIn("Invalid JSON", record.error)

    def test_non_object_arguments_fail(self) -> None:
        record = ToolCallRecord(index=0)
        record.feed(call_id="c", name="lookup", arguments="[1, 2]")
        self.assertEqual(ToolCallState.FAILED, record.finalize())

    def test_missing_name_fails_and_gets_an_id(self) -> None:
        record = ToolCallRecord(index=3)
        record.feed(arguments="{}")
        self.assertEqual(ToolCallState.FAILED, record.finalize())
        self.assertEqual("call_3", record.id)

    def test_first_id_and_name_win(self) -> None:
        record = ToolCallRecord(index=0)
        record.feed(call_id="a", name="first")
        record.feed(call_id="b", name="second")
        self.assertEqual(("a", "first"), (record.id, record.name))

    def test_feed_after_finalize_is_rejected(self) -> None:
        record = ToolCallRecord(index=0)
        record.feed(call_id="c", name="lookup")
        record.finalize()
        with self.assertRaises(ValueError):
            record.feed(arguments="{}")

    def test_lifecycle(self) -> None:
        record = ToolCallRecord(index=0)
        record.feed(call_id="c", name="lookup")
        record.finalize()
        record.start()
        self.assertEqual(ToolCallState.EXECUTING, record.state)
        record.complete()
        self.assertEqual(ToolCallState.COMPLETED, record.state)

        failed = ToolCallRecord(index=1)
        failed.feed(call_id="d", name="lookup")
        failed.finalize()
        failed.start()
        failed.complete("boom")
        self.assertEqual((ToolCallState.FAILED, "boom"), (failed.state, failed.error))

    def test_start_requires_ready(self) -> None:
        record = ToolCallRecord(index=0)
        with self.assertRaises(ValueError):
            record.start()


if __name__ == "__main__":
    unittest.main()
