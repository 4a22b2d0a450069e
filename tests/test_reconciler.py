"""Tests for checkpoint + log reconciliation."""

from __future__ import annotations

from chatledger.models.checkpoint import CheckpointSnapshot, TurnEntry
from chatledger.models.message import (
    TextPart,
    ToolCall,
    ToolCallPart,
    ToolResult,
    ToolResultPart,
)
from chatledger.reconcile.reconciler import extract_text, normalize_tool_calls, reconcile
from tests.conftest import ai, human, make_event, make_snapshot, tool

SID = "sess_REC"


class TestFlatten:
    def test_no_snapshot_returns_empty(self):
        """A session without a checkpoint has no derivable history."""
        log = [make_event(SID, "assistant", "orphan")]
        assert reconcile(None, log) == []

    def test_roles_and_synthetic_timestamps(self):
        """Entries map to roles and get snapshot.ts + position."""
        snapshot = make_snapshot(
            5_000,
            {"type": "system", "content": "be nice"},
            human("hi"),
            ai("hello"),
        )
        messages = reconcile(snapshot, [])
        assert [m.role for m in messages] == ["system", "user", "assistant"]
        assert [m.timestamp for m in messages] == [5_000, 5_001, 5_002]
        assert [m.content for m in messages] == ["be nice", "hi", "hello"]

    def test_kind_key_is_accepted(self):
        """Entries may carry their kind under ``kind`` instead of ``type``."""
        snapshot = CheckpointSnapshot(ts=1, entries=[TurnEntry(kind="human", content="x")])
        assert reconcile(snapshot, [])[0].role == "user"

    def test_unknown_and_empty_entries_skipped(self):
        """Unknown kinds and empty entries are not emitted."""
        snapshot = make_snapshot(0, {"type": "function"}, {}, human("kept"))
        messages = reconcile(snapshot, [])
        assert len(messages) == 1
        assert messages[0].content == "kept"
        assert messages[0].timestamp == 2

    def test_content_blocks_joined(self):
        """List content keeps text blocks joined by newlines."""
        snapshot = make_snapshot(
            0,
            {
                "type": "human",
                "content": [
                    {"type": "text", "text": "line one"},
                    {"type": "image_url", "image_url": "x"},
                    {"type": "text", "text": "line two"},
                ],
            },
        )
        assert reconcile(snapshot, [])[0].content == "line one\nline two"

    def test_tool_entries_are_not_messages(self):
        """Tool entries only feed pairing; they never surface as messages."""
        snapshot = make_snapshot(0, human("q"), tool("c_orphan", "nobody asked"))
        messages = reconcile(snapshot, [])
        assert [m.role for m in messages] == ["user"]


class TestExtractText:
    def test_string_passthrough(self):
        assert extract_text("plain") == "plain"

    def test_none_is_empty(self):
        assert extract_text(None) == ""

    def test_mapping_is_json_encoded(self):
        assert extract_text({"a": 1}) == '{"a": 1}'

    def test_unencodable_is_empty(self):
        assert extract_text(object()) == ""


class TestNormalizeToolCalls:
    def test_args_and_input_field_names(self):
        """Arguments are read from ``args`` or ``input``."""
        calls = normalize_tool_calls(
            [
                {"id": "a", "name": "one", "args": {"x": 1}},
                {"tool_call_id": "b", "name": "two", "input": {"y": 2}},
            ]
        )
        assert calls == [
            ToolCall(id="a", name="one", input={"x": 1}),
            ToolCall(id="b", name="two", input={"y": 2}),
        ]

    def test_json_string_arguments_decoded(self):
        calls = normalize_tool_calls([{"id": "a", "name": "n", "args": '{"q": "v"}'}])
        assert calls[0].input == {"q": "v"}

    def test_malformed_calls_default(self):
        """Missing id/name become empty strings and bad args become {}."""
        calls = normalize_tool_calls([{"args": "not json"}, "garbage", {"id": 7, "args": [1]}])
        assert calls == [ToolCall(), ToolCall()]

    def test_non_list_is_empty(self):
        assert normalize_tool_calls({"id": "a"}) == []


class TestPairingAndCoalescing:
    def test_tool_round_trip_coalesces_into_one_turn(self):
        """An AI call, its tool result and the follow-up text form one message."""
        snapshot = make_snapshot(
            100,
            human("weather?"),
            ai("", [{"id": "c1", "name": "weather", "args": {"city": "Oslo"}}]),
            tool("c1", "rainy"),
            ai("It is rainy."),
            human("thanks"),
        )
        messages = reconcile(snapshot, [])
        assert [m.role for m in messages] == ["user", "assistant", "user"]

        turn = messages[1]
        assert turn.content == "It is rainy."
        assert turn.timestamp == 103
        assert turn.tool_calls == [ToolCall(id="c1", name="weather", input={"city": "Oslo"})]
        assert turn.tool_results == [ToolResult(id="c1", name="weather", output="rainy")]
        assert turn.parts == [
            ToolCallPart(id="c1", name="weather", input={"city": "Oslo"}),
            ToolResultPart(id="c1", name="weather", output="rainy"),
            TextPart(content="It is rainy."),
        ]
        assert turn.pending_tool_calls == []

    def test_result_buffered_before_call_pairs_immediately(self):
        """A result seen before its call is attached when the call appears."""
        snapshot = make_snapshot(0, tool("c1", "early", name="lookup"), ai("", [{"id": "c1"}]))
        turn = reconcile(snapshot, [])[0]
        assert turn.tool_results == [ToolResult(id="c1", name="lookup", output="early")]

    def test_texts_joined_with_blank_line(self):
        """Multiple chunk texts are joined with a blank line."""
        snapshot = make_snapshot(0, ai("first part"), ai("second part"))
        messages = reconcile(snapshot, [])
        assert len(messages) == 1
        assert messages[0].content == "first part\n\nsecond part"
        assert [p.content for p in messages[0].parts] == ["first part", "second part"]

    def test_duplicate_call_ids_deduplicated_across_group(self):
        """A call repeated in a later chunk of the same turn appears once."""
        call = {"id": "c1", "name": "search", "args": {}}
        snapshot = make_snapshot(0, ai("", [call]), tool("c1", "r"), ai("", [call]))
        turn = reconcile(snapshot, [])[0]
        assert [c.id for c in turn.tool_calls] == ["c1"]
        assert [r.id for r in turn.tool_results] == ["c1"]
        assert [p.type for p in turn.parts] == ["tool_call", "tool_result"]

    def test_unanswered_call_stays_pending(self):
        """A call without any result is kept and reported as pending."""
        snapshot = make_snapshot(0, ai("", [{"id": "c1", "name": "slow"}]))
        turn = reconcile(snapshot, [])[0]
        assert turn.tool_results == []
        assert [c.id for c in turn.pending_tool_calls] == ["c1"]

    def test_results_follow_call_order(self):
        """Results are ordered like their calls, not like their arrival."""
        snapshot = make_snapshot(
            0,
            ai("", [{"id": "a", "name": "x"}, {"id": "b", "name": "y"}]),
            tool("b", "rb"),
            tool("a", "ra"),
        )
        turn = reconcile(snapshot, [])[0]
        assert [r.id for r in turn.tool_results] == ["a", "b"]


class TestLogEnrichment:
    def test_ordinal_not_temporal_mapping(self):
        """The k-th assistant message pairs with the k-th stored assistant record."""
        snapshot = make_snapshot(
            200_000, human("hi"), ai("first"), human("yo"), ai("second")
        )
        log = [
            make_event(SID, "user", "hi", timestamp=900),
            make_event(
                SID, "assistant", "first", timestamp=1_000, parts=[TextPart(content="first")]
            ),
            make_event(SID, "user", "yo", timestamp=150_000),
            make_event(
                SID, "assistant", "second", timestamp=200_000, parts=[TextPart(content="second")]
            ),
        ]
        assistants = [m for m in reconcile(snapshot, log) if m.role == "assistant"]
        assert [m.content for m in assistants] == ["first", "second"]
        assert assistants[0].parts == [TextPart(content="first")]
        assert assistants[1].parts == [TextPart(content="second")]

    def test_stored_parts_replace_wholesale(self):
        """Stored parts are authoritative and supply calls and results."""
        snapshot = make_snapshot(0, human("go"), ai("done"))
        parts = [
            TextPart(content="delegating"),
            ToolCallPart(id="sub1", name="subagent", input={"task": "t"}),
            ToolResultPart(id="sub1", name="subagent", output="ok"),
            TextPart(content="done"),
        ]
        log = [make_event(SID, "assistant", "done", parts=parts)]
        turn = reconcile(snapshot, log)[1]
        assert turn.parts == parts
        assert turn.tool_calls == [ToolCall(id="sub1", name="subagent", input={"task": "t"})]
        assert turn.tool_results == [ToolResult(id="sub1", name="subagent", output="ok")]
        assert turn.content == "done"

    def test_additive_merge_without_parts(self):
        """Without stored parts, missing calls and results are appended."""
        snapshot = make_snapshot(0, ai("", [{"id": "c1", "name": "fetch"}]))
        log = [
            make_event(
                SID,
                "assistant",
                tool_calls=[ToolCall(id="c1", name="fetch"), ToolCall(id="c2", name="extra")],
                tool_results=[ToolResult(id="c1", name="fetch", output="body")],
            )
        ]
        turn = reconcile(snapshot, log)[0]
        assert [c.id for c in turn.tool_calls] == ["c1", "c2"]
        assert [r.id for r in turn.tool_results] == ["c1"]
        assert [p.type for p in turn.parts] == ["tool_call", "tool_call", "tool_result"]

    def test_surplus_log_records_ignored(self):
        """Extra stored assistant records do not break reconciliation."""
        snapshot = make_snapshot(0, ai("only"))
        log = [
            make_event(SID, "assistant", "only", parts=[TextPart(content="only")]),
            make_event(SID, "assistant", "never checkpointed", parts=[TextPart(content="x")]),
        ]
        messages = reconcile(snapshot, log)
        assert len(messages) == 1
        assert messages[0].parts == [TextPart(content="only")]


class TestPairingCompletion:
    def test_result_found_anywhere_in_log_is_attached(self):
        """A call gets its result even when it is stored on a later record."""
        snapshot = make_snapshot(
            0,
            ai("", [{"id": "c1", "name": "render"}]),
            human("and?"),
            ai("ok"),
        )
        log = [
            make_event(SID, "assistant"),
            make_event(SID, "user", "and?"),
            make_event(
                SID,
                "assistant",
                "ok",
                parts=[TextPart(content="ok"), ToolResultPart(id="c1", output="late")],
            ),
        ]
        first = reconcile(snapshot, log)[0]
        assert first.tool_results == [ToolResult(id="c1", name="render", output="late")]
        assert first.parts[-1] == ToolResultPart(id="c1", name="render", output="late")

    def test_every_answered_call_has_result(self):
        """Every call with a result in either source ends up paired."""
        snapshot = make_snapshot(
            0,
            ai("", [{"id": "a", "name": "x"}, {"id": "b", "name": "y"}, {"id": "z"}]),
            tool("a", "ra"),
        )
        log = [
            make_event(SID, "user", tool_results=[ToolResult(id="b", output="rb")]),
        ]
        turn = reconcile(snapshot, log)[0]
        result_ids = {r.id for r in turn.tool_results}
        assert result_ids == {"a", "b"}
        assert [c.id for c in turn.pending_tool_calls] == ["z"]


class TestFinalize:
    def _snapshot(self) -> CheckpointSnapshot:
        return make_snapshot(
            10,
            {"type": "system", "content": "sys"},
            human("one"),
            ai("two"),
            human("three"),
            ai("four"),
        )

    def test_idempotent(self):
        """Same inputs give identical output."""
        snapshot = self._snapshot()
        log = [make_event(SID, "assistant", "two", parts=[TextPart(content="two")])]
        assert reconcile(snapshot, log) == reconcile(snapshot, log)

    def test_non_decreasing_timestamps(self):
        messages = reconcile(self._snapshot(), [])
        timestamps = [m.timestamp for m in messages]
        assert timestamps == sorted(timestamps)

    def test_exclude_roles(self):
        messages = reconcile(self._snapshot(), [], exclude_roles=["system"])
        assert "system" not in {m.role for m in messages}
        assert len(messages) == 4

    def test_limit_keeps_last(self):
        messages = reconcile(self._snapshot(), [], limit=2)
        assert [m.content for m in messages] == ["three", "four"]

    def test_non_positive_limit_ignored(self):
        assert len(reconcile(self._snapshot(), [], limit=0)) == 5
