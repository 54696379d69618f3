from __future__ import annotations

import json

import pytest

from ultrasearch.models.annotations import (
    ToolCallState,
    ToolInvocation,
    latest_tool_invocations,
    merge_annotations,
    serialize,
)
from ultrasearch.services import streaming
from ultrasearch.models.annotations import Stage


def _call(call_id: str = "call_1") -> ToolInvocation:
    return ToolInvocation(tool_call_id=call_id, tool_name="search", args={"query": "rust async"})


class TestSerialize:
    def test_key_order_does_not_matter(self):
        a = {"type": "reasoning", "data": {"time": 10, "reasoning": "x"}}
        b = {"data": {"reasoning": "x", "time": 10}, "type": "reasoning"}
        assert serialize(a) == serialize(b)

    def test_different_values_differ(self):
        assert serialize(streaming.reasoning(1)) != serialize(streaming.reasoning(2))


class TestMergeAnnotations:
    def test_duplicates_are_dropped_first_occurrence_wins(self):
        header = streaming.stage_header(Stage.PLANNER, "Planning", "Analyzing")
        result = streaming.stage_result(Stage.PLANNER, "plan", "Plan Results", "Analysis and plan results")

        merged = merge_annotations([header], [header, result])

        assert merged == [header, result]

    def test_merge_is_idempotent(self):
        existing = [streaming.stage_header(Stage.WRITER, "Drafting", "Writing")]
        incoming = [_call().to_annotation(), streaming.reasoning(120, "thought")]

        once = merge_annotations(existing, incoming)
        twice = merge_annotations(once, incoming)

        assert twice == once

    def test_result_supersedes_call_with_same_id(self):
        call = _call()
        result = call.with_result({"results": []})

        merged = merge_annotations([call.to_annotation()], [result.to_annotation()])

        assert merged == [result.to_annotation()]

    def test_call_without_result_is_kept(self):
        merged = merge_annotations([_call("a").to_annotation()], [_call("b").with_result(1).to_annotation()])

        states = [(a["data"]["toolCallId"], a["data"]["state"]) for a in merged]
        assert states == [("a", "call"), ("b", "result")]

    def test_non_dict_entries_are_ignored(self):
        assert merge_annotations(["junk", None], [streaming.reasoning(5)]) == [streaming.reasoning(5)]


class TestToolInvocation:
    def test_args_and_result_are_json_strings(self):
        annotation = _call().with_result({"results": [{"title": "A"}]}).to_annotation()

        assert annotation["type"] == "tool_call"
        assert json.loads(annotation["data"]["args"]) == {"query": "rust async"}
        assert json.loads(annotation["data"]["result"]) == {"results": [{"title": "A"}]}

    def test_round_trip_from_annotation(self):
        original = _call().with_result({"ok": True})

        parsed = ToolInvocation.from_annotation(original.to_annotation())

        assert parsed == original

    def test_result_cannot_be_set_twice(self):
        with pytest.raises(ValueError):
            _call().with_result(1).with_result(2)

    def test_from_annotation_rejects_other_types(self):
        assert ToolInvocation.from_annotation(streaming.reasoning(3)) is None

    def test_malformed_stored_annotations_are_skipped(self):
        stored = ["tool_call", None, 42, ["tool_call"], {"type": "tool_call", "data": "x"}, _call().to_annotation()]

        assert [ToolInvocation.from_annotation(a) for a in stored[:-1]] == [None] * 5
        assert [i.tool_call_id for i in latest_tool_invocations(stored)] == [_call().tool_call_id]

    def test_latest_invocations_prefers_results(self):
        call = _call()
        annotations = [call.to_annotation(), call.with_result("done").to_annotation(), _call("x").to_annotation()]

        latest = latest_tool_invocations(annotations)

        assert [(i.tool_call_id, i.state) for i in latest] == [
            ("call_1", ToolCallState.RESULT),
            ("x", ToolCallState.CALL),
        ]
