from __future__ import annotations

from ultrasearch.models.annotations import Stage, ToolInvocation
from ultrasearch.models.messages import Message
from ultrasearch.services import streaming
from ultrasearch.services.timeline import (
    SectionContext,
    TimelineStatus,
    build_timeline,
    reconstruct_timeline,
    timeline_for_chat,
)
from ultrasearch.tools.adapter import ASK_QUESTION


def _header(stage: Stage, title: str = "ignored title"):
    return streaming.stage_header(stage, title, f"{stage.value} header text")


def _result(stage: Stage, text: str = "output"):
    return streaming.stage_result(stage, text, f"{stage.value} title", f"{stage.value} results")


def _summary(items):
    return [(item.stage, item.status) for item in items]


LIVE = SectionContext(tool_use_enabled=True, is_latest=True)


class TestBuildTimeline:
    def test_header_without_result_is_in_progress_mid_stream(self):
        items = build_timeline([_header(Stage.PLANNER)], False, LIVE)

        assert _summary(items) == [(Stage.PLANNER, TimelineStatus.IN_PROGRESS)]
        assert items[0].header_title == "Planning"
        assert items[0].header_text == "planner header text"

    def test_done_stage_reveals_next_applicable_stage(self):
        annotations = [_header(Stage.PLANNER), _result(Stage.PLANNER)]

        items = build_timeline(annotations, False, LIVE)

        assert _summary(items) == [
            (Stage.PLANNER, TimelineStatus.DONE),
            (Stage.RESEARCH, TimelineStatus.IN_PROGRESS),
        ]
        assert items[1].header_title == "Research"

    def test_reveal_skips_research_when_tool_use_disabled(self):
        annotations = [_header(Stage.PLANNER), _result(Stage.PLANNER)]
        context = SectionContext(tool_use_enabled=False, is_latest=True)

        items = build_timeline(annotations, False, context)

        assert _summary(items) == [
            (Stage.PLANNER, TimelineStatus.DONE),
            (Stage.WRITER, TimelineStatus.IN_PROGRESS),
        ]
        assert items[1].header_title == "Drafting"

    def test_writer_hidden_while_research_in_progress(self):
        annotations = [
            _header(Stage.PLANNER),
            _result(Stage.PLANNER),
            _header(Stage.RESEARCH),
            _header(Stage.WRITER),
            _result(Stage.WRITER),
        ]

        items = build_timeline(annotations, False, LIVE)

        stages = [item.stage for item in items]
        assert Stage.WRITER not in stages
        assert (Stage.RESEARCH, TimelineStatus.IN_PROGRESS) in _summary(items)

    def test_final_text_keeps_only_done_stages(self):
        annotations = [
            _header(Stage.PLANNER),
            _result(Stage.PLANNER),
            _header(Stage.WRITER),
            _result(Stage.WRITER),
            _header(Stage.CRITIC),
        ]

        items = build_timeline(annotations, True, LIVE)

        assert _summary(items) == [
            (Stage.PLANNER, TimelineStatus.DONE),
            (Stage.WRITER, TimelineStatus.DONE),
        ]

    def test_earlier_section_shows_no_placeholders(self):
        annotations = [_header(Stage.PLANNER), _result(Stage.PLANNER)]
        context = SectionContext(tool_use_enabled=True, is_latest=False)

        items = build_timeline(annotations, False, context)

        assert _summary(items) == [(Stage.PLANNER, TimelineStatus.DONE)]

    def test_result_fields_and_stage_order(self):
        annotations = [_result(Stage.CRITIC, "looks fine"), _result(Stage.PLANNER, "1. step")]

        items = build_timeline(annotations, True, LIVE)

        assert [item.stage for item in items] == [Stage.PLANNER, Stage.CRITIC]
        assert items[1].result_text == "looks fine"
        assert items[1].result_title == "critic results"
        assert items[1].header_title == "Critiquing"

    def test_research_sources_come_from_tool_results(self):
        search = ToolInvocation(tool_call_id="c1", tool_name="search", args={"query": "q"})
        result = search.with_result({"results": [{"title": "Docs", "url": "https://docs.example.com"}]})
        annotations = [
            _header(Stage.RESEARCH),
            search.to_annotation(),
            result.to_annotation(),
            _result(Stage.RESEARCH, "docs.example.com - Docs"),
        ]

        items = build_timeline(annotations, True, LIVE)

        assert items[0].stage is Stage.RESEARCH
        assert items[0].sources == (("Docs", "https://docs.example.com"),)
        assert items[0].to_dict()["sources"] == [{"title": "Docs", "url": "https://docs.example.com"}]

    def test_pending_clarifying_question_is_in_progress(self):
        ask = ToolInvocation(tool_call_id="ask_1", tool_name=ASK_QUESTION, args={"question": "Which one?"})

        items = build_timeline([ask.to_annotation()], False, LIVE)

        assert _summary(items) == [(Stage.ASK, TimelineStatus.IN_PROGRESS)]
        assert items[0].header_title == "Clarifying question"

    def test_answered_clarifying_question_is_done(self):
        ask = ToolInvocation(tool_call_id="ask_1", tool_name=ASK_QUESTION, args={"question": "Which one?"})
        annotations = [ask.to_annotation(), ask.with_result("the second").to_annotation()]

        items = build_timeline(annotations, True, LIVE)

        assert _summary(items) == [(Stage.ASK, TimelineStatus.DONE)]
        assert items[0].result_text == "the second"

    def test_same_input_gives_same_output(self):
        annotations = [
            _header(Stage.PLANNER),
            _result(Stage.PLANNER),
            _header(Stage.RESEARCH),
            _header(Stage.WRITER),
        ]

        first = build_timeline(annotations, False, LIVE)
        second = build_timeline(list(annotations), False, LIVE)

        assert first == second


class TestReconstructTimeline:
    def test_annotations_from_all_assistant_messages_are_merged(self):
        messages = [
            Message(role="assistant", annotations=[_header(Stage.PLANNER), _result(Stage.PLANNER)]),
            Message(
                role="assistant",
                content="The answer.",
                annotations=[_result(Stage.PLANNER), _header(Stage.WRITER), _result(Stage.WRITER)],
            ),
        ]

        items = reconstruct_timeline(messages, LIVE)

        assert _summary(items) == [
            (Stage.PLANNER, TimelineStatus.DONE),
            (Stage.WRITER, TimelineStatus.DONE),
        ]

    def test_timeline_for_chat_builds_one_timeline_per_section(self):
        messages = [
            Message(id="u1", role="user", content="first"),
            Message(role="assistant", content="one", annotations=[_header(Stage.PLANNER), _result(Stage.PLANNER)]),
            Message(id="u2", role="user", content="second"),
            Message(role="assistant", annotations=[_header(Stage.PLANNER)]),
        ]

        timelines = timeline_for_chat(messages)

        assert [section.id for section, _ in timelines] == ["u1", "u2"]
        assert _summary(timelines[0][1]) == [(Stage.PLANNER, TimelineStatus.DONE)]
        assert _summary(timelines[1][1]) == [(Stage.PLANNER, TimelineStatus.IN_PROGRESS)]

    def test_recorded_search_flag_reveals_research_before_its_header(self):
        planner = streaming.stage_header(Stage.PLANNER, "Planning", "Analyzing", search_enabled=True)
        messages = [
            Message(id="u1", role="user", content="question"),
            Message(role="assistant", annotations=[planner, _result(Stage.PLANNER)]),
        ]

        (_, items), = timeline_for_chat(messages)

        assert _summary(items) == [
            (Stage.PLANNER, TimelineStatus.DONE),
            (Stage.RESEARCH, TimelineStatus.IN_PROGRESS),
        ]

    def test_live_caller_search_flag_applies_to_latest_section(self):
        messages = [
            Message(id="u1", role="user", content="question"),
            Message(role="assistant", annotations=[_header(Stage.PLANNER), _result(Stage.PLANNER)]),
        ]

        (_, without_flag), = timeline_for_chat(messages)
        (_, with_flag), = timeline_for_chat(messages, search_enabled=True)

        assert without_flag[-1].stage is Stage.WRITER
        assert with_flag[-1].stage is Stage.RESEARCH
        assert with_flag[-1].status is TimelineStatus.IN_PROGRESS
