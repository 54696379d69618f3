from __future__ import annotations

import json

import pytest

from ultrasearch.agents.tool_selection import ParseError, ParsedToolCall, ToolSelectionResolver, parse_tool_calls
from ultrasearch.models.events import EventType
from ultrasearch.models.messages import Message
from ultrasearch.services.channel import StreamChannel
from ultrasearch.tools.adapter import SEARCH_PARAMETERS, ToolContext

from tests.fakes import FakeAdapter, ScriptedProvider, make_model, make_settings, no_tool_xml, search_result, tool_call_xml

TOOLS = {"search": SEARCH_PARAMETERS}


class TestParseToolCalls:
    def test_parses_and_coerces_parameters(self):
        text = (
            "Sure.\n<tool_call><tool>search</tool><parameters>"
            "<query>rust &amp; tokio</query><max_results>5</max_results>"
            "<search_depth>advanced</search_depth><include_domains>a.com, b.com</include_domains>"
            "</parameters></tool_call>"
        )

        calls = parse_tool_calls(text, TOOLS)

        assert calls == [
            ParsedToolCall(
                tool="search",
                parameters={
                    "query": "rust & tokio",
                    "max_results": 5,
                    "search_depth": "advanced",
                    "include_domains": ["a.com", "b.com"],
                },
            )
        ]

    def test_bare_ampersand_is_tolerated(self):
        calls = parse_tool_calls(tool_call_xml("search", query="R&D budgets"), TOOLS)

        assert calls[0].parameters["query"] == "R&D budgets"

    def test_empty_tool_means_no_tool(self):
        assert parse_tool_calls(no_tool_xml(), TOOLS) == []

    @pytest.mark.parametrize(
        "text",
        [
            "no xml at all",
            "<tool_call><tool>search</tool><parameters><query>x</parameters></tool_call>",
            tool_call_xml("weather", city="Paris"),
            tool_call_xml("search", max_results=3),
            tool_call_xml("search", query="x", max_results="many"),
            tool_call_xml("search", query="x", search_depth="deep"),
        ],
    )
    def test_bad_output_is_a_parse_error(self, text):
        assert isinstance(parse_tool_calls(text, TOOLS), ParseError)

    def test_max_calls_limits_blocks(self):
        text = tool_call_xml("search", query="a") + tool_call_xml("search", query="b") + tool_call_xml("search", query="c")

        calls = parse_tool_calls(text, TOOLS, max_calls=2)

        assert [c.parameters["query"] for c in calls] == ["a", "b"]


class TestToolSelectionResolver:
    @pytest.mark.asyncio
    async def test_disabled_selection_does_nothing(self):
        provider = ScriptedProvider()
        resolver = ToolSelectionResolver(FakeAdapter(make_settings()))
        channel = StreamChannel()

        selection = await resolver.resolve(
            [Message(role="user", content="hi")],
            enabled=False,
            model=make_model(provider),
            context=ToolContext(),
            channel=channel,
        )

        assert selection.invocations == []
        assert provider.calls == []
        assert channel.events == []

    @pytest.mark.asyncio
    async def test_successful_call_emits_call_then_result_and_followups(self):
        provider = ScriptedProvider([tool_call_xml("search", query="tallest mountain")])
        adapter = FakeAdapter(make_settings(), {"search": search_result(("Everest", "https://en.wikipedia.org/wiki/Everest"))})
        channel = StreamChannel()

        selection = await ToolSelectionResolver(adapter).resolve(
            [Message(role="user", content="What is the tallest mountain?")],
            enabled=True,
            model=make_model(provider),
            context=ToolContext(),
            channel=channel,
        )

        assert [e.event for e in channel.events] == [EventType.DATA, EventType.ANNOTATION]
        call, result = (e.data["data"] for e in channel.events)
        assert call["state"] == "call" and result["state"] == "result"
        assert call["toolCallId"] == result["toolCallId"]
        assert adapter.invoked == [("search", {"query": "tallest mountain"})]
        assert provider.calls[0].sampling.temperature == 0
        assert selection.sources == [
            {"title": "Everest", "url": "https://en.wikipedia.org/wiki/Everest", "host": "en.wikipedia.org"}
        ]
        assistant, user = selection.followup_messages
        assert assistant.content.startswith("Tool call result: ")
        assert json.loads(assistant.content.removeprefix("Tool call result: "))["results"][0]["title"] == "Everest"
        assert user.content == "Now answer the user question."

    @pytest.mark.asyncio
    async def test_unparseable_result_url_has_no_host(self):
        provider = ScriptedProvider([tool_call_xml("search", query="x")])
        adapter = FakeAdapter(make_settings(), {"search": search_result(("Broken", "http://[bad-host/page"))})

        selection = await ToolSelectionResolver(adapter).resolve(
            [Message(role="user", content="x")],
            enabled=True,
            model=make_model(provider),
            context=ToolContext(),
            channel=StreamChannel(),
        )

        assert selection.sources == [{"title": "Broken", "url": "http://[bad-host/page", "host": ""}]

    @pytest.mark.asyncio
    async def test_tool_failure_is_dropped(self):
        provider = ScriptedProvider([tool_call_xml("search", query="x")])
        adapter = FakeAdapter(make_settings(), {"search": RuntimeError("boom")})
        channel = StreamChannel()

        selection = await ToolSelectionResolver(adapter).resolve(
            [Message(role="user", content="x")],
            enabled=True,
            model=make_model(provider),
            context=ToolContext(),
            channel=channel,
        )

        assert selection.invocations == []
        assert selection.followup_messages == []
        assert channel.persistable_annotations == []

    @pytest.mark.asyncio
    async def test_unparseable_output_means_no_tool(self):
        provider = ScriptedProvider(["I think you should search the web."])
        adapter = FakeAdapter(make_settings(), {"search": search_result()})
        channel = StreamChannel()

        selection = await ToolSelectionResolver(adapter).resolve(
            [Message(role="user", content="x")],
            enabled=True,
            model=make_model(provider),
            context=ToolContext(),
            channel=channel,
        )

        assert selection.invocations == []
        assert adapter.invoked == []
        assert channel.events == []

    @pytest.mark.asyncio
    async def test_client_side_tools_are_never_offered(self):
        resolver = ToolSelectionResolver(FakeAdapter(make_settings()))

        tools = await resolver.selectable_tools(ToolContext(include_ask_question=True))

        assert "ask_question" not in [t.name for t in tools]
        assert {"search", "retrieve"} <= {t.name for t in tools}
