from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from ultrasearch.tools import search_provider
from ultrasearch.tools.adapter import ToolContext, ToolFailure, ToolInvocationAdapter, ToolResult
from ultrasearch.tools.retrieve import JINA_READER_URL
from ultrasearch.tools.search_provider import SearchResponse

from tests.fakes import make_settings

ACTION_SERVER = "https://actions.example"
ACTIONS_PAYLOAD = [
    {
        "function": {"name": "create_issue", "description": "Create an issue", "parameters": {"type": "object"}},
        "metadata": {"tool_key": "github", "action": "GITHUB_CREATE_ISSUE"},
    },
    {"function": {"name": "incomplete"}},
]


def _adapter(**overrides) -> ToolInvocationAdapter:
    return ToolInvocationAdapter(make_settings(**overrides))


class TestBuiltinTools:
    def test_no_tools_when_search_is_off(self):
        assert _adapter().builtin_tools(ToolContext(search_mode=False)) == []

    def test_video_search_needs_serper_key(self):
        names = [t.name for t in _adapter(serper_api_key="k").builtin_tools(ToolContext())]

        assert names == ["search", "retrieve", "videoSearch"]

    def test_ask_question_is_client_side(self):
        tools = _adapter().builtin_tools(ToolContext(include_ask_question=True))

        ask = [t for t in tools if t.name == "ask_question"]
        assert ask and ask[0].client_side

    def test_default_max_results_come_from_settings(self):
        settings = make_settings(search_default_max_results=12, search_ollama_max_results=3)

        assert settings.max_results_for("ollama:llama3.1") == 3
        assert settings.max_results_for("openai:gpt-4o-mini") == 12


class TestInvoke:
    @pytest.mark.asyncio
    async def test_unknown_tool_is_a_failure_value(self):
        outcome = await _adapter().invoke("weather", {}, ToolContext())

        assert isinstance(outcome, ToolFailure)
        assert "Unknown tool" in outcome.reason

    @pytest.mark.asyncio
    async def test_ask_question_is_never_executed(self):
        outcome = await _adapter().invoke("ask_question", {"question": "?"}, ToolContext())

        assert isinstance(outcome, ToolFailure)

    @pytest.mark.asyncio
    @respx.mock
    async def test_retrieve_returns_search_shaped_result(self):
        respx.get(f"{JINA_READER_URL}https://page.example").mock(
            return_value=httpx.Response(
                200, json={"data": {"url": "https://page.example", "title": "Page", "content": "x" * 20_000}}
            )
        )

        outcome = await _adapter().invoke("retrieve", {"url": "https://page.example"}, ToolContext())

        assert isinstance(outcome, ToolResult)
        assert outcome.value["results"][0]["title"] == "Page"
        assert len(outcome.value["results"][0]["content"]) == 10_000

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_errors_are_failures(self):
        respx.get(f"{JINA_READER_URL}https://page.example").mock(return_value=httpx.Response(502))

        outcome = await _adapter().invoke("retrieve", {"url": "https://page.example"}, ToolContext())

        assert outcome == ToolFailure("retrieve", "HTTP 502", retryable=True)

    @pytest.mark.asyncio
    async def test_search_without_max_results_uses_context_default(self):
        response = SearchResponse(query="everest", results=[], provider="tavily")
        with patch.object(search_provider, "search", AsyncMock(return_value=response)) as search:
            outcome = await _adapter().invoke("search", {"query": "everest"}, ToolContext(default_max_results=7))

        assert isinstance(outcome, ToolResult)
        assert search.call_args.kwargs["max_results"] == 7


class TestRegisteredActions:
    @pytest.mark.asyncio
    @respx.mock
    async def test_actions_are_listed_and_executed(self):
        respx.get(f"{ACTION_SERVER}/tools/openai/users/u1/openai-tools").mock(
            return_value=httpx.Response(200, json=ACTIONS_PAYLOAD)
        )
        execute = respx.post(f"{ACTION_SERVER}/tools/github/execute").mock(
            return_value=httpx.Response(200, json={"result": {"number": 7}})
        )
        adapter = _adapter(action_server_url=ACTION_SERVER, action_server_api_key="key")
        context = ToolContext(user_id="u1")

        tools = await adapter.list_available_tools(context)
        outcome = await adapter.invoke("create_issue", {"title": "Bug"}, context)

        assert [t.name for t in tools][-1] == "create_issue"
        assert "incomplete" not in context.actions
        assert outcome == ToolResult("create_issue", {"number": 7})
        request = execute.calls.last.request
        assert request.url.params["user_id"] == "u1"
        assert json.loads(request.content)["parameters"] == {"action": "GITHUB_CREATE_ISSUE", "title": "Bug"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_unreachable_action_server_yields_builtin_tools_only(self):
        respx.get(f"{ACTION_SERVER}/tools/openai/users/u1/openai-tools").mock(side_effect=httpx.ConnectError("down"))
        adapter = _adapter(action_server_url=ACTION_SERVER, action_server_api_key="key")

        tools = await adapter.list_available_tools(ToolContext(user_id="u1"))

        assert [t.name for t in tools] == ["search", "retrieve"]
