from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from ultrasearch.tools import search_provider
from ultrasearch.tools.brave_search import BRAVE_SEARCH_URL
from ultrasearch.tools.jina_search import _parse_jina_search_response
from ultrasearch.tools.tavily_search import SearchResult, TavilyPage

from tests.fakes import make_settings

TAVILY_RESULT = TavilyPage(
    results=[SearchResult(title="Tavily", url="https://t.example", content="c")],
    images=["https://img"],
)


@pytest.mark.asyncio
async def test_tavily_requests_at_least_five_results():
    settings = make_settings(search_provider="tavily")

    with patch("ultrasearch.tools.tavily_search.search", new=AsyncMock(return_value=TAVILY_RESULT)) as tavily:
        response = await search_provider.search("query", settings=settings, max_results=2)

    assert response.provider == "tavily"
    assert response.images == ["https://img"]
    assert tavily.call_args.kwargs["max_results"] == 5


@pytest.mark.asyncio
@respx.mock
async def test_brave_results_are_normalized():
    respx.get(BRAVE_SEARCH_URL).mock(
        return_value=httpx.Response(
            200,
            json={"web": {"results": [
                {"title": "A", "url": "https://a.example", "description": "first"},
                {"title": "B", "url": "https://b.example", "extra_snippets": ["second"]},
            ]}},
        )
    )
    settings = make_settings(search_provider="brave", brave_api_key="k")

    response = await search_provider.search("query", settings=settings)

    assert response.provider == "brave"
    assert [(r.title, r.content) for r in response.results] == [("A", "first"), ("B", "second")]
    assert response.results[0].score > response.results[1].score
    assert response.to_dict()["number_of_results"] == 2


@pytest.mark.asyncio
@respx.mock
async def test_brave_failure_falls_back_to_tavily():
    respx.get(BRAVE_SEARCH_URL).mock(return_value=httpx.Response(503))
    settings = make_settings(search_provider="brave", brave_api_key="k")

    with patch("ultrasearch.tools.tavily_search.search", new=AsyncMock(return_value=TAVILY_RESULT)):
        response = await search_provider.search("query", settings=settings)

    assert response.provider == "tavily"
    assert response.fallback_from == "brave"
    assert response.to_dict()["fallback_from"] == "brave"


@pytest.mark.asyncio
async def test_missing_key_raises_without_fallback():
    settings = make_settings(search_provider="jina", jina_api_key="", search_fallback_to_tavily=False)

    with pytest.raises(ValueError):
        await search_provider.search("query", settings=settings)


@pytest.mark.asyncio
async def test_search_provider_raises_when_provider_unsupported():
    settings = make_settings(search_provider="unknown-provider")

    with pytest.raises(ValueError):
        await search_provider.search("query", settings=settings)


def test_parse_jina_search_response():
    text = (
        "[1] Title: First\n[1] URL Source: https://one.example\n[1] Description: one\n"
        "[2] Title: Second\n[2] URL Source: https://two.example\n[2] Description: two\n"
    )

    results = _parse_jina_search_response(text, max_results=1)

    assert results == [SearchResult(title="First", url="https://one.example", content="one")]
