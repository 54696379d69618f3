"""Brave web search backend."""
from __future__ import annotations

import re

import httpx

from ultrasearch.tools.tavily_search import SearchResult

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
BRAVE_MAX_COUNT = 20

_TAG = re.compile(r"</?[a-z][^>]*>", re.IGNORECASE)


def _content(item: dict) -> str:
    description = _TAG.sub("", item.get("description") or "").strip()
    if description:
        return description
    snippets = [_TAG.sub("", s).strip() for s in item.get("extra_snippets") or [] if s]
    return " ".join(s for s in snippets if s)


def _to_result(rank: int, item: dict) -> SearchResult:
    # Brave has no relevance score; reciprocal rank keeps the ordering.
    return SearchResult(
        title=_TAG.sub("", item.get("title") or ""),
        url=item.get("url") or "",
        content=_content(item),
        score=1.0 / (rank + 1),
        published_date=item.get("page_age"),
    )


async def search(
    query: str,
    *,
    api_key: str,
    max_results: int = 10,
    timeout: float = 30.0,
) -> list[SearchResult]:
    if not api_key:
        raise ValueError("BRAVE_API_KEY is not configured")

    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(
            BRAVE_SEARCH_URL,
            params={"q": query, "count": min(max_results, BRAVE_MAX_COUNT), "extra_snippets": "true"},
            headers={"Accept": "application/json", "X-Subscription-Token": api_key},
        )
        response.raise_for_status()

    items = (response.json().get("web") or {}).get("results") or []
    return [_to_result(rank, item) for rank, item in enumerate(items[:max_results])]
