from __future__ import annotations

import re
from urllib.parse import quote

import httpx

from ultrasearch.tools.tavily_search import SearchResult

_RESULT_FIELD = re.compile(
    r"\[(\d+)\]\s+(Title|URL Source|Description):\s*(.*?)(?=\[\d+\]|$)",
    re.DOTALL,
)


def _parse_jina_search_response(text: str, max_results: int = 10) -> list[SearchResult]:
    """Parse Jina's plain text search response.

    Format::

        [1] Title: ...
        [1] URL Source: ...
        [1] Description: ...
    """
    blocks: dict[int, dict[str, str]] = {}
    for index_str, field_name, value in _RESULT_FIELD.findall(text):
        blocks.setdefault(int(index_str), {})[field_name] = value.strip()

    results: list[SearchResult] = []
    for index in sorted(blocks):
        fields = blocks[index]
        results.append(
            SearchResult(
                title=fields.get("Title", ""),
                url=fields.get("URL Source", ""),
                content=fields.get("Description", ""),
            )
        )
    return results[:max_results]


async def search(
    query: str,
    *,
    api_key: str,
    max_results: int = 10,
    timeout: float = 30.0,
) -> list[SearchResult]:
    """Search via ``GET https://s.jina.ai/?q=<query>`` (plain text response)."""
    if not api_key:
        raise ValueError("JINA_API_KEY not configured")

    url = f"https://s.jina.ai/?q={quote(query, safe='')}"
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(
            url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-Respond-With": "no-content",
            },
        )
        response.raise_for_status()
        return _parse_jina_search_response(response.text, max_results)
