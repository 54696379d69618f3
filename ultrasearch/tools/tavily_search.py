"""Tavily backend: the default web search and the fallback for the others."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tavily import AsyncTavilyClient


@dataclass
class SearchResult:
    title: str
    url: str
    content: str
    score: float = 0.0
    published_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "title": self.title,
            "url": self.url,
            "content": self.content,
            "score": round(self.score, 4),
        }
        if self.published_date:
            data["published_date"] = self.published_date
        return data


@dataclass
class TavilyPage:
    results: list[SearchResult]
    images: list[str] = field(default_factory=list)


def _image_url(image: Any) -> str:
    # include_image_descriptions switches images from strings to objects
    if isinstance(image, dict):
        return image.get("url") or ""
    return str(image or "")


def _unique_by_url(results: list[SearchResult]) -> list[SearchResult]:
    seen: set[str] = set()
    unique: list[SearchResult] = []
    for result in results:
        if result.url and result.url in seen:
            continue
        seen.add(result.url)
        unique.append(result)
    return unique


async def search(
    query: str,
    *,
    api_key: str,
    search_depth: str = "basic",
    max_results: int = 10,
    include_domains: list[str] | None = None,
    exclude_domains: list[str] | None = None,
) -> TavilyPage:
    if not api_key:
        raise RuntimeError("TAVILY_API_KEY is not configured")

    client = AsyncTavilyClient(api_key=api_key)
    response = await client.search(
        query=query,
        search_depth=search_depth,
        max_results=max_results,
        include_images=True,
        include_domains=include_domains or None,
        exclude_domains=exclude_domains or None,
    )

    results = [
        SearchResult(
            title=item.get("title") or "",
            url=item.get("url") or "",
            content=item.get("content") or "",
            score=float(item.get("score") or 0.0),
            published_date=item.get("published_date"),
        )
        for item in response.get("results") or []
    ]
    images = [url for url in map(_image_url, response.get("images") or []) if url]
    return TavilyPage(results=_unique_by_url(results), images=images)
