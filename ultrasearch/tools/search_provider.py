from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ultrasearch.config import Settings
from ultrasearch.services import logger as log_service
from ultrasearch.tools import brave_search, jina_search, tavily_search
from ultrasearch.tools.tavily_search import SearchResult, TavilyPage


@dataclass
class SearchResponse:
    query: str
    results: list[SearchResult]
    provider: str
    images: list[str] = field(default_factory=list)
    fallback_from: str | None = None
    fallback_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "query": self.query,
            "results": results_to_dicts(self.results),
            "images": self.images,
            "number_of_results": len(self.results),
            "provider": self.provider,
        }
        if self.fallback_from:
            data["fallback_from"] = self.fallback_from
            data["fallback_reason"] = self.fallback_reason
        return data


async def _tavily(
    query: str,
    settings: Settings,
    *,
    search_depth: str,
    max_results: int,
    include_domains: list[str] | None,
    exclude_domains: list[str] | None,
) -> TavilyPage:
    return await tavily_search.search(
        query,
        api_key=settings.tavily_api_key,
        search_depth=search_depth,
        # Tavily rejects fewer than 5 results.
        max_results=max(max_results, 5),
        include_domains=include_domains,
        exclude_domains=exclude_domains,
    )


async def search(
    query: str,
    *,
    settings: Settings,
    search_depth: str = "basic",
    max_results: int = 10,
    include_domains: list[str] | None = None,
    exclude_domains: list[str] | None = None,
) -> SearchResponse:
    provider = settings.search_provider.lower().strip()
    use_fallback = settings.search_fallback_to_tavily

    if provider == "tavily":
        page = await _tavily(
            query,
            settings,
            search_depth=search_depth,
            max_results=max_results,
            include_domains=include_domains,
            exclude_domains=exclude_domains,
        )
        return SearchResponse(query=query, results=page.results, provider="tavily", images=page.images)

    if provider in ("brave", "jina"):
        try:
            if provider == "brave":
                results = await brave_search.search(
                    query,
                    api_key=settings.brave_api_key,
                    max_results=max_results,
                    timeout=settings.tool_timeout_seconds,
                )
            else:
                results = await jina_search.search(
                    query,
                    api_key=settings.jina_api_key,
                    max_results=max_results,
                    timeout=settings.tool_timeout_seconds,
                )
            if results or not use_fallback:
                return SearchResponse(query=query, results=results, provider=provider)
            reason = f"{provider} returned zero results"
        except Exception as e:
            if not use_fallback:
                raise
            reason = str(e)

        log_service.log_event(
            event_type="search_fallback",
            message=f"Falling back from {provider} to tavily",
            reason=reason,
        )
        page = await _tavily(
            query,
            settings,
            search_depth=search_depth,
            max_results=max_results,
            include_domains=include_domains,
            exclude_domains=exclude_domains,
        )
        return SearchResponse(
            query=query,
            results=page.results,
            provider="tavily",
            images=page.images,
            fallback_from=provider,
            fallback_reason=reason,
        )

    raise ValueError(f"Unsupported SEARCH_PROVIDER: {settings.search_provider}")


def results_to_dicts(results: list[SearchResult]) -> list[dict]:
    return [r.to_dict() for r in results]
