from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

JINA_READER_URL = "https://r.jina.ai/"
CONTENT_CHARACTER_LIMIT = 10_000


@dataclass
class RetrieveResult:
    url: str
    title: str
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [{"title": self.title, "url": self.url, "content": self.content}],
            "query": "",
            "images": [],
        }


async def retrieve(url: str, *, api_key: str = "", timeout: float = 30.0) -> RetrieveResult:
    """Fetch a page as markdown through the Jina Reader API."""
    headers = {"Accept": "application/json", "X-Return-Format": "markdown"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(f"{JINA_READER_URL}{url}", headers=headers)
        response.raise_for_status()
        payload = response.json()

    data = payload.get("data") or {}
    content = str(data.get("content") or "")
    if not content:
        raise ValueError(f"No content retrieved from {url}")
    return RetrieveResult(
        url=str(data.get("url") or url),
        title=str(data.get("title") or ""),
        content=content[:CONTENT_CHARACTER_LIMIT],
    )
