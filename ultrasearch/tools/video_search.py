from __future__ import annotations

from typing import Any

import httpx

SERPER_VIDEOS_URL = "https://google.serper.dev/videos"


async def search(query: str, *, api_key: str, timeout: float = 30.0) -> dict[str, Any]:
    """Search YouTube videos through Serper; returns Serper's payload as-is."""
    if not api_key:
        raise RuntimeError("SERPER_API_KEY is not configured")

    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(
            SERPER_VIDEOS_URL,
            json={"q": query},
            headers={"X-API-KEY": api_key, "Content-Type": "application/json"},
        )
        response.raise_for_status()
        return response.json()
