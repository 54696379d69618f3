"""Client for the remote action server that hosts user-registered tools."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger


@dataclass(frozen=True)
class RegisteredAction:
    name: str
    description: str
    tool_key: str
    action: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


def _parse_action(raw: Any) -> RegisteredAction | None:
    if not isinstance(raw, dict):
        return None
    function = raw.get("function") or {}
    metadata = raw.get("metadata") or {}
    name = function.get("name")
    tool_key = metadata.get("tool_key")
    action = metadata.get("action")
    if not name or not tool_key or not action:
        return None
    parameters = function.get("parameters")
    if not isinstance(parameters, dict):
        parameters = {"type": "object", "properties": {}}
    return RegisteredAction(
        name=str(name),
        description=str(function.get("description", "")),
        tool_key=str(tool_key),
        action=str(action),
        parameters=parameters,
    )


async def fetch_actions(
    base_url: str,
    api_key: str,
    user_id: str,
    *,
    timeout: float = 30.0,
) -> list[RegisteredAction]:
    """List the actions registered for ``user_id``; an unreachable server yields none."""
    if not base_url or not api_key or not user_id:
        return []

    url = f"{base_url.rstrip('/')}/tools/openai/users/{user_id}/openai-tools"
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url, headers={"Authorization": f"Bearer {api_key}"})
            response.raise_for_status()
            payload = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Failed to fetch registered actions for {user_id}: {e}")
        return []

    if not isinstance(payload, list):
        return []
    actions = [a for a in (_parse_action(item) for item in payload) if a is not None]
    logger.debug(f"Loaded {len(actions)} registered actions for {user_id}")
    return actions


async def execute_action(
    base_url: str,
    api_key: str,
    user_id: str,
    action: RegisteredAction,
    parameters: dict[str, Any],
    *,
    timeout: float = 30.0,
) -> Any:
    url = f"{base_url.rstrip('/')}/tools/{action.tool_key}/execute"
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(
            url,
            params={"user_id": user_id},
            headers={"Authorization": f"Bearer {api_key}"},
            json={"parameters": {"action": action.action, **parameters}},
        )
        response.raise_for_status()
        payload = response.json()
    if isinstance(payload, dict) and "result" in payload:
        return payload["result"]
    return payload
