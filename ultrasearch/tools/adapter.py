"""Uniform entry point to every external capability.

``invoke`` never raises for provider problems: network errors, non-2xx
responses, timeouts and unknown tool names all come back as a
``ToolFailure`` value so callers can decide how to degrade.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from ultrasearch.config import Settings
from ultrasearch.services import logger as log_service
from ultrasearch.tools import registered_actions, retrieve, search_provider, video_search
from ultrasearch.tools.registered_actions import RegisteredAction

SEARCH = "search"
RETRIEVE = "retrieve"
VIDEO_SEARCH = "videoSearch"
ASK_QUESTION = "ask_question"

SEARCH_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "The query to search for"},
        "max_results": {"type": "integer", "description": "The maximum number of results to return"},
        "search_depth": {
            "type": "string",
            "enum": ["basic", "advanced"],
            "description": "The depth of the search",
        },
        "include_domains": {
            "type": "array",
            "items": {"type": "string"},
            "description": "A list of domains to specifically include in the search results",
        },
        "exclude_domains": {
            "type": "array",
            "items": {"type": "string"},
            "description": "A list of domains to specifically exclude from the search results",
        },
    },
    "required": ["query"],
}

RETRIEVE_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {"url": {"type": "string", "description": "The url to retrieve"}},
    "required": ["url"],
}

VIDEO_SEARCH_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {"query": {"type": "string", "description": "The query to search for"}},
    "required": ["query"],
}

ASK_QUESTION_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "question": {"type": "string", "description": "The main question to ask the user"},
        "options": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "value": {"type": "string"},
                    "label": {"type": "string"},
                },
                "required": ["value", "label"],
            },
            "description": "Predefined options for the user to choose from",
        },
        "allowsInput": {"type": "boolean", "description": "Whether to allow free-form input"},
        "inputLabel": {"type": "string", "description": "Label for the free-form input field"},
        "inputPlaceholder": {"type": "string", "description": "Placeholder text for the input field"},
    },
    "required": ["question", "options", "allowsInput"],
}


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]
    client_side: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


@dataclass
class ToolContext:
    user_id: str = ""
    search_mode: bool = True
    model_key: str = ""
    include_ask_question: bool = False
    default_max_results: int = 20
    actions: dict[str, RegisteredAction] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    tool_name: str
    value: Any


@dataclass(frozen=True)
class ToolFailure:
    tool_name: str
    reason: str
    retryable: bool = False


class ToolInvocationAdapter:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._semaphore = asyncio.Semaphore(max(settings.tool_max_parallel_requests, 1))

    def builtin_tools(self, context: ToolContext) -> list[ToolSpec]:
        if not context.search_mode:
            return []
        tools = [
            ToolSpec(SEARCH, "Search the web for information", SEARCH_PARAMETERS),
            ToolSpec(RETRIEVE, "Retrieve content from the web", RETRIEVE_PARAMETERS),
        ]
        if self.settings.serper_api_key:
            tools.append(ToolSpec(VIDEO_SEARCH, "Search for videos from YouTube", VIDEO_SEARCH_PARAMETERS))
        if context.include_ask_question:
            tools.append(
                ToolSpec(
                    ASK_QUESTION,
                    "Ask a clarifying question with multiple options when more information is needed",
                    ASK_QUESTION_PARAMETERS,
                    client_side=True,
                )
            )
        return tools

    async def list_available_tools(self, context: ToolContext) -> list[ToolSpec]:
        tools = self.builtin_tools(context)
        actions = await registered_actions.fetch_actions(
            self.settings.action_server_url,
            self.settings.action_server_api_key,
            context.user_id,
            timeout=self.settings.tool_timeout_seconds,
        )
        for action in actions:
            context.actions[action.name] = action
            tools.append(ToolSpec(action.name, action.description, action.parameters))
        return tools

    async def invoke(self, name: str, args: dict[str, Any], context: ToolContext) -> ToolResult | ToolFailure:
        t0 = time.monotonic()
        try:
            async with self._semaphore:
                async with asyncio.timeout(self.settings.tool_timeout_seconds):
                    value = await self._dispatch(name, args, context)
        except LookupError as e:
            outcome: ToolResult | ToolFailure = ToolFailure(name, str(e))
        except TimeoutError:
            outcome = ToolFailure(name, "timed out", retryable=True)
        except httpx.HTTPStatusError as e:
            outcome = ToolFailure(
                name,
                f"HTTP {e.response.status_code}",
                retryable=e.response.status_code >= 500,
            )
        except Exception as e:
            outcome = ToolFailure(name, str(e) or type(e).__name__, retryable=isinstance(e, httpx.TransportError))
        else:
            outcome = ToolResult(name, value)

        log_service.log_tool_call(
            name,
            duration_ms=int((time.monotonic() - t0) * 1000),
            error=outcome.reason if isinstance(outcome, ToolFailure) else None,
        )
        return outcome

    async def _dispatch(self, name: str, args: dict[str, Any], context: ToolContext) -> Any:
        settings = self.settings
        if name == SEARCH:
            response = await search_provider.search(
                str(args.get("query", "")),
                settings=settings,
                search_depth=str(args.get("search_depth") or "basic"),
                max_results=int(args.get("max_results") or context.default_max_results),
                include_domains=list(args.get("include_domains") or []),
                exclude_domains=list(args.get("exclude_domains") or []),
            )
            return response.to_dict()
        if name == RETRIEVE:
            result = await retrieve.retrieve(
                str(args.get("url", "")),
                api_key=settings.jina_api_key,
                timeout=settings.tool_timeout_seconds,
            )
            return result.to_dict()
        if name == VIDEO_SEARCH:
            return await video_search.search(
                str(args.get("query", "")),
                api_key=settings.serper_api_key,
                timeout=settings.tool_timeout_seconds,
            )
        if name == ASK_QUESTION:
            raise LookupError("ask_question is answered by the user, not executed")

        action = context.actions.get(name)
        if action is None:
            raise LookupError(f"Unknown tool: {name}")
        return await registered_actions.execute_action(
            settings.action_server_url,
            settings.action_server_api_key,
            context.user_id,
            action,
            args,
            timeout=settings.tool_timeout_seconds,
        )
