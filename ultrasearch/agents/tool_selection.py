"""Prompt-driven tool selection.

The model is asked for a constrained ``<tool_call>`` XML block instead of
native function calling, so selection works with any provider. Parsing
returns values, never raises: a ``ParseError`` means "no tool needed".
"""
from __future__ import annotations

import asyncio
import json
import re
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from ultrasearch.llm_client import LanguageModel, SamplingParams
from ultrasearch.models.annotations import Annotation, ToolInvocation
from ultrasearch.models.messages import Message, to_provider_messages
from ultrasearch.services import logger as log_service
from ultrasearch.services import streaming
from ultrasearch.services.channel import StreamChannel
from ultrasearch.services.prompt_store import render_prompt
from ultrasearch.tools.adapter import ToolContext, ToolFailure, ToolInvocationAdapter, ToolSpec

_TOOL_CALL_BLOCK = re.compile(r"<tool_call>.*?</tool_call>", re.DOTALL)
_BARE_AMPERSAND = re.compile(r"&(?!(?:amp|lt|gt|quot|apos|#\d+|#x[0-9a-fA-F]+);)")


@dataclass(frozen=True)
class ParsedToolCall:
    tool: str
    parameters: dict[str, Any]


@dataclass(frozen=True)
class ParseError:
    reason: str
    raw: str = ""


def _coerce(value: str, schema: dict[str, Any]) -> Any:
    kind = schema.get("type", "string")
    if kind == "integer":
        return int(value)
    if kind == "number":
        return float(value)
    if kind == "boolean":
        lowered = value.lower()
        if lowered not in ("true", "false"):
            raise ValueError(f"not a boolean: {value!r}")
        return lowered == "true"
    if kind == "array":
        return [item.strip() for item in value.split(",") if item.strip()]
    if kind == "string" and "enum" in schema and value not in schema["enum"]:
        raise ValueError(f"{value!r} not in {schema['enum']}")
    return value


def _parse_block(block: str, tools: dict[str, dict[str, Any]]) -> ParsedToolCall | None | ParseError:
    try:
        root = ET.fromstring(_BARE_AMPERSAND.sub("&amp;", block))
    except ET.ParseError as e:
        return ParseError(f"malformed XML: {e}", block)

    tool_name = (root.findtext("tool") or "").strip()
    if not tool_name:
        return None
    schema = tools.get(tool_name)
    if schema is None:
        return ParseError(f"unknown tool: {tool_name}", block)

    properties: dict[str, Any] = schema.get("properties", {})
    parameters: dict[str, Any] = {}
    params_node = root.find("parameters")
    for child in list(params_node) if params_node is not None else []:
        prop = properties.get(child.tag)
        text = (child.text or "").strip()
        if prop is None or not text:
            continue
        try:
            parameters[child.tag] = _coerce(text, prop)
        except ValueError as e:
            return ParseError(f"invalid parameter {child.tag}: {e}", block)

    missing = [name for name in schema.get("required", []) if name not in parameters]
    if missing:
        return ParseError(f"missing required parameters: {', '.join(missing)}", block)
    return ParsedToolCall(tool=tool_name, parameters=parameters)


def parse_tool_calls(
    text: str,
    tools: dict[str, dict[str, Any]],
    *,
    max_calls: int = 1,
) -> list[ParsedToolCall] | ParseError:
    """Parse ``<tool_call>`` blocks against ``{tool_name: parameter_schema}``.

    An empty list means the model explicitly chose no tool.
    """
    blocks = _TOOL_CALL_BLOCK.findall(text or "")
    if not blocks:
        return ParseError("no <tool_call> block found", text or "")

    calls: list[ParsedToolCall] = []
    for block in blocks[:max_calls]:
        parsed = _parse_block(block, tools)
        if isinstance(parsed, ParseError):
            return parsed
        if parsed is not None:
            calls.append(parsed)
    return calls


def _hostname(url: str) -> str:
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


@dataclass
class ToolSelection:
    invocations: list[ToolInvocation] = field(default_factory=list)
    followup_messages: list[Message] = field(default_factory=list)
    annotations: list[Annotation] = field(default_factory=list)

    @property
    def invocation(self) -> ToolInvocation | None:
        return self.invocations[0] if self.invocations else None

    @property
    def sources(self) -> list[dict[str, str]]:
        """Title/url pairs from every search-shaped result, in result order."""
        collected: list[dict[str, str]] = []
        for invocation in self.invocations:
            result = invocation.result
            items = result.get("results") if isinstance(result, dict) else None
            for item in items or []:
                if not isinstance(item, dict):
                    continue
                url = str(item.get("url") or item.get("link") or "")
                title = str(item.get("title") or item.get("content") or url)
                collected.append({"title": title, "url": url, "host": _hostname(url)})
        return collected


def _tools_block(tools: list[ToolSpec]) -> str:
    sections: list[str] = []
    for tool in tools:
        props = tool.parameters.get("properties", {})
        required = set(tool.parameters.get("required", []))
        lines = [
            f"- {name}{'' if name in required else ' (optional)'}: {prop.get('description', '')}"
            for name, prop in props.items()
        ]
        sections.append(f"{tool.name} parameters ({tool.description}):\n" + "\n".join(lines))
    return "\n\n".join(sections)


class ToolSelectionResolver:
    def __init__(self, adapter: ToolInvocationAdapter):
        self.adapter = adapter

    async def selectable_tools(self, context: ToolContext) -> list[ToolSpec]:
        tools = await self.adapter.list_available_tools(context)
        return [t for t in tools if not t.client_side]

    async def resolve(
        self,
        messages: list[Message],
        *,
        enabled: bool,
        model: LanguageModel,
        context: ToolContext,
        channel: StreamChannel,
        max_calls: int = 1,
        current_date: str = "",
    ) -> ToolSelection:
        if not enabled:
            return ToolSelection()

        tools = await self.selectable_tools(context)
        if not tools:
            return ToolSelection()

        multiple = (
            render_prompt("tool_selection.multiple_calls", max_calls=max_calls)
            if max_calls > 1
            else render_prompt("tool_selection.single_call")
        )
        system = render_prompt(
            "tool_selection.system",
            current_date=current_date,
            default_max_results=context.default_max_results,
            multiple_instructions=multiple,
            tool_names=", ".join(t.name for t in tools),
            tools_block=_tools_block(tools),
        )
        completion = await model.generate(
            system,
            to_provider_messages(messages),
            SamplingParams(temperature=0),
            caller="tool_selection",
        )

        parsed = parse_tool_calls(
            completion.text,
            {t.name: t.parameters for t in tools},
            max_calls=max_calls,
        )
        if isinstance(parsed, ParseError):
            log_service.log_event(
                event_type="tool_selection_parse_failed",
                message="Tool selection output could not be parsed; continuing without tools",
                reason=parsed.reason,
            )
            return ToolSelection()
        if not parsed:
            return ToolSelection()

        pending = [
            ToolInvocation(tool_call_id=f"call_{uuid.uuid4().hex[:16]}", tool_name=call.tool, args=call.parameters)
            for call in parsed
        ]
        for invocation in pending:
            await channel.write_annotation(streaming.tool_call(invocation), persist=False)

        outcomes = await asyncio.gather(
            *(self.adapter.invoke(inv.tool_name, inv.args, context) for inv in pending),
            return_exceptions=True,
        )

        selection = ToolSelection()
        for invocation, outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException) or isinstance(outcome, ToolFailure):
                reason = outcome.reason if isinstance(outcome, ToolFailure) else repr(outcome)
                log_service.log_event(
                    event_type="tool_call_dropped",
                    message=f"Tool {invocation.tool_name} failed; continuing without its result",
                    tool_call_id=invocation.tool_call_id,
                    reason=reason,
                )
                continue
            resolved = invocation.with_result(outcome.value)
            result_annotation = streaming.tool_call(resolved)
            await channel.write_annotation(result_annotation)
            selection.invocations.append(resolved)
            selection.annotations.append(result_annotation)

        if not selection.invocations:
            return selection

        results = [inv.result for inv in selection.invocations]
        payload = results[0] if len(results) == 1 else results
        selection.followup_messages = [
            Message(
                role="assistant",
                content=f"Tool call result: {json.dumps(payload, ensure_ascii=False, default=str)}",
            ),
            Message(role="user", content="Now answer the user question."),
        ]
        return selection
