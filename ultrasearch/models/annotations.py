"""Annotation wire shapes and the helpers that compare and merge them."""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

Annotation = dict[str, Any]

TOOL_CALL = "tool_call"
REASONING = "reasoning"
STAGE_HEADER = "ultra-stage-header"
STAGE_RESULT = "ultra-stage"
RELATED_QUESTIONS = "related-questions"

ANNOTATION_TYPES = (TOOL_CALL, REASONING, STAGE_HEADER, STAGE_RESULT, RELATED_QUESTIONS)


class Stage(str, Enum):
    ASK = "ask"
    PLANNER = "planner"
    RESEARCH = "research"
    WRITER = "writer"
    CRITIC = "critic"

    @property
    def rank(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.ASK,
    Stage.PLANNER,
    Stage.RESEARCH,
    Stage.WRITER,
    Stage.CRITIC,
)


class ToolCallState(str, Enum):
    CALL = "call"
    RESULT = "result"


@dataclass
class ToolInvocation:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    state: ToolCallState = ToolCallState.CALL
    result: Any = None

    def with_result(self, result: Any) -> "ToolInvocation":
        if self.state is ToolCallState.RESULT:
            raise ValueError(f"Tool invocation {self.tool_call_id} already has a result")
        return ToolInvocation(
            tool_call_id=self.tool_call_id,
            tool_name=self.tool_name,
            args=self.args,
            state=ToolCallState.RESULT,
            result=result,
        )

    def to_annotation(self) -> Annotation:
        data: dict[str, Any] = {
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "args": json.dumps(self.args, ensure_ascii=False),
            "state": self.state.value,
        }
        if self.state is ToolCallState.RESULT:
            data["result"] = json.dumps(self.result, ensure_ascii=False, default=str)
        return {"type": TOOL_CALL, "data": data}

    @classmethod
    def from_annotation(cls, annotation: Annotation) -> "ToolInvocation | None":
        if not isinstance(annotation, dict) or annotation.get("type") != TOOL_CALL:
            return None
        data = annotation.get("data")
        if not isinstance(data, dict):
            return None
        tool_call_id = data.get("toolCallId")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            return None
        try:
            state = ToolCallState(data.get("state", "call"))
        except ValueError:
            return None
        return cls(
            tool_call_id=tool_call_id,
            tool_name=str(data.get("toolName", "")),
            args=_loads_or_raw(data.get("args"), default={}),
            state=state,
            result=_loads_or_raw(data.get("result"), default=None),
        )


def _loads_or_raw(value: Any, *, default: Any) -> Any:
    if value is None or value == "undefined":
        return default
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def serialize(annotation: Annotation) -> str:
    """Canonical serialized form; two annotations are equal iff these strings match."""
    return json.dumps(annotation, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def is_stage_annotation(annotation: Annotation) -> bool:
    return annotation.get("type") in (STAGE_HEADER, STAGE_RESULT)


def merge_annotations(existing: Iterable[Annotation], incoming: Iterable[Annotation]) -> list[Annotation]:
    """Merge annotation lists, de-duplicated by serialized form, first occurrence wins.

    A ``tool_call`` in ``call`` state is dropped when a ``result`` for the same
    ``toolCallId`` is part of the merged set. The operation is idempotent:
    ``merge(merge(a, b), b) == merge(a, b)``.
    """
    by_key: dict[str, Annotation] = {}
    for annotation in [*existing, *incoming]:
        if not isinstance(annotation, dict):
            continue
        key = serialize(annotation)
        if key not in by_key:
            by_key[key] = annotation

    resolved_ids = {
        annotation["data"].get("toolCallId")
        for annotation in by_key.values()
        if annotation.get("type") == TOOL_CALL
        and isinstance(annotation.get("data"), dict)
        and annotation["data"].get("state") == ToolCallState.RESULT.value
    }

    merged: list[Annotation] = []
    for annotation in by_key.values():
        data = annotation.get("data")
        if (
            annotation.get("type") == TOOL_CALL
            and isinstance(data, dict)
            and data.get("state") == ToolCallState.CALL.value
            and data.get("toolCallId") in resolved_ids
        ):
            continue
        merged.append(annotation)
    return merged


def latest_tool_invocations(annotations: Iterable[Annotation]) -> list[ToolInvocation]:
    """Collapse tool_call annotations to one invocation per id, result superseding call."""
    by_id: dict[str, ToolInvocation] = {}
    for annotation in annotations:
        invocation = ToolInvocation.from_annotation(annotation)
        if invocation is None:
            continue
        current = by_id.get(invocation.tool_call_id)
        if current is None or invocation.state is ToolCallState.RESULT:
            by_id[invocation.tool_call_id] = invocation
    return list(by_id.values())
