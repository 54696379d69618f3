"""Progress timeline derived from a message's annotation log.

Everything here is a pure function of its inputs: the same annotations and
the same "final text present" flag always produce the same items. It works
on a partial log (mid-stream) and on a replayed one (after reload).
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable

from ultrasearch.models import annotations as ann
from ultrasearch.models.annotations import (
    STAGE_ORDER,
    Annotation,
    Stage,
    ToolCallState,
    ToolInvocation,
    latest_tool_invocations,
    merge_annotations,
)
from ultrasearch.models.messages import Message, Section, group_sections
from ultrasearch.tools.adapter import ASK_QUESTION

STAGE_LABELS: dict[Stage, str] = {
    Stage.ASK: "Clarifying question",
    Stage.PLANNER: "Planning",
    Stage.RESEARCH: "Research",
    Stage.WRITER: "Drafting",
    Stage.CRITIC: "Critiquing",
}
ASK_HEADER_TEXT = "Confirm or refine the question to proceed"


class TimelineStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"


@dataclass(frozen=True)
class SectionContext:
    tool_use_enabled: bool = False
    is_latest: bool = True
    include_ask: bool = True
    ask_invocation: ToolInvocation | None = None


@dataclass(frozen=True)
class TimelineItem:
    stage: Stage
    header_title: str = ""
    header_text: str = ""
    result_title: str = ""
    result_text: str = ""
    status: TimelineStatus = TimelineStatus.PENDING
    sources: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "header_title": self.header_title,
            "header_text": self.header_text,
            "result_title": self.result_title,
            "result_text": self.result_text,
            "status": self.status.value,
            "sources": [{"title": title, "url": url} for title, url in self.sources],
        }


@dataclass
class _Slot:
    stage: Stage
    header_title: str = ""
    header_text: str = ""
    result_title: str = ""
    result_text: str = ""
    status: TimelineStatus = TimelineStatus.PENDING
    sources: list[tuple[str, str]] = field(default_factory=list)

    @property
    def has_result(self) -> bool:
        return bool(self.result_text) or self.status is TimelineStatus.DONE

    def freeze(self) -> TimelineItem:
        return TimelineItem(
            stage=self.stage,
            header_title=self.header_title,
            header_text=self.header_text,
            result_title=self.result_title,
            result_text=self.result_text,
            status=self.status,
            sources=tuple(self.sources),
        )


def _stage_of(annotation: Annotation) -> Stage | None:
    data = annotation.get("data")
    if not isinstance(data, dict):
        return None
    try:
        return Stage(data.get("stage"))
    except ValueError:
        return None


def _research_sources(invocations: Iterable[ToolInvocation]) -> list[tuple[str, str]]:
    sources: list[tuple[str, str]] = []
    for invocation in invocations:
        if invocation.state is not ToolCallState.RESULT or not isinstance(invocation.result, dict):
            continue
        for item in invocation.result.get("results") or []:
            if isinstance(item, dict) and item.get("url"):
                url = str(item["url"])
                sources.append((str(item.get("title") or url), url))
    return sources


def _answer_text(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, sort_keys=True)


def build_timeline(
    annotations: list[Annotation],
    final_text_present: bool,
    context: SectionContext = SectionContext(),
) -> list[TimelineItem]:
    slots = {stage: _Slot(stage) for stage in STAGE_ORDER}
    placeholders = context.is_latest and not final_text_present

    for annotation in annotations:
        if annotation.get("type") != ann.STAGE_HEADER:
            continue
        stage = _stage_of(annotation)
        if stage is None or stage is Stage.ASK:
            continue
        slot = slots[stage]
        slot.header_title = STAGE_LABELS[stage]
        slot.header_text = str(annotation["data"].get("text") or slot.header_text)

    for annotation in annotations:
        if annotation.get("type") != ann.STAGE_RESULT:
            continue
        stage = _stage_of(annotation)
        if stage is None or stage is Stage.ASK:
            continue
        slot = slots[stage]
        slot.header_title = slot.header_title or STAGE_LABELS[stage]
        slot.result_title = str(annotation["data"].get("resultTitle") or "")
        slot.result_text = str(annotation["data"].get("text") or "")
        slot.status = TimelineStatus.DONE

    invocations = latest_tool_invocations(annotations)
    slots[Stage.RESEARCH].sources = _research_sources(i for i in invocations if i.tool_name != ASK_QUESTION)

    if context.include_ask:
        ask = next((i for i in invocations if i.tool_name == ASK_QUESTION), None) or context.ask_invocation
        if ask is not None:
            slot = slots[Stage.ASK]
            slot.header_title = STAGE_LABELS[Stage.ASK]
            slot.header_text = ASK_HEADER_TEXT
            if ask.state is ToolCallState.RESULT:
                slot.status = TimelineStatus.DONE
                slot.result_title = "Answer"
                slot.result_text = _answer_text(ask.result)
            else:
                slot.status = TimelineStatus.IN_PROGRESS
                slot.result_text = ""

    if placeholders:
        for stage in STAGE_ORDER[1:]:
            slot = slots[stage]
            if slot.header_title and not slot.has_result:
                slot.status = TimelineStatus.IN_PROGRESS

        applicable = [s for s in STAGE_ORDER if s is not Stage.RESEARCH or context.tool_use_enabled]
        for completed, upcoming in zip(applicable, applicable[1:]):
            done = slots[completed].status is TimelineStatus.DONE
            nxt = slots[upcoming]
            if done and not nxt.has_result and not nxt.header_title:
                nxt.header_title = STAGE_LABELS[upcoming]
                nxt.status = TimelineStatus.IN_PROGRESS

    research_active = slots[Stage.RESEARCH].status is TimelineStatus.IN_PROGRESS

    items: list[TimelineItem] = []
    for stage in STAGE_ORDER:
        slot = slots[stage]
        if stage is Stage.WRITER and research_active:
            continue
        if placeholders:
            if slot.header_title or slot.result_text or slot.status is not TimelineStatus.PENDING:
                items.append(slot.freeze())
        elif slot.status is TimelineStatus.DONE:
            items.append(slot.freeze())
    return items


def _ask_from_earlier(messages: list[Message]) -> ToolInvocation | None:
    for message in messages:
        for invocation in latest_tool_invocations(message.annotations):
            if invocation.tool_name == ASK_QUESTION:
                return invocation
    return None


def reconstruct_timeline(messages: list[Message], context: SectionContext = SectionContext()) -> list[TimelineItem]:
    """Timeline for one section's assistant messages.

    Annotations from every assistant message in the section are merged
    (de-duplicated, results superseding calls) before the timeline is built,
    so a clarifying question asked in an earlier message of the same turn
    still shows as the first stage.
    """
    assistants = [m for m in messages if m.role == "assistant"]
    merged: list[Annotation] = []
    for message in assistants:
        merged = merge_annotations(merged, message.annotations)
    final_text_present = any(m.has_final_text() for m in assistants[-1:])
    if context.ask_invocation is None and assistants:
        context = replace(context, ask_invocation=_ask_from_earlier(assistants[:-1]))
    return build_timeline(merged, final_text_present, context)


def section_tool_use_enabled(section: Section, search_enabled: bool | None = None) -> bool:
    """Whether the research stage applies to a section.

    Any recorded research or tool activity settles it. Otherwise the
    caller's ``search_enabled`` wins, then the flag the planner header
    recorded for the turn.
    """
    recorded: bool | None = None
    for annotation in section.annotations:
        if annotation.get("type") == ann.TOOL_CALL:
            return True
        if annotation.get("type") not in (ann.STAGE_HEADER, ann.STAGE_RESULT):
            continue
        stage = _stage_of(annotation)
        if stage is Stage.RESEARCH:
            return True
        if stage is Stage.PLANNER and isinstance(annotation["data"].get("searchEnabled"), bool):
            recorded = annotation["data"]["searchEnabled"]
    if search_enabled is not None:
        return search_enabled
    return bool(recorded)


def timeline_for_chat(
    messages: list[Message], search_enabled: bool | None = None
) -> list[tuple[Section, list[TimelineItem]]]:
    """One timeline per section; ``search_enabled`` describes the latest turn."""
    sections = group_sections(messages)
    timelines: list[tuple[Section, list[TimelineItem]]] = []
    for index, section in enumerate(sections):
        is_latest = index == len(sections) - 1
        context = SectionContext(
            tool_use_enabled=section_tool_use_enabled(section, search_enabled if is_latest else None),
            is_latest=is_latest,
        )
        timelines.append((section, reconstruct_timeline(section.assistant_messages, context)))
    return timelines
