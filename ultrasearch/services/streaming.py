from __future__ import annotations

from typing import Any

from ultrasearch.models import annotations as ann
from ultrasearch.models.annotations import Annotation, Stage, ToolInvocation
from ultrasearch.models.events import EventType, StreamEvent


# --- Annotation constructors ---


def tool_call(invocation: ToolInvocation) -> Annotation:
    return invocation.to_annotation()


def stage_header(stage: Stage, title: str, text: str, *, search_enabled: bool | None = None) -> Annotation:
    """Announce a stage before it starts.

    The planner header records whether search was on for the turn so a
    timeline built mid-stream knows if a research stage is coming.
    """
    data: dict[str, Any] = {"stage": stage.value, "title": title, "text": text}
    if search_enabled is not None:
        data["searchEnabled"] = search_enabled
    return {"type": ann.STAGE_HEADER, "data": data}


def stage_result(stage: Stage, text: str, title: str, result_title: str) -> Annotation:
    """Summarize a stage once it has produced output."""
    return {
        "type": ann.STAGE_RESULT,
        "data": {
            "stage": stage.value,
            "text": text,
            "title": title,
            "resultTitle": result_title,
        },
    }


def reasoning(time_ms: int, text: str | None = None) -> Annotation:
    data: dict[str, Any] = {"time": time_ms}
    if text is not None:
        data["reasoning"] = text
    return {"type": ann.REASONING, "data": data}


def related_questions(queries: list[str] | None) -> Annotation:
    """Related questions; ``None`` builds the loading placeholder."""
    if queries is None:
        return {"type": ann.RELATED_QUESTIONS, "data": {"items": [], "status": "loading"}}
    return {
        "type": ann.RELATED_QUESTIONS,
        "data": {"items": [{"query": q} for q in queries]},
    }


# --- Stream events ---


def text_delta(text: str) -> StreamEvent:
    return StreamEvent(event=EventType.TEXT, data={"text": text})


def annotation(value: Annotation, *, persist: bool = True) -> StreamEvent:
    return StreamEvent(event=EventType.ANNOTATION if persist else EventType.DATA, data=value)


def reasoning_delta(text: str) -> StreamEvent:
    return StreamEvent(event=EventType.REASONING, data={"text": text})


def finish(message_id: str, **kwargs: Any) -> StreamEvent:
    return StreamEvent(event=EventType.FINISH, data={"message_id": message_id, **kwargs})


def error(message: str, stage: str | None = None) -> StreamEvent:
    data: dict[str, Any] = {"message": message}
    if stage:
        data["stage"] = stage
    return StreamEvent(event=EventType.ERROR, data=data)
