from __future__ import annotations

import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field

from ultrasearch.models.annotations import Annotation

Role = Literal["user", "assistant", "system", "tool", "data"]


def new_message_id() -> str:
    return uuid.uuid4().hex[:16]


class Message(BaseModel):
    id: str = Field(default_factory=new_message_id)
    role: Role
    content: str = ""
    parts: list[dict[str, Any]] = Field(default_factory=list)
    annotations: list[Annotation] = Field(default_factory=list)
    created_at: str | None = None

    model_config = {"extra": "ignore"}

    @property
    def text(self) -> str:
        """Message text, falling back to concatenated text parts."""
        if self.content:
            return self.content
        return "".join(
            str(part.get("text", ""))
            for part in self.parts
            if isinstance(part, dict) and part.get("type") == "text"
        )

    def has_final_text(self) -> bool:
        return bool(self.text.strip())


class Section(BaseModel):
    id: str
    user_message: Message
    assistant_messages: list[Message] = Field(default_factory=list)

    @property
    def annotations(self) -> list[Annotation]:
        collected: list[Annotation] = []
        for message in self.assistant_messages:
            collected.extend(message.annotations)
        return collected

    @property
    def final_text(self) -> str:
        return "".join(m.text for m in self.assistant_messages)


def group_sections(messages: list[Message]) -> list[Section]:
    """Group a flat message list into user turns.

    Assistant messages that appear before the first user message have no turn
    to belong to and are ignored; system messages never open a section.
    """
    sections: list[Section] = []
    current: Section | None = None
    for message in messages:
        if message.role == "user":
            current = Section(id=message.id, user_message=message)
            sections.append(current)
        elif message.role == "assistant" and current is not None:
            current.assistant_messages.append(message)
    return sections


def last_user_text(messages: list[Message]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            return message.text
    return ""


def to_provider_messages(messages: list[Message]) -> list[dict[str, str]]:
    """Flatten chat messages to ``{"role", "content"}`` dicts for a provider call."""
    converted: list[dict[str, str]] = []
    for message in messages:
        if message.role not in ("user", "assistant"):
            continue
        text = message.text
        if not text:
            continue
        converted.append({"role": message.role, "content": text})
    return converted
