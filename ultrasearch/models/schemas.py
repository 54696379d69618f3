from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from ultrasearch.models.messages import Message


# --- Requests ---


class ChatRequest(BaseModel):
    id: str
    messages: list[Message]
    model: str | None = None
    search_mode: bool | None = None
    ultra_mode: bool | None = None
    regenerate: bool = False
    user_id: str = "anonymous"


SaveMode = Literal["replace", "append", "merge"]


class SaveChatRequest(BaseModel):
    id: str
    messages: list[Message]
    title: str | None = None
    user_id: str = "anonymous"
    mode: SaveMode = "merge"


# --- Responses ---


class SaveChatResponse(BaseModel):
    id: str
    saved: bool
    message_count: int


class ChatResponse(BaseModel):
    id: str
    title: str
    user_id: str
    created_at: str
    messages: list[Message]


class TimelineItemResponse(BaseModel):
    stage: str
    header_title: str = ""
    header_text: str = ""
    result_title: str = ""
    result_text: str = ""
    status: str
    sources: list[dict[str, str]] = Field(default_factory=list)


class SectionTimelineResponse(BaseModel):
    section_id: str
    items: list[TimelineItemResponse]


class TimelineResponse(BaseModel):
    chat_id: str
    sections: list[SectionTimelineResponse]


class ModelInfo(BaseModel):
    id: str
    name: str
    provider: str
    provider_id: str
    enabled: bool
    tool_call_type: str
    description: str = ""


class ModelsResponse(BaseModel):
    models: list[ModelInfo]
