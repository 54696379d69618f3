from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from ultrasearch.api.deps import get_context
from ultrasearch.context import AppContext
from ultrasearch.models.catalog import split_model_key
from ultrasearch.models.schemas import (
    ChatRequest,
    ChatResponse,
    SectionTimelineResponse,
    TimelineItemResponse,
    TimelineResponse,
)
from ultrasearch.services import logger as log_service
from ultrasearch.services.channel import StreamChannel
from ultrasearch.services.pipeline import ChatPipeline, ChatTurn
from ultrasearch.services.timeline import timeline_for_chat

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("")
async def stream_chat(request: ChatRequest, context: AppContext = Depends(get_context)):
    """Run one chat turn and stream its text, annotations and finish event over SSE."""
    settings = context.settings
    model_key = request.model or settings.default_model
    try:
        provider_id, _ = split_model_key(model_key)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not context.providers.is_provider_enabled(provider_id):
        raise HTTPException(status_code=400, detail=f"Provider '{provider_id}' is not configured")
    if not request.messages or request.messages[-1].role != "user":
        raise HTTPException(status_code=400, detail="The last message must come from the user")

    turn = ChatTurn(
        chat_id=request.id,
        messages=request.messages,
        model_key=model_key,
        search_mode=settings.search_mode_default if request.search_mode is None else request.search_mode,
        ultra_mode=settings.ultra_mode_default if request.ultra_mode is None else request.ultra_mode,
        regenerate=request.regenerate,
        user_id=request.user_id,
    )
    pipeline = ChatPipeline(context)

    async def event_generator():
        channel = StreamChannel(max_size=settings.channel_max_size)
        task = asyncio.create_task(pipeline.run(turn, channel))
        log_service.log_event(
            event_type="chat_started",
            message="Chat turn started",
            chat_id=turn.chat_id,
            model=model_key,
            ultra=turn.ultra_mode,
        )
        try:
            async for event in channel:
                yield event.to_sse()
        finally:
            # Client gone or stream finished: the producer never outlives the response.
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    return EventSourceResponse(event_generator())


@router.get("/{chat_id}", response_model=ChatResponse)
async def get_chat(chat_id: str, user_id: str = "anonymous", context: AppContext = Depends(get_context)):
    chat = await context.store.get_chat(chat_id, user_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    return ChatResponse(
        id=chat.id,
        title=chat.title,
        user_id=chat.user_id,
        created_at=chat.created_at,
        messages=chat.messages,
    )


@router.get("/{chat_id}/timeline", response_model=TimelineResponse)
async def get_timeline(
    chat_id: str,
    user_id: str = "anonymous",
    search_enabled: bool | None = None,
    context: AppContext = Depends(get_context),
):
    """Rebuild each section's progress timeline from stored annotations."""
    chat = await context.store.get_chat(chat_id, user_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    sections = [
        SectionTimelineResponse(
            section_id=section.id,
            items=[TimelineItemResponse(**item.to_dict()) for item in items],
        )
        for section, items in timeline_for_chat(chat.messages, search_enabled)
    ]
    return TimelineResponse(chat_id=chat.id, sections=sections)
