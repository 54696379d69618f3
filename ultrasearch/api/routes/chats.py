from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ultrasearch.api.deps import get_context
from ultrasearch.context import AppContext
from ultrasearch.models.schemas import SaveChatRequest, SaveChatResponse
from ultrasearch.services import logger as log_service
from ultrasearch.services.chat_store import ChatPersistenceError, apply_save

router = APIRouter(prefix="/api/chats", tags=["chats"])


@router.post("/save", response_model=SaveChatResponse)
async def save_chat(request: SaveChatRequest, context: AppContext = Depends(get_context)):
    """Save a client-side transcript.

    ``mode`` selects how it combines with what is stored: ``replace``,
    ``append`` or ``merge`` (annotations folded by message id).
    """
    store = context.store
    if not store.enabled:
        return SaveChatResponse(id=request.id, saved=False, message_count=0)

    try:
        existing = await store.get_chat(request.id, request.user_id)
        chat = apply_save(existing, request.id, request.user_id, request.messages, request.mode, request.title)
        await store.save_chat(chat, request.user_id)
    except ChatPersistenceError as e:
        log_service.log_event(
            event_type="db_error",
            message="Failed to save chat",
            error=str(e),
            chat_id=request.id,
        )
        raise HTTPException(status_code=500, detail="Failed to save chat")
    return SaveChatResponse(id=chat.id, saved=True, message_count=len(chat.messages))
