from __future__ import annotations

import asyncio

from loguru import logger

from ultrasearch.agents.related_questions import generate_related_questions
from ultrasearch.llm_client import LanguageModel
from ultrasearch.models.annotations import Annotation, merge_annotations
from ultrasearch.models.messages import Message
from ultrasearch.services import logger as log_service
from ultrasearch.services import streaming
from ultrasearch.services.channel import StreamChannel
from ultrasearch.services.chat_store import ChatPersistenceError, ChatStore, apply_save


def attach_annotations(messages: list[Message], annotations: list[Annotation]) -> list[Message]:
    """Copy of ``messages`` with ``annotations`` merged into the last assistant message.

    Applying the same annotations again yields the same list.
    """
    result = list(messages)
    for index in range(len(result) - 1, -1, -1):
        if result[index].role == "assistant":
            target = result[index]
            result[index] = target.model_copy(
                update={"annotations": merge_annotations(target.annotations, annotations)}
            )
            break
    return result


async def _related_annotation(
    model: LanguageModel,
    messages: list[Message],
    channel: StreamChannel,
    chat_id: str,
) -> Annotation | None:
    await channel.write_annotation(streaming.related_questions(None), persist=False)
    try:
        related = await generate_related_questions(model, messages)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log_service.log_event(
            event_type="related_questions_failed",
            message="Related questions could not be generated",
            chat_id=chat_id,
            error=str(e) or type(e).__name__,
        )
        return None
    annotation = streaming.related_questions([item.query for item in related.items])
    await channel.write_annotation(annotation)
    return annotation


async def handle_stream_finish(
    *,
    chat_id: str,
    user_id: str,
    original_messages: list[Message],
    response_messages: list[Message],
    annotations: list[Annotation],
    channel: StreamChannel,
    store: ChatStore,
    related_model: LanguageModel | None = None,
    skip_related_questions: bool = False,
    save_mode: str = "merge",
) -> list[Message]:
    """Assemble the finished turn, attach its annotations and persist it.

    Raises ``ChatPersistenceError`` when the store rejects the save; text
    already delivered on ``channel`` is unaffected.
    """
    collected = list(annotations)
    if related_model is not None and not skip_related_questions:
        related = await _related_annotation(related_model, [*original_messages, *response_messages], channel, chat_id)
        if related is not None:
            collected.append(related)

    messages = attach_annotations([*original_messages, *response_messages], collected)

    if not store.enabled:
        logger.debug(f"Chat history disabled; not saving {chat_id}")
        return messages

    try:
        existing = await store.get_chat(chat_id, user_id)
        chat = apply_save(existing, chat_id, user_id, messages, save_mode)
        await store.save_chat(chat, user_id)
    except ChatPersistenceError:
        raise
    except Exception as e:
        log_service.log_db_operation("save_chat", "chats", "failed", details=chat_id, error=str(e))
        raise ChatPersistenceError(f"Failed to save chat history for {chat_id}") from e
    log_service.log_pipeline_step(chat_id, "finish", "saved", {"messages": len(messages)})
    return messages
