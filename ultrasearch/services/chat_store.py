"""Chat history persistence.

``apply_save`` computes the message list to store from what is already
saved and what a caller sends; stores only read and upsert whole chats.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Protocol

import asyncpg
from pydantic import BaseModel, Field

from ultrasearch.models.annotations import merge_annotations
from ultrasearch.models.messages import Message
from ultrasearch.services.logger import log_db_operation

TITLE_MAX_CHARS = 120


class ChatPersistenceError(RuntimeError):
    pass


class Chat(BaseModel):
    id: str
    user_id: str
    title: str = "New chat"
    path: str = ""
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    messages: list[Message] = Field(default_factory=list)


class ChatStore(Protocol):
    enabled: bool

    async def get_chat(self, chat_id: str, user_id: str) -> Chat | None: ...

    async def save_chat(self, chat: Chat, user_id: str) -> None: ...

    async def aclose(self) -> None: ...


def normalize_message(message: Message) -> Message:
    """Fill an empty ``content`` from the message's text parts."""
    if message.content.strip():
        return message
    text = " ".join(
        str(p.get("text", "")) for p in message.parts if isinstance(p, dict) and p.get("type") == "text"
    ).strip()
    return message.model_copy(update={"content": text}) if text else message


def canonical_key(message: Message) -> str:
    """Content identity for messages saved without an id of their own."""
    text = message.text.strip()
    if text:
        return f"{message.role}|{text}"
    return f"{message.role}|{json.dumps(message.annotations, sort_keys=True)}"


def derive_title(incoming: list[Message], existing: Chat | None, title: str | None = None) -> str:
    if title:
        return title
    if existing is not None and existing.title:
        return existing.title
    candidates = [*incoming, *(existing.messages if existing else [])]
    first_user = next((m for m in candidates if m.role == "user"), None)
    if first_user is None:
        return "New chat"
    text = " ".join(first_user.text.split())
    return text[:TITLE_MAX_CHARS] if text else "New chat"


def _merge_into(existing: Message, incoming: Message) -> Message:
    return existing.model_copy(
        update={
            "annotations": merge_annotations(existing.annotations, incoming.annotations),
            "content": existing.content or incoming.content,
            "parts": existing.parts or incoming.parts,
        }
    )


def apply_save(
    existing: Chat | None,
    chat_id: str,
    user_id: str,
    incoming: list[Message],
    mode: str = "merge",
    title: str | None = None,
) -> Chat:
    """Combine saved and incoming messages according to ``mode``.

    ``replace`` stores ``incoming`` as the whole conversation. ``append``
    adds incoming messages with an unseen id, leaving stored messages
    untouched; messages sent without an id are matched by content instead.
    ``merge`` also folds the annotations of an incoming message into the
    stored message with the same id, without duplicates.
    """
    normalized = [normalize_message(m) for m in incoming]
    base = Chat(
        id=chat_id,
        user_id=user_id,
        title=derive_title(normalized, existing, title),
        path=f"/search/{chat_id}",
        created_at=existing.created_at if existing else datetime.now(timezone.utc).isoformat(),
    )
    if mode == "replace" or existing is None:
        base.messages = normalized
        return base
    if mode not in ("append", "merge"):
        raise ValueError(f"Unknown save mode: {mode}")

    messages = list(existing.messages)
    index_by_id = {m.id: i for i, m in enumerate(messages)}
    keys = {canonical_key(m) for m in messages}
    for message in normalized:
        position = index_by_id.get(message.id)
        if position is not None:
            if mode == "merge":
                messages[position] = _merge_into(messages[position], message)
            continue
        key = canonical_key(message)
        # Only id-less messages are matched by content; a repeated "yes" with
        # its own id is a new turn.
        if "id" not in message.model_fields_set and key in keys:
            continue
        index_by_id[message.id] = len(messages)
        keys.add(key)
        messages.append(message)
    base.messages = messages
    return base


class DisabledChatStore:
    """History saving turned off: saves succeed without storing anything."""

    enabled = False

    async def get_chat(self, chat_id: str, user_id: str) -> Chat | None:
        return None

    async def save_chat(self, chat: Chat, user_id: str) -> None:
        return None

    async def aclose(self) -> None:
        return None


class MemoryChatStore:
    enabled = True

    def __init__(self):
        self._chats: dict[tuple[str, str], Chat] = {}

    async def get_chat(self, chat_id: str, user_id: str) -> Chat | None:
        chat = self._chats.get((user_id, chat_id))
        return chat.model_copy(deep=True) if chat else None

    async def save_chat(self, chat: Chat, user_id: str) -> None:
        self._chats[(user_id, chat.id)] = chat.model_copy(deep=True, update={"user_id": user_id})

    async def aclose(self) -> None:
        self._chats.clear()


class PostgresChatStore:
    enabled = True

    CREATE_TABLE = """
        CREATE TABLE IF NOT EXISTS chats (
            id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            path TEXT NOT NULL DEFAULT '',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            messages JSONB NOT NULL DEFAULT '[]'::jsonb,
            PRIMARY KEY (user_id, id)
        )
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._pool: asyncpg.Pool | None = None

    async def open(self) -> None:
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(self.database_url, min_size=1, max_size=10)
        async with self._pool.acquire() as conn:
            await conn.execute(self.CREATE_TABLE)

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise ChatPersistenceError("Chat store is not open")
        return self._pool

    async def get_chat(self, chat_id: str, user_id: str) -> Chat | None:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, title, path, created_at, messages
                FROM chats
                WHERE id = $1 AND user_id = $2
                """,
                chat_id,
                user_id,
            )
        if row is None:
            return None
        raw_messages: Any = row["messages"]
        if isinstance(raw_messages, str):
            raw_messages = json.loads(raw_messages)
        return Chat(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            path=row["path"],
            created_at=row["created_at"].isoformat(),
            messages=[Message.model_validate(m) for m in raw_messages or []],
        )

    async def save_chat(self, chat: Chat, user_id: str) -> None:
        pool = self._require_pool()
        payload = json.dumps([m.model_dump(mode="json") for m in chat.messages], ensure_ascii=False)
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO chats (id, user_id, title, path, created_at, messages)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                    ON CONFLICT (user_id, id) DO UPDATE
                    SET title = EXCLUDED.title,
                        path = EXCLUDED.path,
                        messages = EXCLUDED.messages,
                        updated_at = now()
                    """,
                    chat.id,
                    user_id,
                    chat.title,
                    chat.path,
                    datetime.fromisoformat(chat.created_at),
                    payload,
                )
        except (asyncpg.PostgresError, OSError) as e:
            log_db_operation("upsert", "chats", "failed", details=chat.id, error=str(e))
            raise ChatPersistenceError(f"Failed to save chat {chat.id}") from e
        log_db_operation("upsert", "chats", "success", details=f"{chat.id} ({len(chat.messages)} messages)")

    async def aclose(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
