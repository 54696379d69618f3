from __future__ import annotations

from ultrasearch.models.catalog import ModelSpec
from ultrasearch.models.messages import Message

DEFAULT_CONTEXT_WINDOW = 128_000
DEFAULT_RESERVE_TOKENS = 4096
_CHARS_PER_TOKEN = 4


def estimate_tokens(message: Message) -> int:
    """Rough token count: four characters per token plus per-message overhead."""
    return len(message.text) // _CHARS_PER_TOKEN + 4


def max_allowed_tokens(spec: ModelSpec | None, reserve: int = DEFAULT_RESERVE_TOKENS) -> int:
    window = spec.context_window if spec is not None else DEFAULT_CONTEXT_WINDOW
    return max(window - reserve, window // 2)


def truncate_messages(messages: list[Message], max_tokens: int) -> list[Message]:
    """Newest messages that fit in ``max_tokens``, starting at a user message.

    System messages are always kept. The latest user message is kept even if
    it alone exceeds the budget.
    """
    system = [m for m in messages if m.role == "system"]
    conversation = [m for m in messages if m.role != "system"]
    budget = max_tokens - sum(estimate_tokens(m) for m in system)

    kept: list[Message] = []
    used = 0
    for message in reversed(conversation):
        cost = estimate_tokens(message)
        if kept and used + cost > budget:
            break
        kept.append(message)
        used += cost
    kept.reverse()

    while kept and kept[0].role != "user":
        kept.pop(0)
    if not kept:
        last_user = next((m for m in reversed(conversation) if m.role == "user"), None)
        kept = [last_user] if last_user is not None else []
    return [*system, *kept]
