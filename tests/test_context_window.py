from __future__ import annotations

from ultrasearch.models.catalog import ModelSpec
from ultrasearch.models.messages import Message
from ultrasearch.services.context_window import estimate_tokens, max_allowed_tokens, truncate_messages


def _msg(role: str, chars: int) -> Message:
    return Message(role=role, content="x" * chars)


def test_max_allowed_tokens_reserves_output_space():
    spec = ModelSpec(id="m", name="m", provider="p", provider_id="p", context_window=10_000)

    assert max_allowed_tokens(spec, reserve=2_000) == 8_000
    assert max_allowed_tokens(spec, reserve=9_000) == 5_000


def test_truncate_keeps_newest_messages_starting_at_user():
    messages = [_msg("user", 400), _msg("assistant", 400), _msg("user", 40), _msg("assistant", 40)]

    kept = truncate_messages(messages, max_tokens=estimate_tokens(messages[2]) + estimate_tokens(messages[3]) + 50)

    assert kept == messages[2:]


def test_truncate_always_keeps_latest_user_message():
    messages = [_msg("assistant", 10), _msg("user", 10_000)]

    assert truncate_messages(messages, max_tokens=10) == [messages[1]]


def test_truncate_keeps_system_messages():
    system = _msg("system", 20)
    messages = [system, _msg("user", 20), _msg("assistant", 20)]

    kept = truncate_messages(messages, max_tokens=1_000)

    assert kept[0] is system
    assert len(kept) == 3
