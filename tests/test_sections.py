from __future__ import annotations

from ultrasearch.models.messages import Message, group_sections, last_user_text, to_provider_messages


def test_group_sections_splits_on_user_messages():
    messages = [
        Message(role="user", content="q1"),
        Message(role="assistant", content="a1"),
        Message(role="assistant", content="a1 continued"),
        Message(role="user", content="q2"),
        Message(role="assistant", content="a2"),
    ]

    sections = group_sections(messages)

    assert len(sections) == 2
    assert len(sections[0].assistant_messages) == 2
    assert sections[0].id == messages[0].id
    assert sections[1].final_text == "a2"


def test_group_sections_ignores_leading_assistant_and_system():
    messages = [
        Message(role="assistant", content="orphan"),
        Message(role="system", content="rules"),
        Message(role="user", content="q"),
    ]

    sections = group_sections(messages)

    assert len(sections) == 1
    assert sections[0].assistant_messages == []


def test_message_text_falls_back_to_parts():
    message = Message(role="assistant", parts=[{"type": "text", "text": "from "}, {"type": "text", "text": "parts"}])

    assert message.text == "from parts"
    assert message.has_final_text()


def test_to_provider_messages_skips_empty_and_non_chat_roles():
    messages = [
        Message(role="system", content="rules"),
        Message(role="user", content="hello"),
        Message(role="assistant", content=""),
    ]

    assert to_provider_messages(messages) == [{"role": "user", "content": "hello"}]


def test_last_user_text():
    messages = [Message(role="user", content="first"), Message(role="user", content="second")]

    assert last_user_text(messages) == "second"
    assert last_user_text([]) == ""
