from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ultrasearch.llm_client import LanguageModel, SamplingParams
from ultrasearch.models.messages import Message
from ultrasearch.services.prompt_store import render_prompt


class RelatedQuery(BaseModel):
    query: str = Field(min_length=1)


class RelatedQuestions(BaseModel):
    items: list[RelatedQuery] = Field(default_factory=list, max_length=3)


def _extract_json_object(raw_text: str) -> dict[str, Any]:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def seed_text(messages: list[Message]) -> str:
    """Last user text, else last assistant text, else a generic request."""
    for role in ("user", "assistant"):
        for message in reversed(messages):
            if message.role == role and message.text.strip():
                return message.text
    return render_prompt("related_questions.fallback_seed")


async def generate_related_questions(model: LanguageModel, messages: list[Message]) -> RelatedQuestions:
    """Ask for three follow-up queries; raises ValueError when the output is unusable."""
    completion = await model.generate(
        render_prompt("related_questions.system"),
        [{"role": "user", "content": seed_text(messages)}],
        SamplingParams(temperature=0.3),
        caller="related_questions",
    )
    try:
        payload = _extract_json_object(completion.text)
        related = RelatedQuestions.model_validate(
            {"items": payload.get("items", [])[:3]} if isinstance(payload.get("items"), list) else payload
        )
    except (json.JSONDecodeError, ValidationError) as e:
        raise ValueError(f"Invalid related questions output: {e}") from e
    return related
