from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

ToolCallType = Literal["native", "manual"]


@dataclass(frozen=True, slots=True)
class ModelSpec:
    id: str
    name: str
    provider: str
    provider_id: str
    enabled: bool = True
    tool_call_type: ToolCallType = "native"
    tool_call_model: str | None = None
    context_window: int = 128_000
    description: str = ""

    @property
    def key(self) -> str:
        return f"{self.provider_id}:{self.id}"


DEFAULT_MODELS: tuple[ModelSpec, ...] = (
    ModelSpec(
        id="gpt-4o-mini",
        name="GPT-4o mini",
        provider="OpenAI",
        provider_id="openai",
        description="Fast, inexpensive default for search and ultra mode",
    ),
    ModelSpec(
        id="gpt-4.1",
        name="GPT-4.1",
        provider="OpenAI",
        provider_id="openai",
        context_window=1_000_000,
        description="Strong general model with long context",
    ),
    ModelSpec(
        id="o3-mini",
        name="o3-mini",
        provider="OpenAI",
        provider_id="openai",
        tool_call_type="manual",
        tool_call_model="gpt-4o-mini",
        context_window=200_000,
        description="Reasoning model; tool selection runs on a helper model",
    ),
    ModelSpec(
        id="claude-sonnet-4-5-20250929",
        name="Claude Sonnet 4.5",
        provider="Anthropic",
        provider_id="anthropic",
        context_window=200_000,
        description="Anthropic model for detailed answers",
    ),
    ModelSpec(
        id="deepseek/deepseek-r1",
        name="DeepSeek R1",
        provider="OpenRouter",
        provider_id="openrouter",
        tool_call_type="manual",
        context_window=64_000,
        description="Open reasoning model via OpenRouter",
    ),
    ModelSpec(
        id="google/gemini-2.0-flash-001",
        name="Gemini 2.0 Flash",
        provider="OpenRouter",
        provider_id="openrouter",
        context_window=1_000_000,
        description="Fast Google model via OpenRouter",
    ),
    ModelSpec(
        id="llama3.1",
        name="Llama 3.1 (local)",
        provider="Ollama",
        provider_id="ollama",
        tool_call_type="manual",
        context_window=8_192,
        description="Local model served by Ollama",
    ),
)


def split_model_key(model_key: str) -> tuple[str, str]:
    """Split ``"provider:model"``; the model part may itself contain colons."""
    provider, sep, model_id = model_key.partition(":")
    if not sep or not provider or not model_id:
        raise ValueError(f"Model key must look like 'provider:model', got {model_key!r}")
    return provider, model_id


def find_model(model_key: str, models: tuple[ModelSpec, ...] = DEFAULT_MODELS) -> ModelSpec | None:
    try:
        provider_id, model_id = split_model_key(model_key)
    except ValueError:
        return None
    for spec in models:
        if spec.provider_id == provider_id and spec.id == model_id:
            return spec
    return None


def resolve_model(model_key: str, models: tuple[ModelSpec, ...] = DEFAULT_MODELS) -> ModelSpec:
    """Catalog entry for ``model_key``, or an ad-hoc native spec for unlisted models."""
    spec = find_model(model_key, models)
    if spec is not None:
        return spec
    provider_id, model_id = split_model_key(model_key)
    return ModelSpec(id=model_id, name=model_id, provider=provider_id, provider_id=provider_id)
