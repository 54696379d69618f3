"""Language model providers behind one strategy map.

Every provider speaks the same two calls, ``generate`` and
``generate_streaming``. The registry is built once from settings and
resolves ``"provider:model"`` keys to a bound ``LanguageModel``.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Protocol

from ultrasearch.config import Settings
from ultrasearch.models.catalog import split_model_key
from ultrasearch.services import logger as log_service


class UnknownProviderError(KeyError):
    pass


@dataclass(slots=True)
class SamplingParams:
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int = 4096


@dataclass(slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(slots=True)
class Completion:
    text: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    reasoning: str = ""


@dataclass(slots=True)
class StreamDelta:
    kind: Literal["text", "reasoning", "tool_call"]
    text: str = ""
    tool_call: ToolCallRequest | None = None


class ProviderClient(Protocol):
    name: str

    async def generate(
        self,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        sampling: SamplingParams,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion: ...

    def generate_streaming(
        self,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        sampling: SamplingParams,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamDelta]: ...

    async def aclose(self) -> None: ...


def _is_reasoning_family(model: str) -> bool:
    lowered = (model or "").lower().rsplit("/", 1)[-1]
    return lowered.startswith(("o1", "o3", "o4", "gpt-5"))


class OpenAICompatibleProvider:
    """OpenAI chat completions; also serves OpenRouter and Ollama."""

    def __init__(self, name: str, openai_client: Any, *, supports_top_k: bool = False):
        self.name = name
        self._client = openai_client
        self._supports_top_k = supports_top_k

    def _sampling_kwargs(self, model: str, sampling: SamplingParams) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        # Reasoning-family models reject custom sampling parameters.
        if not _is_reasoning_family(model):
            if sampling.temperature is not None:
                kwargs["temperature"] = sampling.temperature
            if sampling.top_p is not None:
                kwargs["top_p"] = sampling.top_p
        if sampling.top_k is not None and self._supports_top_k:
            kwargs["extra_body"] = {"top_k": sampling.top_k}
        if _is_reasoning_family(model):
            kwargs["max_completion_tokens"] = sampling.max_tokens
        else:
            kwargs["max_tokens"] = sampling.max_tokens
        return kwargs

    @staticmethod
    def _to_openai_messages(system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        openai_messages: list[dict[str, Any]] = [{"role": "system", "content": system}]
        for message in messages:
            role = message["role"]
            if role == "assistant" and message.get("tool_calls"):
                openai_messages.append(
                    {
                        "role": "assistant",
                        "content": message.get("content") or None,
                        "tool_calls": [
                            {
                                "id": tc["id"],
                                "type": "function",
                                "function": {
                                    "name": tc["name"],
                                    "arguments": json.dumps(tc.get("arguments") or {}),
                                },
                            }
                            for tc in message["tool_calls"]
                        ],
                    }
                )
                continue
            if role == "tool":
                openai_messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.get("tool_call_id", ""),
                        "content": str(message.get("content", "")),
                    }
                )
                continue
            openai_messages.append({"role": role, "content": str(message.get("content", ""))})
        return openai_messages

    @staticmethod
    def _to_openai_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("parameters") or {"type": "object", "properties": {}},
                },
            }
            for t in tools
        ]

    async def generate(
        self,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        sampling: SamplingParams,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self._to_openai_messages(system, messages),
            **self._sampling_kwargs(model, sampling),
        }
        if tools:
            kwargs["tools"] = self._to_openai_tools(tools)
            kwargs["tool_choice"] = "auto"

        response = await self._client.chat.completions.create(**kwargs)
        choice = response.choices[0].message

        tool_calls: list[ToolCallRequest] = []
        for tc in getattr(choice, "tool_calls", None) or []:
            raw_args = getattr(tc.function, "arguments", "{}") or "{}"
            try:
                parsed_args = json.loads(raw_args)
            except json.JSONDecodeError:
                parsed_args = {}
            tool_calls.append(ToolCallRequest(id=tc.id, name=tc.function.name, arguments=parsed_args))

        usage = getattr(response, "usage", None)
        return Completion(
            text=getattr(choice, "content", None) or "",
            tool_calls=tool_calls,
            usage=Usage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
            reasoning=getattr(choice, "reasoning_content", None) or getattr(choice, "reasoning", None) or "",
        )

    async def generate_streaming(
        self,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        sampling: SamplingParams,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamDelta]:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self._to_openai_messages(system, messages),
            "stream": True,
            **self._sampling_kwargs(model, sampling),
        }
        if tools:
            kwargs["tools"] = self._to_openai_tools(tools)
            kwargs["tool_choice"] = "auto"
        stream = await self._client.chat.completions.create(**kwargs)

        # Tool calls arrive as fragments keyed by index; arguments are JSON split across chunks.
        pending: dict[int, dict[str, str]] = {}
        try:
            async for chunk in stream:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0], "delta", None)
                if not delta:
                    continue
                reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
                if reasoning:
                    yield StreamDelta(kind="reasoning", text=reasoning)
                text = getattr(delta, "content", None)
                if text:
                    yield StreamDelta(kind="text", text=text)
                for fragment in getattr(delta, "tool_calls", None) or []:
                    slot = pending.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                    if getattr(fragment, "id", None):
                        slot["id"] = fragment.id
                    function = getattr(fragment, "function", None)
                    if function is not None:
                        slot["name"] += getattr(function, "name", None) or ""
                        slot["arguments"] += getattr(function, "arguments", None) or ""
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()

        for index in sorted(pending):
            slot = pending[index]
            try:
                arguments = json.loads(slot["arguments"] or "{}")
            except json.JSONDecodeError:
                arguments = {}
            yield StreamDelta(
                kind="tool_call",
                tool_call=ToolCallRequest(id=slot["id"] or f"call_{index}", name=slot["name"], arguments=arguments),
            )

    async def aclose(self) -> None:
        await self._client.close()


class AnthropicProvider:
    name = "anthropic"

    def __init__(self, anthropic_client: Any):
        self._client = anthropic_client

    @staticmethod
    def _sampling_kwargs(sampling: SamplingParams) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"max_tokens": sampling.max_tokens}
        # The Messages API accepts temperature or top_p, not both.
        if sampling.temperature is not None:
            kwargs["temperature"] = sampling.temperature
        elif sampling.top_p is not None:
            kwargs["top_p"] = sampling.top_p
        if sampling.top_k is not None:
            kwargs["top_k"] = sampling.top_k
        return kwargs

    @staticmethod
    def _to_anthropic_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        for message in messages:
            role = message["role"]
            if role == "assistant" and message.get("tool_calls"):
                blocks: list[dict[str, Any]] = []
                if message.get("content"):
                    blocks.append({"type": "text", "text": message["content"]})
                for tc in message["tool_calls"]:
                    blocks.append(
                        {"type": "tool_use", "id": tc["id"], "name": tc["name"], "input": tc.get("arguments") or {}}
                    )
                converted.append({"role": "assistant", "content": blocks})
                continue
            if role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": message.get("tool_call_id", ""),
                    "content": str(message.get("content", "")),
                }
                # Consecutive tool results belong to one user turn.
                if converted and converted[-1]["role"] == "user" and isinstance(converted[-1]["content"], list):
                    converted[-1]["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block]})
                continue
            if role == "system":
                continue
            converted.append({"role": role, "content": str(message.get("content", ""))})
        return converted

    @staticmethod
    def _to_anthropic_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "name": t["name"],
                "description": t.get("description", ""),
                "input_schema": t.get("parameters") or {"type": "object", "properties": {}},
            }
            for t in tools
        ]

    async def generate(
        self,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        sampling: SamplingParams,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        kwargs: dict[str, Any] = {
            "model": model,
            "system": system,
            "messages": self._to_anthropic_messages(messages),
            **self._sampling_kwargs(sampling),
        }
        if tools:
            kwargs["tools"] = self._to_anthropic_tools(tools)
        response = await self._client.messages.create(**kwargs)

        text_parts: list[str] = []
        tool_calls: list[ToolCallRequest] = []
        for block in getattr(response, "content", None) or []:
            btype = getattr(block, "type", None)
            if btype == "text":
                text_parts.append(block.text)
            elif btype == "tool_use":
                tool_calls.append(ToolCallRequest(id=block.id, name=block.name, arguments=dict(block.input or {})))

        usage = getattr(response, "usage", None)
        return Completion(
            text="".join(text_parts),
            tool_calls=tool_calls,
            usage=Usage(
                input_tokens=getattr(usage, "input_tokens", 0) or 0,
                output_tokens=getattr(usage, "output_tokens", 0) or 0,
            ),
        )

    async def generate_streaming(
        self,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        sampling: SamplingParams,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamDelta]:
        kwargs: dict[str, Any] = {
            "model": model,
            "system": system,
            "messages": self._to_anthropic_messages(messages),
            **self._sampling_kwargs(sampling),
        }
        if tools:
            kwargs["tools"] = self._to_anthropic_tools(tools)
        async with self._client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                if text:
                    yield StreamDelta(kind="text", text=text)
            if tools:
                final = await stream.get_final_message()
                for block in getattr(final, "content", None) or []:
                    if getattr(block, "type", None) == "tool_use":
                        yield StreamDelta(
                            kind="tool_call",
                            tool_call=ToolCallRequest(id=block.id, name=block.name, arguments=dict(block.input or {})),
                        )

    async def aclose(self) -> None:
        await self._client.close()


class LanguageModel:
    """A provider bound to one model id, with logging and a call deadline."""

    def __init__(self, provider: ProviderClient, model_id: str, key: str, *, timeout: float | None = None):
        self.provider = provider
        self.model_id = model_id
        self.key = key
        self.timeout = timeout

    async def generate(
        self,
        system: str,
        messages: list[dict[str, Any]],
        sampling: SamplingParams | None = None,
        *,
        tools: list[dict[str, Any]] | None = None,
        caller: str = "generate",
    ) -> Completion:
        t0 = time.monotonic()
        try:
            async with asyncio.timeout(self.timeout):
                completion = await self.provider.generate(
                    self.model_id, system, messages, sampling or SamplingParams(), tools
                )
        except Exception as e:
            log_service.log_llm_call(
                model=self.key,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(e) or type(e).__name__,
            )
            raise
        log_service.log_llm_call(
            model=self.key,
            caller=caller,
            input_tokens=completion.usage.input_tokens,
            output_tokens=completion.usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return completion

    async def generate_streaming(
        self,
        system: str,
        messages: list[dict[str, Any]],
        sampling: SamplingParams | None = None,
        *,
        tools: list[dict[str, Any]] | None = None,
        caller: str = "stream",
    ) -> AsyncIterator[StreamDelta]:
        """Stream deltas; the deadline is enforced by the caller around the whole stream.

        With ``tools`` the model may also request calls; they are yielded as
        ``tool_call`` deltas once the response is complete.
        """
        t0 = time.monotonic()
        try:
            async for delta in self.provider.generate_streaming(
                self.model_id, system, messages, sampling or SamplingParams(), tools
            ):
                yield delta
        except Exception as e:
            log_service.log_llm_call(
                model=self.key,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(e) or type(e).__name__,
            )
            raise
        log_service.log_llm_call(
            model=self.key,
            caller=caller,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )


class ProviderRegistry:
    def __init__(
        self,
        providers: dict[str, ProviderClient],
        *,
        reasoning_models: list[str] | None = None,
        timeout: float | None = None,
    ):
        self._providers = dict(providers)
        self._reasoning_models = set(reasoning_models or [])
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        from anthropic import AsyncAnthropic
        from openai import AsyncOpenAI

        providers: dict[str, ProviderClient] = {}
        if settings.openai_api_key:
            providers["openai"] = OpenAICompatibleProvider(
                "openai",
                AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url),
            )
        if settings.openrouter_api_key:
            providers["openrouter"] = OpenAICompatibleProvider(
                "openrouter",
                AsyncOpenAI(api_key=settings.openrouter_api_key, base_url=settings.openrouter_base_url),
                supports_top_k=True,
            )
        if settings.ollama_base_url:
            providers["ollama"] = OpenAICompatibleProvider(
                "ollama",
                AsyncOpenAI(api_key="ollama", base_url=settings.ollama_base_url),
                supports_top_k=True,
            )
        if settings.anthropic_api_key:
            providers["anthropic"] = AnthropicProvider(AsyncAnthropic(api_key=settings.anthropic_api_key))

        return cls(
            providers,
            reasoning_models=settings.reasoning_model_list,
            timeout=settings.phase_timeout_seconds,
        )

    @property
    def provider_ids(self) -> list[str]:
        return list(self._providers)

    def is_provider_enabled(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def is_reasoning_model(self, model_key: str) -> bool:
        return model_key in self._reasoning_models

    def model(self, model_key: str) -> LanguageModel:
        provider_id, model_id = split_model_key(model_key)
        provider = self._providers.get(provider_id)
        if provider is None:
            raise UnknownProviderError(f"Provider '{provider_id}' is not configured")
        return LanguageModel(provider, model_id, model_key, timeout=self.timeout)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
