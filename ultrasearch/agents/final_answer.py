from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from ultrasearch.llm_client import LanguageModel, SamplingParams, ToolCallRequest
from ultrasearch.models.annotations import Annotation
from ultrasearch.services import streaming
from ultrasearch.services.channel import StreamChannel


@dataclass
class FinalAnswerConfig:
    """Everything needed to stream the user-facing answer."""

    system: str
    messages: list[dict[str, Any]]
    sampling: SamplingParams
    annotations: list[Annotation] = field(default_factory=list)
    tools: list[dict[str, Any]] | None = None


@dataclass
class StreamedAnswer:
    text: str
    reasoning: str = ""
    reasoning_ms: int = 0
    tool_calls: list[ToolCallRequest] = field(default_factory=list)

    def reasoning_annotation(self) -> Annotation | None:
        if not self.reasoning and not self.reasoning_ms:
            return None
        return streaming.reasoning(self.reasoning_ms, self.reasoning or None)


async def stream_final_answer(
    model: LanguageModel,
    config: FinalAnswerConfig,
    channel: StreamChannel,
    *,
    timeout: float | None = None,
    caller: str = "final_answer",
) -> StreamedAnswer:
    """Forward text and reasoning deltas to ``channel``.

    The time spent reasoning is measured from the first reasoning delta to
    the first text delta after it; a transient ``reasoning`` annotation is
    written when that span closes. Tool calls requested by the model are
    collected on the result, not written.
    """
    text_parts: list[str] = []
    reasoning_parts: list[str] = []
    reasoning_started: float | None = None
    reasoning_ms = 0
    tool_calls: list[ToolCallRequest] = []

    async with asyncio.timeout(timeout):
        async for delta in model.generate_streaming(
            config.system, config.messages, config.sampling, tools=config.tools, caller=caller
        ):
            if delta.kind == "tool_call":
                if delta.tool_call is not None:
                    tool_calls.append(delta.tool_call)
                continue
            if delta.kind == "reasoning":
                if reasoning_started is None:
                    reasoning_started = time.monotonic()
                reasoning_parts.append(delta.text)
                await channel.write_reasoning(delta.text)
                continue
            if reasoning_started is not None:
                reasoning_ms += int((time.monotonic() - reasoning_started) * 1000)
                reasoning_started = None
                await channel.write_annotation(streaming.reasoning(reasoning_ms), persist=False)
            text_parts.append(delta.text)
            await channel.write_text(delta.text)

    if reasoning_started is not None:
        reasoning_ms += int((time.monotonic() - reasoning_started) * 1000)

    return StreamedAnswer(
        text="".join(text_parts),
        reasoning="".join(reasoning_parts),
        reasoning_ms=reasoning_ms,
        tool_calls=tool_calls,
    )
