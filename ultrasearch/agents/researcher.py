from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

from ultrasearch.agents.final_answer import FinalAnswerConfig, StreamedAnswer, stream_final_answer
from ultrasearch.config import Settings
from ultrasearch.llm_client import LanguageModel, SamplingParams, ToolCallRequest
from ultrasearch.models.annotations import Annotation, ToolInvocation
from ultrasearch.models.messages import Message, to_provider_messages
from ultrasearch.services import logger as log_service
from ultrasearch.services import streaming
from ultrasearch.services.channel import StreamChannel
from ultrasearch.services.prompt_store import render_prompt
from ultrasearch.tools.adapter import ASK_QUESTION, ToolContext, ToolFailure, ToolInvocationAdapter, ToolSpec


@dataclass
class ResearcherOutcome:
    answer: StreamedAnswer
    annotations: list[Annotation] = field(default_factory=list)
    pending_question: ToolInvocation | None = None
    parts: list[dict[str, Any]] = field(default_factory=list)


def _combine(steps: list[StreamedAnswer]) -> StreamedAnswer:
    """One answer for a multi-step turn; text from every step reached the user."""
    return StreamedAnswer(
        text="".join(s.text for s in steps),
        reasoning="".join(s.reasoning for s in steps),
        reasoning_ms=sum(s.reasoning_ms for s in steps),
    )


def manual_researcher_config(
    messages: list[Message],
    *,
    search_enabled: bool,
    ultra_mode: bool,
    current_date: str,
) -> FinalAnswerConfig:
    """Prompt-only strategy for models without native tool calling."""
    system = render_prompt(
        "manual_researcher.system",
        base=render_prompt("manual_researcher.base"),
        mode_block=render_prompt(
            "manual_researcher.search_enabled" if search_enabled else "manual_researcher.search_disabled"
        ),
        addendum=render_prompt("manual_researcher.ultra_addendum") if ultra_mode else "",
        current_date=current_date,
    )
    return FinalAnswerConfig(
        system=system,
        messages=to_provider_messages(messages),
        sampling=SamplingParams(temperature=0.3 if ultra_mode else 0.6, top_p=1.0, top_k=40),
    )


class SinglePassResearcher:
    """One generation with tools offered natively to the model.

    The model may call tools for up to ``max_steps`` rounds. A call to
    ``ask_question`` ends the turn with a pending invocation for the user
    to answer.
    """

    def __init__(self, adapter: ToolInvocationAdapter, settings: Settings):
        self.adapter = adapter
        self.settings = settings

    def max_steps(self, context: ToolContext) -> int:
        if context.search_mode:
            return self.settings.researcher_max_steps_search
        if context.actions:
            return self.settings.researcher_max_steps_actions
        return 1

    async def _execute(
        self,
        calls: list[ToolCallRequest],
        context: ToolContext,
        channel: StreamChannel,
    ) -> tuple[list[dict[str, Any]], list[Annotation]]:
        invocations = [ToolInvocation(tool_call_id=c.id, tool_name=c.name, args=c.arguments) for c in calls]
        for invocation in invocations:
            await channel.write_annotation(streaming.tool_call(invocation), persist=False)

        outcomes = await asyncio.gather(
            *(self.adapter.invoke(inv.tool_name, inv.args, context) for inv in invocations),
            return_exceptions=True,
        )

        tool_messages: list[dict[str, Any]] = []
        annotations: list[Annotation] = []
        for invocation, outcome in zip(invocations, outcomes):
            if isinstance(outcome, BaseException) or isinstance(outcome, ToolFailure):
                reason = outcome.reason if isinstance(outcome, ToolFailure) else repr(outcome)
                tool_messages.append(
                    {"role": "tool", "tool_call_id": invocation.tool_call_id, "content": f"ERROR: {reason}"}
                )
                continue
            resolved = invocation.with_result(outcome.value)
            annotation = streaming.tool_call(resolved)
            await channel.write_annotation(annotation)
            annotations.append(annotation)
            tool_messages.append(
                {
                    "role": "tool",
                    "tool_call_id": invocation.tool_call_id,
                    "content": json.dumps(outcome.value, ensure_ascii=False, default=str),
                }
            )
        return tool_messages, annotations

    async def run(
        self,
        messages: list[Message],
        *,
        model: LanguageModel,
        context: ToolContext,
        channel: StreamChannel,
        current_date: str,
        clarify: bool = False,
    ) -> ResearcherOutcome:
        if clarify:
            tools: list[ToolSpec] = [
                t for t in self.adapter.builtin_tools(context) if t.name == ASK_QUESTION
            ]
            system = render_prompt("ultra.clarify_system", current_date=current_date)
        else:
            tools = await self.adapter.list_available_tools(context)
            system = render_prompt("researcher.system", current_date=current_date)

        convo: list[dict[str, Any]] = to_provider_messages(messages)
        sampling = SamplingParams()

        if not tools:
            answer = await stream_final_answer(
                model,
                FinalAnswerConfig(system=system, messages=convo, sampling=sampling),
                channel,
                timeout=self.settings.stream_timeout_seconds,
                caller="researcher",
            )
            return ResearcherOutcome(answer=answer)

        tool_dicts = [t.to_dict() for t in tools]
        annotations: list[Annotation] = []
        steps: list[StreamedAnswer] = []
        for step in range(self.max_steps(context)):
            answer = await stream_final_answer(
                model,
                FinalAnswerConfig(system=system, messages=convo, sampling=sampling, tools=tool_dicts),
                channel,
                timeout=self.settings.stream_timeout_seconds,
                caller=f"researcher.step{step + 1}",
            )
            steps.append(answer)
            if not answer.tool_calls:
                return ResearcherOutcome(answer=_combine(steps), annotations=annotations)

            ask = next((c for c in answer.tool_calls if c.name == ASK_QUESTION), None)
            if ask is not None:
                question = ToolInvocation(tool_call_id=ask.id, tool_name=ASK_QUESTION, args=ask.arguments)
                annotation = streaming.tool_call(question)
                await channel.write_annotation(annotation)
                annotations.append(annotation)
                log_service.log_event(
                    event_type="clarifying_question",
                    message="Model asked a clarifying question; waiting for the user",
                    tool_call_id=ask.id,
                )
                return ResearcherOutcome(
                    answer=_combine(steps),
                    annotations=annotations,
                    pending_question=question,
                    parts=[{"type": "tool-invocation", "toolInvocation": question.to_annotation()["data"]}],
                )

            convo.append(
                {
                    "role": "assistant",
                    "content": answer.text,
                    "tool_calls": [{"id": c.id, "name": c.name, "arguments": c.arguments} for c in answer.tool_calls],
                }
            )
            tool_messages, step_annotations = await self._execute(answer.tool_calls, context, channel)
            convo.extend(tool_messages)
            annotations.extend(step_annotations)

        steps.append(
            await stream_final_answer(
                model,
                FinalAnswerConfig(system=system, messages=convo, sampling=sampling),
                channel,
                timeout=self.settings.stream_timeout_seconds,
                caller="researcher.final",
            )
        )
        return ResearcherOutcome(answer=_combine(steps), annotations=annotations)
