"""One chat turn, from request to persisted transcript.

``ChatPipeline.run`` is the single producer for a turn's ``StreamChannel``:

1. tool selection (unless suppressed) adds tool context,
2. the ultra orchestrator or the single-pass researcher produces the answer,
   with the orchestrator falling back to the researcher on a phase failure,
3. exactly one final answer is streamed,
4. the finish handler merges annotations and persists the turn.

Cancellation skips step 4: an interrupted turn is never saved.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ultrasearch.agents.final_answer import FinalAnswerConfig, StreamedAnswer, stream_final_answer
from ultrasearch.agents.researcher import manual_researcher_config
from ultrasearch.agents.tool_selection import ToolSelection
from ultrasearch.agents.ultra_orchestrator import UltraPhaseError
from ultrasearch.models.annotations import Annotation, ToolInvocation
from ultrasearch.models.catalog import resolve_model
from ultrasearch.models.messages import Message, new_message_id
from ultrasearch.services import logger as log_service
from ultrasearch.services.channel import StreamChannel
from ultrasearch.services.chat_store import ChatPersistenceError
from ultrasearch.services.context_window import max_allowed_tokens, truncate_messages
from ultrasearch.services.finish_handler import handle_stream_finish
from ultrasearch.services.prompt_store import current_datetime
from ultrasearch.tools.adapter import ToolContext

if TYPE_CHECKING:
    from ultrasearch.context import AppContext


@dataclass
class ChatTurn:
    chat_id: str
    messages: list[Message]
    model_key: str
    search_mode: bool = True
    ultra_mode: bool = False
    regenerate: bool = False
    user_id: str = "anonymous"


@dataclass
class TurnResult:
    message: Message
    messages: list[Message]
    strategy: str
    annotations: list[Annotation] = field(default_factory=list)


class ChatPipeline:
    def __init__(self, context: "AppContext"):
        self.context = context

    async def run(self, turn: ChatTurn, channel: StreamChannel) -> TurnResult:
        try:
            result = await self._run(turn, channel)
        except asyncio.CancelledError:
            log_service.log_pipeline_step(turn.chat_id, "turn", "cancelled")
            channel.close_nowait()
            raise
        except ChatPersistenceError as e:
            log_service.log_pipeline_step(turn.chat_id, "finish", "failed", {"error": str(e)})
            await self._fail(channel, "Failed to save chat history", stage="finish")
            raise
        except Exception as e:
            log_service.log_pipeline_step(
                turn.chat_id, "turn", "failed", {"error": str(e) or type(e).__name__}
            )
            await self._fail(channel, str(e) or "Generation failed")
            raise
        await channel.write_finish(result.message.id, strategy=result.strategy)
        await channel.close()
        return result

    @staticmethod
    async def _fail(channel: StreamChannel, message: str, stage: str | None = None) -> None:
        if not channel.closed:
            await channel.write_error(message, stage=stage)
        await channel.close()

    async def _run(self, turn: ChatTurn, channel: StreamChannel) -> TurnResult:
        ctx = self.context
        settings = ctx.settings
        spec = resolve_model(turn.model_key, ctx.models)
        model = ctx.providers.model(turn.model_key)
        selection_model = (
            ctx.providers.model(f"{spec.provider_id}:{spec.tool_call_model}") if spec.tool_call_model else model
        )
        native_tools = spec.tool_call_type == "native"

        truncated = truncate_messages(
            turn.messages, max_allowed_tokens(spec, settings.context_reserve_tokens)
        )
        first_turn = not any(m.role == "assistant" for m in truncated)
        clarify = turn.ultra_mode and first_turn and settings.ultra_clarify_first_turn and native_tools
        use_ultra = turn.ultra_mode and not clarify
        current_date = current_datetime()
        tools = ToolContext(
            user_id=turn.user_id,
            search_mode=turn.search_mode,
            model_key=turn.model_key,
            default_max_results=settings.max_results_for(turn.model_key),
            include_ask_question=native_tools,
        )
        log_service.log_pipeline_step(
            turn.chat_id,
            "turn",
            "started",
            {"model": turn.model_key, "search": turn.search_mode, "ultra": use_ultra, "clarify": clarify},
        )

        # The ultra research phase does its own tool selection.
        selection = ToolSelection()
        if not use_ultra and not clarify:
            selection = await ctx.resolver.resolve(
                truncated,
                enabled=turn.search_mode,
                model=selection_model,
                context=tools,
                channel=channel,
                current_date=current_date,
            )
        llm_messages = [*truncated, *selection.followup_messages]

        config: FinalAnswerConfig | None = None
        strategy = "researcher" if native_tools else "manual"
        if use_ultra:
            try:
                config = await ctx.orchestrator.build_final_config(
                    llm_messages,
                    model=model,
                    context=tools,
                    channel=channel,
                    search_mode=turn.search_mode,
                    current_date=current_date,
                    chat_id=turn.chat_id,
                    selection_model=selection_model,
                )
                strategy = "ultra"
            except UltraPhaseError as e:
                log_service.log_pipeline_step(
                    turn.chat_id,
                    f"ultra.{e.stage.value}",
                    "failed",
                    {"error": str(e.cause) or type(e.cause).__name__, "fallback": strategy},
                )
                # The fallback answers from the research already done; a manual
                # model has no tools of its own, so it gets a fresh selection.
                if e.selection is not None:
                    selection = e.selection
                elif turn.search_mode and not native_tools:
                    selection = await ctx.resolver.resolve(
                        truncated,
                        enabled=True,
                        model=selection_model,
                        context=tools,
                        channel=channel,
                        current_date=current_date,
                    )
                llm_messages = [*truncated, *selection.followup_messages]

        pending_question: ToolInvocation | None = None
        extra_parts: list[dict] = []
        answer: StreamedAnswer
        if config is not None:
            answer = await stream_final_answer(
                model, config, channel, timeout=settings.stream_timeout_seconds, caller="ultra.refiner"
            )
        elif native_tools:
            outcome = await ctx.researcher.run(
                llm_messages,
                model=model,
                context=tools,
                channel=channel,
                current_date=current_date,
                clarify=clarify,
            )
            answer = outcome.answer
            pending_question = outcome.pending_question
            extra_parts = outcome.parts
        else:
            answer = await stream_final_answer(
                model,
                manual_researcher_config(
                    llm_messages,
                    search_enabled=turn.search_mode,
                    ultra_mode=turn.ultra_mode,
                    current_date=current_date,
                ),
                channel,
                timeout=settings.stream_timeout_seconds,
                caller="manual_researcher",
            )

        annotations = list(channel.persistable_annotations)
        reasoning = answer.reasoning_annotation()
        if reasoning is not None:
            annotations.append(reasoning)

        parts: list[dict] = [{"type": "text", "text": answer.text}] if answer.text else []
        assistant = Message(
            id=new_message_id(), role="assistant", content=answer.text, parts=[*parts, *extra_parts]
        )

        skip_related = (
            not settings.related_questions_enabled
            or pending_question is not None
            or ctx.providers.is_reasoning_model(turn.model_key)
        )
        messages = await handle_stream_finish(
            chat_id=turn.chat_id,
            user_id=turn.user_id,
            original_messages=turn.messages,
            response_messages=[assistant],
            annotations=annotations,
            channel=channel,
            store=ctx.store,
            related_model=model,
            skip_related_questions=skip_related,
            save_mode="replace" if turn.regenerate else "merge",
        )
        log_service.log_pipeline_step(turn.chat_id, "turn", "completed", {"strategy": strategy})
        return TurnResult(message=messages[-1], messages=messages, strategy=strategy, annotations=messages[-1].annotations)
