"""Multi-phase "ultra" answer pipeline.

Planner -> [Research] -> Writer -> Critic run strictly in sequence, each
consuming the previous phase's text. Every phase writes its header
annotation before its model call and its result annotation after, so a
client can show progress while the phase runs. The Refiner is not run
here: ``build_final_config`` returns its prompt and sampling so the caller
can stream it as the single final answer.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Awaitable, TypeVar

from ultrasearch.agents.final_answer import FinalAnswerConfig
from ultrasearch.agents.tool_selection import ToolSelection, ToolSelectionResolver
from ultrasearch.config import Settings
from ultrasearch.llm_client import LanguageModel, SamplingParams
from ultrasearch.models.annotations import Annotation, Stage
from ultrasearch.models.messages import Message, last_user_text, to_provider_messages
from ultrasearch.services import logger as log_service
from ultrasearch.services import streaming
from ultrasearch.services.channel import ChannelClosedError, StreamChannel
from ultrasearch.services.prompt_store import render_prompt
from ultrasearch.tools.adapter import ToolContext

T = TypeVar("T")

PLANNER_SAMPLING = SamplingParams(temperature=0)
WRITER_SAMPLING = SamplingParams(temperature=0.7, top_p=0.95)
CRITIC_SAMPLING = SamplingParams(temperature=0)
REFINER_SAMPLING = SamplingParams(temperature=0.25, top_p=0.95, top_k=40)

RESEARCH_MAX_CALLS = 3

_NUMBERED = re.compile(r"^\d+\.\s+")
_BULLETED = re.compile(r"^[-•*]\s+")
_OBJECTIVE = re.compile(r"^(Objective|Goal)\s*:", re.IGNORECASE)
_TRAILING = re.compile(r"[.:\-\s]+$")


class UltraPhaseError(RuntimeError):
    """A phase failed; ``selection`` keeps the research results gathered so far."""

    def __init__(self, stage: Stage, cause: BaseException, selection: ToolSelection | None = None):
        super().__init__(f"Ultra {stage.value} phase failed: {cause}")
        self.stage = stage
        self.cause = cause
        self.selection = selection


@dataclass
class _Progress:
    stage: Stage = Stage.PLANNER
    selection: ToolSelection | None = None


def user_snippet(messages: list[Message], limit: int = 160) -> str:
    return " ".join(last_user_text(messages).split())[:limit]


def extract_plan_title(plan: str) -> str | None:
    """Short title from the first numbered step, bullet, or objective line."""
    lines = [line.strip() for line in plan.splitlines() if line.strip()]
    for pattern in (_NUMBERED, _BULLETED, _OBJECTIVE):
        for line in lines:
            if pattern.match(line):
                title = _TRAILING.sub("", pattern.sub("", line, count=1).strip())
                if title:
                    return title[:140]
    return None


def summarize_sources(sources: list[dict[str, str]], max_items: int = 8) -> str:
    if not sources:
        return "No sources found"
    lines = [
        f"{s['host']} - {s['title']}" if s.get("host") else s["title"]
        for s in sources[:max_items]
    ]
    more = len(sources) - max_items
    if more > 0:
        lines.append(f"+{more} more sources")
    return "\n".join(lines)


class UltraOrchestrator:
    def __init__(self, resolver: ToolSelectionResolver, settings: Settings):
        self.resolver = resolver
        self.settings = settings

    async def _phase(self, stage: Stage, call: Awaitable[T]) -> T:
        try:
            return await call
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise UltraPhaseError(stage, e) from e

    async def _emit(self, channel: StreamChannel, collected: list[Annotation], annotation: Annotation) -> None:
        await channel.write_annotation(annotation)
        collected.append(annotation)

    def _writer_messages(
        self,
        base: list[dict[str, Any]],
        plan_text: str,
        selection: ToolSelection | None,
    ) -> list[dict[str, Any]]:
        if selection is not None and selection.followup_messages:
            return [
                *base,
                {"role": "user", "content": f"Plan:\n{plan_text}"},
                *to_provider_messages(selection.followup_messages),
                {"role": "user", "content": render_prompt("ultra.writer_with_sources")},
            ]
        return [*base, {"role": "user", "content": render_prompt("ultra.writer_plan_only", plan=plan_text)}]

    async def _research(
        self,
        messages: list[Message],
        *,
        model: LanguageModel,
        context: ToolContext,
        channel: StreamChannel,
        chat_id: str,
        current_date: str,
    ) -> ToolSelection | None:
        try:
            return await self.resolver.resolve(
                messages,
                enabled=True,
                model=model,
                context=context,
                channel=channel,
                max_calls=RESEARCH_MAX_CALLS,
                current_date=current_date,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_service.log_pipeline_step(
                chat_id, "ultra.research", "degraded", {"error": str(e) or type(e).__name__}
            )
            return None

    async def build_final_config(
        self,
        messages: list[Message],
        *,
        model: LanguageModel,
        context: ToolContext,
        channel: StreamChannel,
        search_mode: bool,
        current_date: str,
        chat_id: str = "",
        selection_model: LanguageModel | None = None,
    ) -> FinalAnswerConfig:
        """Run Planner, Research, Writer and Critic; return the Refiner config.

        Any failure other than cancellation or a closed channel surfaces as
        ``UltraPhaseError`` naming the phase that was running.
        """
        progress = _Progress()
        try:
            return await self._build(
                messages,
                model=model,
                context=context,
                channel=channel,
                search_mode=search_mode,
                current_date=current_date,
                chat_id=chat_id,
                selection_model=selection_model,
                progress=progress,
            )
        except (asyncio.CancelledError, ChannelClosedError):
            raise
        except UltraPhaseError as e:
            e.selection = progress.selection
            raise
        except Exception as e:
            raise UltraPhaseError(progress.stage, e, progress.selection) from e

    async def _build(
        self,
        messages: list[Message],
        *,
        model: LanguageModel,
        context: ToolContext,
        channel: StreamChannel,
        search_mode: bool,
        current_date: str,
        chat_id: str = "",
        selection_model: LanguageModel | None = None,
        progress: _Progress,
    ) -> FinalAnswerConfig:
        collected: list[Annotation] = []
        base = to_provider_messages(messages)
        snippet = user_snippet(messages)
        about_for = f' for "{snippet}"' if snippet else ""

        # Planner
        log_service.log_pipeline_step(chat_id, "ultra.planner", "started")
        await self._emit(
            channel,
            collected,
            streaming.stage_header(
                Stage.PLANNER,
                f"Planning: {snippet}" if snippet else "Plan: objective, steps, coverage",
                render_prompt("ultra.planner_header", about=f' about "{snippet}"' if snippet else ""),
                search_enabled=search_mode,
            ),
        )
        planner = await self._phase(
            Stage.PLANNER,
            model.generate(
                render_prompt("ultra.planner_system", current_date=current_date),
                base,
                PLANNER_SAMPLING,
                caller="ultra.planner",
            ),
        )
        plan_text = planner.text.strip()
        plan_title = extract_plan_title(plan_text)
        await self._emit(
            channel,
            collected,
            streaming.stage_result(
                Stage.PLANNER,
                plan_text,
                f"Plan Results: {plan_title or snippet}" if (plan_title or snippet) else "Plan Results",
                "Analysis and plan results",
            ),
        )
        topic = snippet or plan_title or ""

        # Research
        selection: ToolSelection | None = None
        if search_mode:
            progress.stage = Stage.RESEARCH
            log_service.log_pipeline_step(chat_id, "ultra.research", "started")
            await self._emit(
                channel,
                collected,
                streaming.stage_header(Stage.RESEARCH, "Research", render_prompt("ultra.research_header")),
            )
            selection = await self._research(
                messages,
                model=selection_model or model,
                context=context,
                channel=channel,
                chat_id=chat_id,
                current_date=current_date,
            )
            if selection is not None:
                progress.selection = selection
                collected.extend(selection.annotations)
            await self._emit(
                channel,
                collected,
                streaming.stage_result(
                    Stage.RESEARCH,
                    summarize_sources(selection.sources if selection else [], self.settings.research_max_sources),
                    "Research results",
                    "Sources",
                ),
            )

        # Writer
        progress.stage = Stage.WRITER
        log_service.log_pipeline_step(chat_id, "ultra.writer", "started")
        writer_messages = self._writer_messages(base, plan_text, selection)
        await self._emit(
            channel,
            collected,
            streaming.stage_header(
                Stage.WRITER,
                f"Drafting: {topic}" if topic else "Draft: initial comprehensive answer",
                render_prompt(
                    "ultra.writer_header",
                    plan_clause=f' "{plan_title}"' if plan_title else "",
                    about_for=about_for,
                ),
            ),
        )
        has_sources = selection is not None and bool(selection.followup_messages)
        draft = await self._phase(
            Stage.WRITER,
            model.generate(
                render_prompt(
                    "ultra.writer_system",
                    sources_clause=" and the research results (sources)" if has_sources else "",
                    current_date=current_date,
                ),
                writer_messages,
                WRITER_SAMPLING,
                caller="ultra.writer",
            ),
        )
        draft_text = draft.text.strip()
        await self._emit(
            channel,
            collected,
            streaming.stage_result(
                Stage.WRITER,
                draft_text[: self.settings.writer_preview_chars],
                f"Draft Results: {topic}" if topic else "Draft Results",
                "Draft results",
            ),
        )

        # Critic
        progress.stage = Stage.CRITIC
        log_service.log_pipeline_step(chat_id, "ultra.critic", "started")
        await self._emit(
            channel,
            collected,
            streaming.stage_header(
                Stage.CRITIC,
                f"Critiquing: {topic}" if topic else "Critique: issues and improvements",
                render_prompt("ultra.critic_header", about_for=about_for),
            ),
        )
        critique = await self._phase(
            Stage.CRITIC,
            model.generate(
                render_prompt("ultra.critic_system", current_date=current_date),
                [{"role": "user", "content": render_prompt("ultra.critic_user", draft=draft_text)}],
                CRITIC_SAMPLING,
                caller="ultra.critic",
            ),
        )
        critique_text = critique.text.strip()
        critic_topic = plan_title or snippet
        await self._emit(
            channel,
            collected,
            streaming.stage_result(
                Stage.CRITIC,
                critique_text,
                f"Critique Results: {critic_topic}" if critic_topic else "Critique Results",
                "Critique results",
            ),
        )
        log_service.log_pipeline_step(chat_id, "ultra", "completed", {"annotations": len(collected)})

        return FinalAnswerConfig(
            system=render_prompt("ultra.refiner_system", current_date=current_date),
            messages=[
                *base,
                {
                    "role": "user",
                    "content": render_prompt("ultra.refiner_user", draft=draft_text, critique=critique_text),
                },
            ],
            sampling=REFINER_SAMPLING,
            annotations=collected,
        )
