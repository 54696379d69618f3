"""Application context: every long-lived collaborator, built once.

The process entry point (FastAPI lifespan or the CLI) owns the context's
lifecycle; components receive it, or the parts they need, explicitly.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from ultrasearch.agents.researcher import SinglePassResearcher
from ultrasearch.agents.tool_selection import ToolSelectionResolver
from ultrasearch.agents.ultra_orchestrator import UltraOrchestrator
from ultrasearch.config import Settings
from ultrasearch.llm_client import ProviderRegistry
from ultrasearch.models.catalog import DEFAULT_MODELS, ModelSpec
from ultrasearch.services.chat_store import ChatStore, DisabledChatStore, MemoryChatStore, PostgresChatStore
from ultrasearch.services.logger import logger
from ultrasearch.tools.adapter import ToolInvocationAdapter


@dataclass
class AppContext:
    settings: Settings
    providers: ProviderRegistry
    adapter: ToolInvocationAdapter
    store: ChatStore
    models: tuple[ModelSpec, ...] = DEFAULT_MODELS
    resolver: ToolSelectionResolver = field(init=False)
    orchestrator: UltraOrchestrator = field(init=False)
    researcher: SinglePassResearcher = field(init=False)

    def __post_init__(self) -> None:
        self.resolver = ToolSelectionResolver(self.adapter)
        self.orchestrator = UltraOrchestrator(self.resolver, self.settings)
        self.researcher = SinglePassResearcher(self.adapter, self.settings)

    @classmethod
    async def create(cls, settings: Settings) -> "AppContext":
        store: ChatStore
        if not settings.enable_save_chat_history:
            store = DisabledChatStore()
        elif settings.database_url:
            postgres = PostgresChatStore(settings.database_url)
            await postgres.open()
            store = postgres
        else:
            logger.warning("Chat history enabled without DATABASE_URL; using in-memory store")
            store = MemoryChatStore()

        providers = ProviderRegistry.from_settings(settings)
        if not providers.provider_ids:
            logger.warning("No language model provider configured; chat requests will fail")
        logger.info(f"Providers enabled: {', '.join(providers.provider_ids) or 'none'}")

        return cls(
            settings=settings,
            providers=providers,
            adapter=ToolInvocationAdapter(settings),
            store=store,
        )

    def enabled_models(self) -> list[ModelSpec]:
        return [m for m in self.models if m.enabled and self.providers.is_provider_enabled(m.provider_id)]

    async def aclose(self) -> None:
        await self.providers.aclose()
        await self.store.aclose()
