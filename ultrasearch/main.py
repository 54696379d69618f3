from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ultrasearch.api.routes import chat, chats, models
from ultrasearch.config import settings
from ultrasearch.context import AppContext


def create_app(context: AppContext | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        owned = context is None
        app.state.context = context if context is not None else await AppContext.create(settings)
        yield
        # Shutdown
        if owned:
            await app.state.context.aclose()

    app = FastAPI(
        title="UltraSearch",
        description="Search-augmented chat with a multi-phase ultra mode",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    app.include_router(chat.router)
    app.include_router(chats.router)
    app.include_router(models.router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "service": "ultrasearch"}

    return app


app = create_app()
