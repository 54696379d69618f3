from __future__ import annotations

from fastapi import Request

from ultrasearch.context import AppContext


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_available_models(context: AppContext) -> list[dict[str, object]]:
    """Catalog models whose provider is configured."""
    return [
        {
            "id": m.key,
            "name": m.name,
            "provider": m.provider,
            "provider_id": m.provider_id,
            "enabled": m.enabled,
            "tool_call_type": m.tool_call_type,
            "description": m.description,
        }
        for m in context.enabled_models()
    ]
