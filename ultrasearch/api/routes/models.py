from __future__ import annotations

from fastapi import APIRouter, Depends

from ultrasearch.api.deps import get_available_models, get_context
from ultrasearch.context import AppContext
from ultrasearch.models.schemas import ModelInfo, ModelsResponse

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("", response_model=ModelsResponse)
async def list_models(context: AppContext = Depends(get_context)):
    """List models whose provider is configured."""
    models = get_available_models(context)
    return ModelsResponse(models=[ModelInfo(**m) for m in models])
