"""AI model configuration API routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from lmchat.api.deps import get_completion_client, get_current_admin, get_current_user, get_db
from lmchat.config import settings
from lmchat.models.user import User
from lmchat.schemas.ai_model import (
    AIModelResponse,
    AIModelUpdate,
    ProviderStatusResponse,
    SyncResponse,
)
from lmchat.services.completion_client import CompletionClient
from lmchat.services.model_selector import ModelSelector

router = APIRouter()


@router.get("", response_model=list[AIModelResponse])
async def list_models(
    include_inactive: bool = True,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: CompletionClient = Depends(get_completion_client),
):
    """List model configurations, flagged with provider residency."""
    selector = ModelSelector(db, client)
    return await selector.list_models(include_inactive=include_inactive)


@router.get("/status", response_model=ProviderStatusResponse)
async def provider_status(
    current_user: User = Depends(get_current_user),
    client: CompletionClient = Depends(get_completion_client),
):
    """Check whether the completion server is reachable."""
    available = await client.test_connection()
    advertised = [m.id for m in await client.list_models()] if available else []
    return ProviderStatusResponse(
        provider=settings.lmstudio_provider_label,
        base_url=client.base_url,
        available=available,
        advertised_models=advertised,
    )


@router.post("/sync", response_model=SyncResponse)
async def sync_models(
    current_user: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
    client: CompletionClient = Depends(get_completion_client),
):
    """Register models advertised by the provider that are not configured yet."""
    selector = ModelSelector(db, client)
    created = await selector.sync_from_provider()
    loaded = [m for m in await client.list_loaded_models() if m.is_loaded]
    return SyncResponse(
        created=[AIModelResponse.model_validate(m) for m in created],
        loaded_count=len(loaded),
    )


@router.patch("/{model_id}", response_model=AIModelResponse)
async def update_model(
    model_id: int,
    data: AIModelUpdate,
    current_user: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Update a model configuration."""
    selector = ModelSelector(db)
    return await selector.update(model_id, data)


@router.post("/{model_id}/default", response_model=AIModelResponse)
async def set_default_model(
    model_id: int,
    current_user: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Make this configuration the default model."""
    selector = ModelSelector(db)
    return await selector.set_default(model_id)


@router.post("/{model_id}/toggle", response_model=AIModelResponse)
async def toggle_model(
    model_id: int,
    current_user: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Activate or deactivate a model configuration."""
    selector = ModelSelector(db)
    return await selector.toggle_active(model_id)


@router.delete("/{model_id}", status_code=204)
async def delete_model(
    model_id: int,
    current_user: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Delete a model configuration."""
    selector = ModelSelector(db)
    await selector.delete(model_id)
