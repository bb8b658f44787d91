"""Model selection and configuration management.

Exactly one active configuration is the default. The default flag is only
ever moved by ``set_default``, which clears every flag and sets the target
in a single transaction.
"""

import asyncio

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lmchat.config import settings
from lmchat.core.exceptions import BusinessRuleError, NotFoundError
from lmchat.models.ai_model import AIModel
from lmchat.schemas.ai_model import AIModelUpdate
from lmchat.services.completion_client import CompletionClient

logger = structlog.get_logger()

# Serializes default-flag changes within this process
_default_lock = asyncio.Lock()


class ModelSelector:
    """Resolve and administer AI model configurations."""

    def __init__(self, db: AsyncSession, client: CompletionClient | None = None):
        self.db = db
        self.client = client or CompletionClient()

    # ---- resolution ----

    async def resolve_default(self) -> AIModel:
        """Return the default active model, else the first active one."""
        result = await self.db.execute(
            select(AIModel)
            .where(AIModel.is_active.is_(True), AIModel.is_default.is_(True))
            .limit(1)
        )
        model = result.scalar_one_or_none()
        if model:
            return model

        result = await self.db.execute(
            select(AIModel).where(AIModel.is_active.is_(True)).order_by(AIModel.id).limit(1)
        )
        model = result.scalar_one_or_none()
        if model:
            return model

        raise BusinessRuleError("No active AI model available", code="no_ai_model")

    async def resolve(self, model_id: int | None = None, sync: bool = True) -> AIModel:
        """Pick the model for a chat request.

        An explicit configuration id wins. Without one, the default is used;
        when nothing usable is configured yet the provider inventory is synced
        once before giving up.
        """
        if model_id is not None:
            model = await self.db.get(AIModel, model_id)
            if not model or not model.is_active:
                raise NotFoundError("AI model")
            return model

        try:
            return await self.resolve_default()
        except BusinessRuleError:
            if not sync:
                raise
        await self.sync_from_provider()
        return await self.resolve_default()

    # ---- administration ----

    async def get_model(self, model_id: int) -> AIModel:
        model = await self.db.get(AIModel, model_id)
        if not model:
            raise NotFoundError("AI model")
        return model

    async def list_models(self, include_inactive: bool = True) -> list[dict]:
        """List configurations, flagged with whether the provider has them loaded."""
        query = select(AIModel).order_by(AIModel.id)
        if not include_inactive:
            query = query.where(AIModel.is_active.is_(True))
        result = await self.db.execute(query)
        models = result.scalars().all()

        loaded_ids = {m.id for m in await self.client.list_loaded_models() if m.is_loaded}
        return [
            {
                "id": m.id,
                "name": m.name,
                "model_id": m.model_id,
                "provider": m.provider,
                "endpoint": m.endpoint,
                "max_tokens": m.max_tokens,
                "temperature": m.temperature,
                "is_default": m.is_default,
                "is_active": m.is_active,
                "cost_per_1k_input": m.cost_per_1k_input,
                "cost_per_1k_output": m.cost_per_1k_output,
                "is_local": m.is_local,
                "display_name": m.display_name,
                "is_loaded": m.model_id in loaded_ids,
                "created_at": m.created_at,
            }
            for m in models
        ]

    async def set_default(self, model_id: int) -> AIModel:
        """Make ``model_id`` the only default configuration."""
        async with _default_lock:
            model = await self.get_model(model_id)
            if not model.is_active:
                raise BusinessRuleError("An inactive model cannot be the default", code="inactive_default")

            await self.db.execute(
                update(AIModel).where(AIModel.is_default.is_(True)).values(is_default=False)
            )
            await self.db.execute(
                update(AIModel).where(AIModel.id == model_id).values(is_default=True)
            )
            await self.db.commit()
            await self.db.refresh(model)

        logger.info("ai_model_default_set", model_id=model.model_id, id=model.id)
        return model

    async def toggle_active(self, model_id: int) -> AIModel:
        model = await self.get_model(model_id)
        if model.is_default:
            raise BusinessRuleError("Cannot deactivate the default model", code="default_model")
        model.is_active = not model.is_active
        await self.db.commit()
        await self.db.refresh(model)
        logger.info("ai_model_toggled", id=model.id, is_active=model.is_active)
        return model

    async def delete(self, model_id: int) -> None:
        model = await self.get_model(model_id)
        if model.is_default:
            raise BusinessRuleError("Cannot delete the default model", code="default_model")
        await self.db.delete(model)
        await self.db.commit()
        logger.info("ai_model_deleted", id=model_id)

    async def update(self, model_id: int, data: AIModelUpdate) -> AIModel:
        model = await self.get_model(model_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("is_active") is False and model.is_default:
            raise BusinessRuleError("Cannot deactivate the default model", code="default_model")
        for key, value in changes.items():
            setattr(model, key, value)
        await self.db.commit()
        await self.db.refresh(model)
        return model

    async def sync_from_provider(self) -> list[AIModel]:
        """Register every advertised provider model that is not configured yet.

        New configurations are active and not default, except that the first
        one becomes the default when no default exists. Provider failures are
        logged and leave the configuration untouched.
        """
        provider_models = await self.client.list_models()
        if not provider_models:
            logger.info("ai_model_sync_skipped", reason="no models advertised")
            return []

        result = await self.db.execute(select(AIModel.model_id))
        known = set(result.scalars().all())
        result = await self.db.execute(
            select(AIModel.id).where(AIModel.is_default.is_(True)).limit(1)
        )
        needs_default = result.scalar_one_or_none() is None

        created = []
        for pm in provider_models:
            if pm.id in known:
                continue
            model = AIModel(
                name=pm.id,
                model_id=pm.id,
                provider=settings.lmstudio_provider_label,
                endpoint=self.client.base_url,
                max_tokens=settings.model_default_max_tokens,
                temperature=settings.model_default_temperature,
                is_active=True,
                is_default=needs_default and not created,
            )
            self.db.add(model)
            known.add(pm.id)
            created.append(model)

        if not created:
            return []
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning("ai_model_sync_failed", error=str(e))
            return []
        for model in created:
            await self.db.refresh(model)
        logger.info("ai_models_synced", created=[m.model_id for m in created])
        return created
