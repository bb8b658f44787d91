"""AI model configuration schemas."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class AIModelUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=200)
    endpoint: str | None = Field(default=None, max_length=500)
    api_key: str | None = Field(default=None, max_length=500)
    max_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = Field(default=None, ge=0, le=2)
    is_active: bool | None = None
    cost_per_1k_input: Decimal | None = Field(default=None, ge=0)
    cost_per_1k_output: Decimal | None = Field(default=None, ge=0)


class AIModelResponse(BaseModel):
    id: int
    name: str
    model_id: str
    provider: str
    endpoint: str
    max_tokens: int
    temperature: float
    is_default: bool
    is_active: bool
    cost_per_1k_input: Decimal | None = None
    cost_per_1k_output: Decimal | None = None
    is_local: bool = True
    display_name: str = ""
    is_loaded: bool = False  # resident in the provider right now
    created_at: datetime

    model_config = {"from_attributes": True, "protected_namespaces": ()}


class SyncResponse(BaseModel):
    created: list[AIModelResponse]
    loaded_count: int = 0


class ProviderStatusResponse(BaseModel):
    provider: str
    base_url: str
    available: bool
    advertised_models: list[str] = []
