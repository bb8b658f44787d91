"""AI model configuration: which provider-side model serves chat requests."""

from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Float, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from lmchat.models.base import Base, TimestampMixin


class AIModel(Base, TimestampMixin):
    __tablename__ = "ai_models"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    model_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)  # id sent to the provider
    provider: Mapped[str] = mapped_column(String(100), nullable=False, default="LMStudio")
    endpoint: Mapped[str] = mapped_column(String(500), nullable=False)
    api_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    max_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=4096)
    temperature: Mapped[float] = mapped_column(Float, nullable=False, default=0.7)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    cost_per_1k_input: Mapped[Decimal | None] = mapped_column(Numeric(10, 6), nullable=True)
    cost_per_1k_output: Mapped[Decimal | None] = mapped_column(Numeric(10, 6), nullable=True)
    capabilities: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON document

    __table_args__ = (
        CheckConstraint("temperature >= 0 AND temperature <= 2", name="ck_ai_models_temperature"),
        CheckConstraint("max_tokens > 0", name="ck_ai_models_max_tokens"),
        # At most one row may carry the default flag
        Index(
            "uq_ai_models_single_default",
            "is_default",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default"),
        ),
        Index("idx_ai_models_active", "is_active"),
    )

    @property
    def is_local(self) -> bool:
        return self.provider == "LMStudio" or "localhost" in self.endpoint

    @property
    def display_name(self) -> str:
        return f"{self.name} ({self.provider})"
