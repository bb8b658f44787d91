"""Chat schemas: projects, conversations, messages."""

from datetime import datetime

from pydantic import BaseModel, Field


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)


class ProjectResponse(BaseModel):
    id: int
    name: str
    description: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class ConversationCreate(BaseModel):
    title: str = Field(default="New conversation", max_length=500)


class ConversationResponse(BaseModel):
    id: int
    project_id: int
    title: str
    total_tokens_used: int
    last_message_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class MessageResponse(BaseModel):
    id: int
    role: str
    content: str | None
    token_count: int
    model: str | None = None
    response_time_ms: int | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ConversationDetailResponse(ConversationResponse):
    messages: list[MessageResponse]


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1)
    model_id: int | None = None  # configuration id overriding the default model


class ProjectStatisticsResponse(BaseModel):
    project_id: int
    project_name: str
    total_conversations: int
    total_messages: int
    total_tokens_used: int
    last_activity_at: datetime | None
    created_at: datetime
    messages_by_role: dict[str, int] = {}
    tokens_by_model: dict[str, int] = {}
    average_response_time_ms: float = 0.0
