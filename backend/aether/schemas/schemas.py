import uuid
from datetime import datetime
from typing import Any, Literal
from pydantic import BaseModel, Field, field_validator

ProviderName = Literal["gemini", "groq", "openrouter", "moonshot", "openai"]


class Attachment(BaseModel):
    name: str
    type: str
    size: int = Field(ge=0)
    url: str


class ToolCallRecord(BaseModel):
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any | None = None


class ToolConfig(BaseModel):
    web_search: bool = False
    image_generation: bool = False
    research: bool = False


class UserPreferences(BaseModel):
    nickname: str | None = None
    biography: str | None = None
    instructions: str | None = None


class UserResponse(BaseModel):
    id: uuid.UUID
    email: str | None = None
    name: str | None = None
    role: str
    preferences: dict = Field(default_factory=dict)
    created_at: datetime

    class Config:
        from_attributes = True


class ChatCreate(BaseModel):
    title: str | None = Field(default=None, max_length=500)


class ChatRename(BaseModel):
    title: str = Field(min_length=1, max_length=500)


class ChatResponse(BaseModel):
    id: uuid.UUID
    owner_id: uuid.UUID
    title: str
    is_pinned: bool
    is_shared: bool
    is_branch: bool
    is_generating_title: bool
    share_id: str | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    id: uuid.UUID
    chat_id: uuid.UUID
    role: str
    content: str
    model_id: str | None = None
    thinking: str | None = None
    thinking_duration: int | None = None
    is_complete: bool
    is_cancelled: bool
    attachments: list[Attachment] | None = None
    tool_calls: list[ToolCallRecord] | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class SharedChatResponse(BaseModel):
    chat: ChatResponse
    messages: list[MessageResponse]


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1)
    model_id: str
    attachments: list[Attachment] = Field(default_factory=list)
    tool_config: ToolConfig = Field(default_factory=ToolConfig)

    @field_validator("content")
    @classmethod
    def strip_content(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Message content cannot be empty")
        return v


class SendMessageResponse(BaseModel):
    chat_id: uuid.UUID
    user_message_id: uuid.UUID | None = None
    assistant_message_id: uuid.UUID
    remaining: int | None = None


class RetryRequest(BaseModel):
    message_id: uuid.UUID
    model_id: str
    web_search: bool = False


class EditMessageRequest(BaseModel):
    content: str = Field(min_length=1)
    model_id: str
    web_search: bool = False


class BranchRequest(BaseModel):
    message_id: uuid.UUID


class ResearchAction(BaseModel):
    type: Literal["search", "read"]
    tool_call_id: str
    thoughts: str
    query: str | None = None
    url: str | None = None
    timestamp: int


class ResearchCreate(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    thoughts: str = ""


class ResearchSessionResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    prompt: str
    thoughts: str
    status: Literal["running", "completed", "failed"]
    summary: str | None = None
    actions: list[ResearchAction] = Field(default_factory=list)
    created_at: datetime
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class ApiKeyCreate(BaseModel):
    service: ProviderName
    name: str = Field(min_length=1, max_length=255)
    key: str = Field(min_length=1)


class ApiKeyResponse(BaseModel):
    id: uuid.UUID
    service: str
    name: str
    masked_key: str
    is_default: bool
    created_at: datetime


class UsageStatusResponse(BaseModel):
    role: str
    allowed: bool
    remaining: int | None = None
    limit: int | None = None


class AIImageResponse(BaseModel):
    id: uuid.UUID
    prompt: str
    image_url: str
    created_at: datetime

    class Config:
        from_attributes = True


class GuestMigrationRequest(BaseModel):
    anon_key: str = Field(min_length=1, max_length=128)


class GuestMigrationResponse(BaseModel):
    migrated: int
