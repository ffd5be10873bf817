from aether.schemas.schemas import (
    ProviderName, Attachment, ToolCallRecord, ToolConfig, UserPreferences, UserResponse,
    ChatCreate, ChatRename, ChatResponse, MessageResponse, SharedChatResponse,
    SendMessageRequest, SendMessageResponse, RetryRequest, EditMessageRequest, BranchRequest,
    ResearchAction, ResearchCreate, ResearchSessionResponse,
    ApiKeyCreate, ApiKeyResponse, UsageStatusResponse,
    AIImageResponse, GuestMigrationRequest, GuestMigrationResponse
)

__all__ = [
    "ProviderName", "Attachment", "ToolCallRecord", "ToolConfig", "UserPreferences", "UserResponse",
    "ChatCreate", "ChatRename", "ChatResponse", "MessageResponse", "SharedChatResponse",
    "SendMessageRequest", "SendMessageResponse", "RetryRequest", "EditMessageRequest", "BranchRequest",
    "ResearchAction", "ResearchCreate", "ResearchSessionResponse",
    "ApiKeyCreate", "ApiKeyResponse", "UsageStatusResponse",
    "AIImageResponse", "GuestMigrationRequest", "GuestMigrationResponse"
]
