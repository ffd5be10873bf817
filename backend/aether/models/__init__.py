from aether.models.models import (
    User, ApiKey, Chat, Message, MessageUsage, UserUsage, ResearchSession, AIImage,
    UserRole, MessageRole, ResearchStatus, Provider
)

__all__ = [
    "User", "ApiKey", "Chat", "Message", "MessageUsage", "UserUsage", "ResearchSession", "AIImage",
    "UserRole", "MessageRole", "ResearchStatus", "Provider"
]
