from aether.core.config import Settings, get_settings
from aether.core.database import Base, create_engine, create_session_maker
from aether.core.clock import Clock, SystemClock
from aether.core.exceptions import (
    AetherError,
    MissingCredential,
    ModelNotFound,
    QuotaExceeded,
    ProviderStreamError,
    ToolExecutionError,
    ToolArgumentSchemaError,
    ChatNotFound,
    MessageNotFound,
    ResearchSessionNotFound,
    ImageNotFound,
    AccessDenied,
    InvalidOperation,
    UnsupportedProvider,
)

__all__ = [
    "Settings",
    "get_settings",
    "Base",
    "create_engine",
    "create_session_maker",
    "Clock",
    "SystemClock",
    "AetherError",
    "MissingCredential",
    "ModelNotFound",
    "QuotaExceeded",
    "ProviderStreamError",
    "ToolExecutionError",
    "ToolArgumentSchemaError",
    "ChatNotFound",
    "MessageNotFound",
    "ResearchSessionNotFound",
    "ImageNotFound",
    "AccessDenied",
    "InvalidOperation",
    "UnsupportedProvider",
]
