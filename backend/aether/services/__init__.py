from aether.services.chat_service import ChatService, GenerationJob, run_generation_task
from aether.services.container import Services, build_services
from aether.services.credentials import CredentialResolver
from aether.services.message_store import MessageStore
from aether.services.model_registry import ModelInfo, ModelRegistry
from aether.services.orchestrator import (
    FinalMessageState,
    GenerationUser,
    OrchestratorConfig,
    ResponseOrchestrator,
)
from aether.services.providers import GenerationHandle, OpenAICompatibleModel, ProviderAdapter
from aether.services.research_service import ResearchOutcome, ResearchRunner, run_research_task
from aether.services.tools import ToolKind, ToolRegistry, ToolSet
from aether.services.users import UserDirectory

__all__ = [
    "ChatService",
    "GenerationJob",
    "run_generation_task",
    "Services",
    "build_services",
    "CredentialResolver",
    "MessageStore",
    "ModelInfo",
    "ModelRegistry",
    "FinalMessageState",
    "GenerationUser",
    "OrchestratorConfig",
    "ResponseOrchestrator",
    "GenerationHandle",
    "OpenAICompatibleModel",
    "ProviderAdapter",
    "ResearchOutcome",
    "ResearchRunner",
    "run_research_task",
    "ToolKind",
    "ToolRegistry",
    "ToolSet",
    "UserDirectory",
]
