from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aether.core.clock import Clock, SystemClock
from aether.core.config import Settings
from aether.core.rate_limit import AdmissionController
from aether.services.chat_service import ChatService
from aether.services.credentials import CredentialResolver
from aether.services.message_store import MessageStore
from aether.services.model_registry import ModelRegistry
from aether.services.orchestrator import OrchestratorConfig, ResponseOrchestrator
from aether.services.providers import ProviderAdapter
from aether.services.research_service import ResearchRunner
from aether.services.tools import ImageClientFactory, TavilyFactory, ToolRegistry
from aether.services.users import UserDirectory


@dataclass
class Services:
    store: MessageStore
    admission: AdmissionController
    registry: ModelRegistry
    credentials: CredentialResolver
    providers: ProviderAdapter
    tools: ToolRegistry
    research: ResearchRunner
    orchestrator: ResponseOrchestrator
    chat: ChatService
    users: UserDirectory


def build_services(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    *,
    providers: ProviderAdapter | None = None,
    registry: ModelRegistry | None = None,
    tavily_factory: TavilyFactory | None = None,
    image_client_factory: ImageClientFactory | None = None,
    clock: Clock | None = None,
) -> Services:
    """Wire every collaborator explicitly from one settings object."""
    clock = clock or SystemClock()
    store = MessageStore(session_maker)
    admission = AdmissionController(session_maker, clock=clock, settings=settings)
    registry = registry or ModelRegistry.from_settings(settings)
    credentials = CredentialResolver(session_maker, settings)
    providers = providers or ProviderAdapter(settings)
    tools = ToolRegistry(
        credentials,
        settings,
        tavily_factory=tavily_factory,
        image_client_factory=image_client_factory,
        gallery=store,
    )
    research = ResearchRunner(
        store,
        admission,
        registry,
        credentials,
        providers,
        tools.research_tools(),
        clock=clock,
        settings=settings,
    )
    orchestrator = ResponseOrchestrator(
        store,
        registry,
        credentials,
        providers,
        tools,
        clock=clock,
        config=OrchestratorConfig.from_settings(settings),
        research_runner=research,
    )
    chat = ChatService(store, admission, orchestrator, settings)
    return Services(
        store=store,
        admission=admission,
        registry=registry,
        credentials=credentials,
        providers=providers,
        tools=tools,
        research=research,
        orchestrator=orchestrator,
        chat=chat,
        users=UserDirectory(session_maker),
    )
