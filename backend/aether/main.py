import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from aether.api.v1 import router as api_router
from aether.core.clock import Clock
from aether.core.config import Settings, get_settings
from aether.core.database import Base, create_engine, create_session_maker
from aether.core.exceptions import (
    AccessDenied,
    AetherError,
    ChatNotFound,
    ImageNotFound,
    InvalidOperation,
    MessageNotFound,
    MissingCredential,
    ModelNotFound,
    QuotaExceeded,
    ResearchSessionNotFound,
    UnsupportedProvider,
)
# Import all models to register them with Base
from aether import models  # noqa: F401
from aether.services import build_services
from aether.services.model_registry import ModelRegistry
from aether.services.providers import ProviderAdapter
from aether.services.tools import ImageClientFactory, TavilyFactory

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[AetherError], int]] = [
    (QuotaExceeded, status.HTTP_429_TOO_MANY_REQUESTS),
    (MissingCredential, status.HTTP_400_BAD_REQUEST),
    (ModelNotFound, status.HTTP_400_BAD_REQUEST),
    (UnsupportedProvider, status.HTTP_400_BAD_REQUEST),
    (ChatNotFound, status.HTTP_404_NOT_FOUND),
    (MessageNotFound, status.HTTP_404_NOT_FOUND),
    (ResearchSessionNotFound, status.HTTP_404_NOT_FOUND),
    (ImageNotFound, status.HTTP_404_NOT_FOUND),
    (AccessDenied, status.HTTP_403_FORBIDDEN),
    (InvalidOperation, status.HTTP_409_CONFLICT),
]


def configure_logging(settings: Settings) -> None:
    level = os.getenv("LOG_LEVEL", "DEBUG" if settings.debug else "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.INFO)


async def handle_aether_error(request: Request, exc: AetherError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= 500:
        logger.error("Unhandled service error on %s: %s", request.url.path, exc)
    content: dict = {"detail": str(exc)}
    if isinstance(exc, QuotaExceeded):
        content.update(remaining=exc.remaining, limit=exc.limit)
    return JSONResponse(status_code=status_code, content=content)


def create_app(
    settings: Settings | None = None,
    *,
    providers: ProviderAdapter | None = None,
    registry: ModelRegistry | None = None,
    tavily_factory: TavilyFactory | None = None,
    image_client_factory: ImageClientFactory | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    engine = create_engine(settings.database_url)
    session_maker = create_session_maker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield
        await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        description="Streaming chat orchestration for Aether AI",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.services = build_services(
        settings,
        session_maker,
        providers=providers,
        registry=registry,
        tavily_factory=tavily_factory,
        image_client_factory=image_client_factory,
        clock=clock,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Origin", "X-Requested-With", "X-User-Id", "X-Anon-Key"],
    )
    app.add_exception_handler(AetherError, handle_aether_error)
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": "1.0.0"}

    return app


app = create_app()
