"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncEngine

from .api.routes import router
from .api.ws import router as ws_router
from .core.backend_health import BackendHealthTracker
from .core.channels import ChannelRegistry
from .core.config import Settings, get_settings
from .core.ledger import SessionLedger
from .core.orchestrator import FanoutOrchestrator
from .core.personas import PersonaRegistry
from .core.security import RequestLoggingMiddleware, SecurityHeadersMiddleware, limiter
from .db.database import build_engine, build_session_factory, close_db, init_db
from .providers.base import GenerationClient
from .providers.google_provider import GoogleProvider

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    generation_client: Optional[GenerationClient] = None,
    engine: Optional[AsyncEngine] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to the cached environment settings
        generation_client: Replaces the Gemini client (used by tests)
        engine: Replaces the engine built from ``settings.database_url``
    """
    settings = settings or get_settings()
    logging.getLogger("sagechat").setLevel(settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info(f"Starting Sage Chat in {settings.environment} mode")

        client = generation_client
        if client is None:
            if not settings.gemini_api_key:
                raise RuntimeError("GEMINI_API_KEY is not set. Add it to the environment or .env file.")
            client = GoogleProvider(
                api_key=settings.gemini_api_key,
                model=settings.gemini_model,
                max_output_tokens=settings.max_output_tokens,
            )

        db_engine = engine or build_engine(settings.database_url, echo=settings.database_echo)
        if settings.auto_migrate:
            logger.info("Initializing database...")
            await init_db(db_engine)
            logger.info("Database initialized")

        session_factory = build_session_factory(db_engine)
        registry = PersonaRegistry.default(settings.personas_file)
        ledger = SessionLedger(session_factory, initial_credits=settings.initial_credits)
        health = BackendHealthTracker()

        app.state.session_factory = session_factory
        app.state.registry = registry
        app.state.ledger = ledger
        app.state.health = health
        app.state.channels = ChannelRegistry()
        # Request pumps still forwarding frames to WebSocket channels
        app.state.pumps = set()
        app.state.orchestrator = FanoutOrchestrator(
            registry,
            client,
            ledger,
            session_factory=session_factory,
            health=health,
        )
        logger.info(f"Loaded {len(registry)} sages, model {settings.gemini_model}")

        yield

        # Cleanup
        logger.info("Shutting down Sage Chat")
        if app.state.pumps:
            await asyncio.gather(*list(app.state.pumps), return_exceptions=True)
        await app.state.orchestrator.drain()
        await close_db(db_engine)

    app = FastAPI(
        title="Sage Chat - Multi-Persona Guidance",
        description="Ask one question of several sages at once and watch their answers stream in.",
        version=VERSION,
        lifespan=lifespan,
    )

    # Add rate limiter state and exception handler
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Add security middleware (before CORS)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api", tags=["chat"])
    app.include_router(ws_router, tags=["channel"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Sage Chat",
            "version": VERSION,
            "description": "Multi-persona spiritual guidance",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint."""
        return {
            "status": "healthy",
            "model": settings.gemini_model,
            "generation": request.app.state.health.snapshot(),
            "connections": len(request.app.state.channels),
        }

    return app


app = create_app()
