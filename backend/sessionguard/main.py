"""SessionGuard - FastAPI Application Factory.

Run with ``uvicorn --factory sessionguard.main:create_app``.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncEngine

from sessionguard.api import api_router
from sessionguard.api.auth import router as auth_router
from sessionguard.api.health import router as health_router
from sessionguard.core import (
    Settings,
    create_engine,
    create_session_maker,
    get_settings,
    init_models,
    setup_logging,
)
from sessionguard.core.logging import get_logger
from sessionguard.middleware import SessionAuthMiddleware
from sessionguard.services import (
    HttpIdentityProvider,
    MemoryRevocationStore,
    MemorySessionStore,
    SessionManager,
    SqlRevocationStore,
    SqlSessionStore,
    build_session_manager,
)

logger = get_logger("main")


def build_identity_provider(settings: Settings) -> HttpIdentityProvider | None:
    if not settings.identity_provider_configured:
        return None
    return HttpIdentityProvider(
        settings.identity_jwks_url or "",
        settings.identity_admin_url or "",
        api_key=settings.identity_admin_api_key,
        issuer=settings.identity_issuer,
        audience=settings.identity_audience,
        default_role=settings.default_role,
        timeout=settings.identity_provider_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings: Settings = app.state.settings
    setup_logging(
        level=settings.log_level,
        format_type="dev" if settings.debug else settings.log_format,
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    engine: AsyncEngine | None = None
    identity_provider: HttpIdentityProvider | None = None
    manager: SessionManager | None = getattr(app.state, "session_manager", None)

    if manager is None:
        identity_provider = build_identity_provider(settings)
        session_ttl = timedelta(days=settings.session_expire_days)
        if settings.storage_backend == "database":
            engine = create_engine(settings.database_url, echo=settings.debug)
            await init_models(engine)
            session_maker = create_session_maker(engine)
            app.state.db_session_maker = session_maker
            revocation_store = SqlRevocationStore(session_maker)
            session_store = SqlSessionStore(
                session_maker,
                max_sessions_per_subject=settings.max_sessions_per_subject,
                session_ttl=session_ttl,
            )
        else:
            revocation_store = MemoryRevocationStore()
            session_store = MemorySessionStore(
                max_sessions_per_subject=settings.max_sessions_per_subject,
                session_ttl=session_ttl,
                ended_retention=settings.ended_session_retention,
            )
        manager = build_session_manager(
            settings,
            revocation_store=revocation_store,
            session_store=session_store,
            identity_provider=identity_provider,
        )
        app.state.session_manager = manager
        logger.info(f"Session storage: {settings.storage_backend}")

    await manager.start()

    yield

    # Shutdown
    logger.info("Shutting down...")
    await manager.stop()
    if identity_provider is not None:
        await identity_provider.close()
    if engine is not None:
        await engine.dispose()


def create_app(
    settings: Settings | None = None,
    session_manager: SessionManager | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    A ``session_manager`` passed in is used as-is instead of one built from
    settings.
    """
    settings = settings or get_settings()
    app = FastAPI(
        title=settings.app_name,
        description="Session and token management service",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings
    if session_manager is not None:
        app.state.session_manager = session_manager

    # All /api/* requests require a valid access token of a live session
    app.add_middleware(SessionAuthMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on 401 responses too.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept"],
    )

    app.include_router(health_router)  # Health at root level
    app.include_router(auth_router)  # Auth at root level (/auth)
    app.include_router(api_router)  # API at /api

    return app
