"""
FastAPI application entry point.
Configures middleware, routers, and lifecycle events.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from membership_admin.core.audit import AuditLogStore, AuditMiddleware, AuditRecorder
from membership_admin.core.clock import Clock, utc_now
from membership_admin.core.config import Settings, get_settings
from membership_admin.core.errors import DatabaseError, register_exception_handlers
from membership_admin.core.logging import configure_logging, get_logger
from membership_admin.core.middleware import RequestTimeoutMiddleware, SecurityHeadersMiddleware
from membership_admin.core.security.authorization import AuthorizationEngine
from membership_admin.core.security.resources import DatabaseResourceReader, ResourceReader
from membership_admin.core.security.session import DatabaseSessionResolver, SessionResolver
from membership_admin.db.session import close_db, init_db
from membership_admin.modules.audit.router import router as audit_router
from membership_admin.modules.auth.router import router as auth_router
from membership_admin.modules.flags.defaults import seed_default_flags
from membership_admin.modules.flags.router import router as flags_router
from membership_admin.modules.flags.service import FlagStore

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Seeds the standard flags on startup; on shutdown waits for queued audit
    writes before the connection pool is released.
    """
    settings: Settings = app.state.settings
    logger.info(
        "starting_application",
        environment=settings.environment,
        version=settings.version,
    )

    if settings.seed_default_flags:
        try:
            await seed_default_flags(app.state.session_factory)
        except DatabaseError:
            logger.warning("default_flags_seed_skipped", exc_info=True)

    yield

    await app.state.audit_recorder.drain()
    if app.state.owns_engine:
        await close_db()
    logger.info("application_shutdown_complete")


def create_application(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    session_resolver: SessionResolver | None = None,
    resource_reader: ResourceReader | None = None,
    clock: Clock = utc_now,
) -> FastAPI:
    """
    Application factory function.

    Collaborators can be injected (tests pass an in-memory session factory,
    a fixed clock or a stub session resolver); otherwise they are built from
    settings.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url="/openapi.json",
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Services
    # ==========================================================================

    app.state.owns_engine = session_factory is None
    if session_factory is None:
        session_factory = init_db(settings)

    flag_store = FlagStore(session_factory, clock=clock)
    audit_recorder = AuditRecorder(
        AuditLogStore(session_factory, hash_chain=settings.audit_hash_chain_enabled),
        settings,
        clock=clock,
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.flag_store = flag_store
    app.state.audit_recorder = audit_recorder
    app.state.session_resolver = session_resolver or DatabaseSessionResolver(
        session_factory,
        cookie_name=settings.session_cookie_name,
        clock=clock,
    )
    app.state.authorization_engine = AuthorizationEngine(
        flag_store,
        resource_reader or DatabaseResourceReader(session_factory),
        clock=clock,
    )

    # ==========================================================================
    # Middleware Configuration (last added runs first)
    # ==========================================================================

    app.add_middleware(RequestTimeoutMiddleware, timeout_seconds=settings.request_timeout_seconds)

    app.add_middleware(
        SecurityHeadersMiddleware,
        hsts=settings.environment in ("production", "staging"),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "Origin", "X-Request-ID"],
    )

    # Outermost, so it observes the final status of every response.
    app.add_middleware(AuditMiddleware, recorder=audit_recorder)

    register_exception_handlers(app)

    # ==========================================================================
    # Router Registration
    # ==========================================================================

    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, object]:
        checks: dict[str, str] = {}
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
            checks["db"] = "ok"
        except (SQLAlchemyError, OSError):
            checks["db"] = "unavailable"

        overall = "healthy" if all(v == "ok" for v in checks.values()) else "degraded"
        return {
            "status": overall,
            "version": settings.version,
            "checks": checks,
            "audit_pending": audit_recorder.pending_count,
        }

    app.include_router(auth_router, prefix=f"{settings.api_prefix}/auth", tags=["Auth"])
    app.include_router(flags_router, prefix=settings.api_prefix, tags=["Flags"])
    app.include_router(audit_router, prefix=f"{settings.api_prefix}/audit", tags=["Audit"])

    return app


# Application instance
app = create_application()
