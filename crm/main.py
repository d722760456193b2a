from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from crm.api.routes import auth, history, ping, tickets, users
from crm.core.config import Settings, get_settings
from crm.core.errors import register_exception_handlers
from crm.core.logging import configure_logging, init_tracer, shutdown_tracer
from crm.security.rate_limit import FixedWindowRateLimiter
from crm.tickets.audit import AuditTrail
from crm.tickets.repository import TicketRepository
from crm.tickets.service import TicketService
from crm.users.repository import UserRepository
from crm.users.service import AuthService


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    if dsn.startswith("postgres://"):
        return "postgresql+asyncpg://" + dsn[len("postgres://") :]
    return dsn


def _build_lifespan(settings: Settings, database_url: str):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = configure_logging(settings)
        tracer_provider = init_tracer(settings)

        app.state.logger = logger
        app.state.tracer_provider = tracer_provider
        app.state.ticket_service = None
        app.state.auth_service = None

        db_engine = create_async_engine(_to_asyncpg_dsn(database_url), future=True)
        session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
        try:
            user_repository = UserRepository(session_factory)
            ticket_repository = TicketRepository(session_factory, engine=db_engine)
            await ticket_repository.ensure_schema()

            app.state.auth_service = AuthService(
                user_repository,
                secret=settings.jwt_secret,
                algorithm=settings.jwt_algorithm,
                expires_minutes=settings.jwt_expires_minutes,
                dev_code=settings.verification_dev_code,
                accept_any_code=settings.is_development,
            )
            app.state.ticket_service = TicketService(
                ticket_repository,
                users=user_repository,
                audit_trail=AuditTrail(ticket_repository),
            )
            app.state.db_engine = db_engine
            app.state.db_session_factory = session_factory
            logger.info("Database schema ready, services initialised")
        except Exception:
            logger.exception("Failed to initialise database services")
            app.state.ticket_service = None
            app.state.auth_service = None
        try:
            yield
        finally:
            await db_engine.dispose()
            shutdown_tracer(tracer_provider)

    return lifespan


def create_app(settings: Settings | None = None, *, database_url: str | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title=settings.app_name,
        lifespan=_build_lifespan(settings, database_url or settings.database_url),
    )
    app.state.settings = settings
    app.state.auth_rate_limiter = FixedWindowRateLimiter(
        max_requests=settings.auth_rate_limit_max,
        window_seconds=settings.auth_rate_limit_window_seconds,
    )
    register_exception_handlers(app)

    app.include_router(ping.router)
    for module in (auth, tickets, history, users):
        app.include_router(module.router, prefix="/api")
    return app


app = create_app()
