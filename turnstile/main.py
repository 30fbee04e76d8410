import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from turnstile.api.routes import metrics, ping, scanner, tickets
from turnstile.core.config import get_settings
from turnstile.core.logging import configure_logging, init_tracer, shutdown_tracer
from turnstile.credentials import CredentialCodec, SigningKeyring
from turnstile.metrics import metrics_registry, register_default_metrics
from turnstile.middleware import RBACMiddleware
from turnstile.redemption import RedemptionBroadcaster, RedemptionEngine
from turnstile.services.postgres import PostgresConnectionTester
from turnstile.tickets.repository import SqlTicketStore
from turnstile.tickets.service import TicketService

logger = logging.getLogger(__name__)


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    return dsn


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.tracer_provider = tracer_provider
    register_default_metrics(metrics_registry)

    # Signing keys are loaded once; the codec is shared by every request and gate.
    codec = CredentialCodec(SigningKeyring.from_settings(settings))
    broadcaster = RedemptionBroadcaster()
    app.state.credential_codec = codec
    app.state.redemption_broadcaster = broadcaster

    postgres_tester = PostgresConnectionTester(dsn=settings.postgres_dsn)
    app.state.postgres_tester = postgres_tester
    app.state.ticket_service = None
    app.state.redemption_engine = None
    db_engine = None
    try:
        await postgres_tester.get_pool()
        db_engine = create_async_engine(_to_asyncpg_dsn(settings.postgres_dsn), future=True)
        session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
        store = SqlTicketStore(session_factory, engine=db_engine)
        await store.ensure_schema()
        app.state.ticket_store = store
        app.state.redemption_engine = RedemptionEngine(store, broadcaster=broadcaster, metrics=metrics_registry)
        app.state.ticket_service = TicketService(store, codec, metrics=metrics_registry)
    except Exception:
        logger.exception("Ticket store initialisation failed; ticket routes will answer 503")
        if db_engine is not None:
            await db_engine.dispose()
            db_engine = None
    try:
        yield
    finally:
        if db_engine is not None:
            await db_engine.dispose()
        await postgres_tester.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(RBACMiddleware)
    app.include_router(ping.router)
    app.include_router(metrics.router)
    app.include_router(tickets.router)
    app.include_router(scanner.router)
    return app


app = create_app()
