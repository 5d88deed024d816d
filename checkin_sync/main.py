from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import ProgrammingError, OperationalError, IntegrityError
from checkin_sync.core.config import settings
from checkin_sync.core.errors import (
    CheckInError,
    CheckInValidationError,
    NoActiveCheckInError,
    RecordNotFoundError,
    SessionConflictError,
    SubscriptionError,
)
from checkin_sync.core.logging import configure_logging
from checkin_sync.api.routes import health, checkins
from checkin_sync.db.session import SessionLocal, listener_dsn
from checkin_sync.schemas.common import ErrorResponse
from checkin_sync.schemas.settings import SessionSettings
from checkin_sync.services.feed import InMemoryChangeFeed, PostgresChangeFeed
from checkin_sync.services.gateway import PersistenceGateway
from checkin_sync.services.notifications import SummaryNotifier
from checkin_sync.services.registry import SessionRegistry
import logging

logger = logging.getLogger(__name__)


def error_status(exc: CheckInError) -> int:
    if isinstance(exc, SessionConflictError):
        return 409
    if isinstance(exc, (NoActiveCheckInError, RecordNotFoundError)):
        return 404
    if isinstance(exc, CheckInValidationError):
        return 400
    if isinstance(exc, SubscriptionError):
        return 503
    return 502


def build_services():
    """Wire gateway, change feed, notifier and registry from settings."""
    backend = settings.CHANGE_FEED_BACKEND.lower()
    if backend == "memory":
        feed = InMemoryChangeFeed()
        publisher = feed
    elif backend == "postgres":
        feed = PostgresChangeFeed(listener_dsn(str(settings.DATABASE_URL)))
        publisher = None
    else:
        raise ValueError(f"Unknown CHANGE_FEED_BACKEND {settings.CHANGE_FEED_BACKEND!r}")

    defaults = SessionSettings(
        session_duration=settings.DEFAULT_SESSION_MINUTES,
        turn_duration=settings.DEFAULT_TURN_SECONDS,
        max_extensions=settings.DEFAULT_MAX_EXTENSIONS,
    )
    gateway = PersistenceGateway(SessionLocal, publisher=publisher, default_settings=defaults)
    notifier = SummaryNotifier(gateway)
    registry = SessionRegistry(gateway, feed=feed, notifier=notifier, idle_seconds=settings.RUNTIME_IDLE_SECONDS)
    if isinstance(feed, PostgresChangeFeed):
        feed.on_error = registry.on_feed_error
    return gateway, feed, notifier, registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    gateway, feed, notifier, registry = build_services()
    app.state.gateway = gateway
    app.state.feed = feed
    app.state.registry = registry
    registry.start_sweeping(settings.RUNTIME_SWEEP_SECONDS)
    logger.info("Check-in services ready (change feed: %s)", settings.CHANGE_FEED_BACKEND)
    try:
        yield
    finally:
        await registry.close_all()
        await notifier.drain()
        if isinstance(feed, PostgresChangeFeed):
            await feed.close()
        logger.info("Check-in services stopped")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"], allow_credentials=True,
        allow_methods=["*"], allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(CheckInError)
    async def checkin_error_handler(request: Request, exc: CheckInError):
        status_code = error_status(exc)
        log = logger.warning if status_code < 500 else logger.error
        log("Check-in request failed (%s): %s", exc.error_code, exc.message)
        body = ErrorResponse(error=exc.message, detail=str(exc.cause) if exc.cause else None, error_code=exc.error_code)
        return JSONResponse(status_code=status_code, content=body.model_dump())

    @app.exception_handler(ProgrammingError)
    async def programming_error_handler(request: Request, exc: ProgrammingError):
        logger.error("Database programming error: %s", exc)
        # Check if it's a column not found error
        if "does not exist" in str(exc):
            return JSONResponse(
                status_code=503,
                content={
                    "error": "Database schema mismatch detected",
                    "detail": "The application schema is out of sync with the database. Please contact support.",
                    "error_code": "SCHEMA_MISMATCH"
                }
            )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Database query error",
                "detail": "There was an error executing the database query",
                "error_code": "DATABASE_ERROR"
            }
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError):
        logger.error("Database operational error: %s", exc)
        return JSONResponse(
            status_code=503,
            content={
                "error": "Database connection error",
                "detail": "Unable to connect to the database. Please try again later.",
                "error_code": "DATABASE_CONNECTION_ERROR"
            }
        )

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        logger.error("Database integrity error: %s", exc)
        return JSONResponse(
            status_code=400,
            content={
                "error": "Data integrity violation",
                "detail": "The operation violates database constraints",
                "error_code": "DATA_INTEGRITY_ERROR"
            }
        )

    # routes
    app.include_router(health.router)
    app.include_router(checkins.router)
    return app

app = create_app()
