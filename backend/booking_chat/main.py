# backend/booking_chat/main.py

import logging
import os
import time

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError, TimeoutError as SA_TimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import models  # noqa: F401  (register tables on Base.metadata)
from .api import api_message, api_unread, api_ws
from .core.config import settings
from .core.observability import setup_logging, setup_tracer
from .database import Base, engine
from .realtime import bus
from .realtime.hub import hub
from .services.redis_client import close_redis_client
from .utils.errors import ChatError

setup_logging()
logger = logging.getLogger(__name__)

_BOOT_TS = time.time()

app = FastAPI(title=settings.PROJECT_NAME, default_response_class=ORJSONResponse)
setup_tracer(app)

os.makedirs(settings.ATTACHMENTS_DIR, exist_ok=True)
app.mount(
    settings.ATTACHMENTS_PUBLIC_BASE_URL or "/attachments",
    StaticFiles(directory=settings.ATTACHMENTS_DIR),
    name="attachments",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials="*" not in settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["ETag"],
)
logger.info("CORS origins set to: %s", settings.CORS_ORIGINS)


@app.middleware("http")
async def catch_exceptions(request: Request, call_next):
    """Return JSON responses for unexpected errors and log them."""
    try:
        response = await call_next(request)
    except StarletteHTTPException as exc:  # return the original status and detail
        logger.error(
            "HTTP error %s at %s: %s", exc.status_code, request.url.path, exc.detail
        )
        response = ORJSONResponse(
            status_code=exc.status_code, content={"detail": exc.detail}
        )
    except SA_TimeoutError as exc:  # DB pool timeout -> 503 to reduce retry storms
        logger.error("DB timeout at %s: %s", request.url.path, str(exc))
        response = ORJSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Database busy, please retry"},
        )
    except Exception as exc:  # pragma: no cover - generic handler
        logger.exception("Unhandled error: %s", exc)
        response = ORJSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error"},
        )
    return response


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    """Render messaging errors as ``{"detail": {"message", "field_errors"}}``."""
    http_exc = exc.to_http()
    return ORJSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return validation errors with details and log them for debugging.

    Provides a clearer message when an attachment upload omits the required
    file field so clients can display a helpful error.
    """
    errors = exc.errors()
    logger.warning("Validation error at %s: %s", request.url.path, errors)

    for err in errors:
        if tuple(err.get("loc") or ()) == ("body", "file"):
            return ORJSONResponse(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                content={
                    "detail": {
                        "message": "No file provided",
                        "field_errors": {"file": "required"},
                    }
                },
            )

    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_encoder(errors)},
    )


api_prefix = settings.API_V1_STR  # usually something like "/api/v1"

app.include_router(api_message.router, prefix=api_prefix)
app.include_router(api_unread.router, prefix=api_prefix)
# Websockets stay unversioned so clients can build ws://host/ws/... directly
app.include_router(api_ws.router)


@app.get("/healthz/live", tags=["health"])
async def health_live():
    """Liveness probe: process can respond; does not touch the DB."""
    return {"status": "ok", "kind": "live", "uptime_s": round(time.time() - _BOOT_TS, 1)}


@app.get("/healthz/ready", tags=["health"])
def health_ready():
    """Readiness probe: a DB round trip plus the realtime bus state."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Readiness DB ping failed: %s", exc)
        return ORJSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "error", "kind": "ready", "reason": "db"},
            headers={"Cache-Control": "no-store"},
        )
    return ORJSONResponse(
        content={
            "status": "ok",
            "kind": "ready",
            "bus": "redis" if bus.bus_enabled() else "local",
            "subscribers": hub.subscriber_count(),
        },
        headers={"Cache-Control": "no-store"},
    )


@app.on_event("startup")
def create_tables() -> None:
    """Create missing tables for SQLite development databases.

    Postgres deployments are migrated with Alembic instead.
    """
    if engine.url.get_backend_name() == "sqlite":
        Base.metadata.create_all(bind=engine)


@app.on_event("startup")
async def start_realtime_bus() -> None:
    """Mirror hub events across instances when the Redis bus is enabled."""
    task = await hub.start_bus()
    if task is not None:
        logger.info("Realtime bus consumer started instance=%s", hub.instance_id)


@app.on_event("shutdown")
async def shutdown_realtime() -> None:
    """Stop the bus consumer and close Redis connections."""
    await bus.stop_pattern_consumer()
    logger.info("Closing Redis client")
    await close_redis_client()
