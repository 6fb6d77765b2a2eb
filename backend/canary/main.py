import logging
import time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request

from canary.api.metrics import router as metrics_router
from canary.api.v1.api import api_router
from canary.core.config import settings
from canary.core.engine_provider import initialize_engine, shutdown_engine

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(message)s",
)

# Configure structlog: JSON in production, console in dev
if settings.APP_ENV.lower() != "dev":
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
else:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the canary engine on startup and let an active run finish on shutdown."""
    logger.info(
        "Starting canary",
        app_env=settings.APP_ENV,
        guarantee_change_after=settings.GUARANTEE_CHANGE_AFTER,
        broker=settings.CONNECTOR_MQTT_BROKER_URL,
    )
    await initialize_engine()
    try:
        yield
    finally:
        logger.info("Shutting down canary...")
        await shutdown_engine()
        logger.info("Canary shutdown completed.")


app = FastAPI(
    title=settings.APP_NAME,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests (headers are never logged)."""
    start_time = time.time()

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            exception_type=type(e).__name__,
        )
        raise

    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        client=request.client.host if request.client else None,
        status_code=response.status_code,
        process_time_ms=round((time.time() - start_time) * 1000, 2),
    )
    return response


app.include_router(metrics_router)
app.include_router(api_router)
