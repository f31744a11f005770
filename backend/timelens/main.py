"""TimeLens backend application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from timelens.api import admin, auth, subscriptions, transform
from timelens.core.config import settings
from timelens.core.errors import TimeLensError
from timelens.core.logging import setup_logging
from timelens.core.middleware import (
    global_exception_handler, security_middleware, setup_cors_middleware, timelens_exception_handler
)
from timelens.core.otel import (
    initialize_otel, instrument_fastapi, instrument_httpx, instrument_sqlalchemy, setup_otel_logging
)
from timelens.db.redis import get_redis_client
from timelens.db.session import engine, init_db

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
        instrument_sqlalchemy(engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    from timelens.tasks.reconciliation import reconciliation_task

    reconciliation = asyncio.create_task(reconciliation_task())
    logger.info(f"Quota reconciliation task started (every {settings.QUOTA_RECONCILIATION_INTERVAL_SECONDS}s)")

    yield

    # Shutdown
    logger.info("Shutting down...")
    reconciliation.cancel()


# Create FastAPI app
app = FastAPI(
    title="TimeLens Backend",
    description="Era photo transformations with daily quotas and subscriptions",
    version="1.0.0",
    lifespan=lifespan
)

if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
    instrument_fastapi(app)
    instrument_httpx()

setup_cors_middleware(app)
app.middleware("http")(security_middleware)

# Include routers
app.include_router(auth.router)
app.include_router(transform.router)
app.include_router(subscriptions.router)
app.include_router(subscriptions.transactions_router)
app.include_router(admin.router)

app.add_exception_handler(TimeLensError, timelens_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
