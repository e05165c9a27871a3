"""
Main FastAPI application for the partner ledger sync service.

The API is an admin surface: health, sync status and manual triggers. The
actual work runs in the automation scheduler started by the lifespan hook.
"""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy import text

from ledger_sync.api.routes import sync
from ledger_sync.core import metrics
from ledger_sync.core.config import settings
from ledger_sync.core.database import SessionLocal
from ledger_sync.core.logging import configure_logging, get_logger
from ledger_sync.core.middleware import CorrelationIdMiddleware
from ledger_sync.services.core.rate_limiter import reset_rate_limiters

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Configure structured logging with JSON formatter
configure_logging(
    level=settings.LOG_LEVEL,
    json_output=settings.LOG_JSON
)
logger = get_logger(__name__)


def get_rate_limit_key(request: Request) -> str:
    """
    Get the rate limit key for a request.

    Uses IP address, with fallback to X-Forwarded-For for proxied requests.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_rate_limit_key,
    default_limits=["60/minute"],
    storage_uri=settings.REDIS_URL if settings.RATE_LIMIT_STORAGE == "redis" else "memory://",
    enabled=settings.RATE_LIMIT_ENABLED
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan events."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    if settings.SCHEDULER_ENABLED:
        from ledger_sync.core.scheduler import start_scheduler
        await start_scheduler()
        logger.info("Automation scheduler started")
    else:
        logger.info("Automation scheduler disabled (SCHEDULER_ENABLED=false)")

    metrics.update_scheduler_metrics()
    logger.info("Application started")

    yield

    from ledger_sync.core.scheduler import stop_scheduler
    await stop_scheduler()
    reset_rate_limiters()
    logger.info("Shutting down application")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Pulls settled bets and balances from game providers into the partner ledger",
    lifespan=lifespan
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add correlation ID middleware (must be added before CORS for proper header handling)
app.add_middleware(CorrelationIdMiddleware)

# Initialize Prometheus metrics BEFORE including routes
instrumentator = Instrumentator()
instrumentator.instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

if settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# API v1
app.include_router(sync.router, prefix="/api/v1")


@app.get("/health")
@limiter.limit("120/minute")  # Higher limit for health checks
async def health_check(request: Request):
    """Health check with database and scheduler status."""
    from ledger_sync.core.scheduler import get_scheduler

    components = {}
    healthy = True

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        components["database"] = {"status": "connected"}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        components["database"] = {"status": "unhealthy", "error": str(e)}
        healthy = False
    finally:
        db.close()

    scheduler = get_scheduler()
    if scheduler and scheduler.running:
        components["scheduler"] = {"status": "running", "jobs_count": len(scheduler.jobs)}
    else:
        components["scheduler"] = {"status": "stopped"}
        healthy = healthy and not settings.SCHEDULER_ENABLED
    metrics.update_scheduler_metrics()

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "degraded",
            "version": settings.APP_VERSION,
            "components": components,
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)}
    )
