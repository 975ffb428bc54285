"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.relay.runtime import build_runtime

# ── API routers ──
from backend.app.api.v1.sos import router as sos_router
from backend.app.api.v1.alerts import router as alert_router
from backend.app.api.v1.notifications import router as notification_router
from backend.app.api.v1.messages import router as message_router
from backend.app.api.v1.feed import router as feed_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    logger.info(
        "Starting %s v%s [%s] (store=%s, feed=%s)",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        settings.STORE_BACKEND, settings.CHANGEFEED_BACKEND,
    )
    runtime = build_runtime()
    await runtime.start()
    app.state.runtime = runtime
    yield
    # Shutdown: close connections
    await runtime.stop()
    logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Real-time SOS alert and notification delivery. "
        "Guests raise alerts with optional location and get a WhatsApp "
        "dispatch link to the concierge; responders acknowledge and resolve "
        "alerts; every committed change is streamed to subscribed clients."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (outermost first) ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(sos_router)
app.include_router(alert_router)
app.include_router(notification_router)
app.include_router(message_router)
app.include_router(feed_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "sos",
            "alerts",
            "notifications",
            "messages",
            "change-feed",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Deep health probe — checks all subsystems."""
    report = await run_health_check(request.app.state.runtime)
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness(request: Request):
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(request.app.state.runtime)
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
