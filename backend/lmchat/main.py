"""LM Chat API: main entry point."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from lmchat.config import settings
from lmchat.core.database import async_session_factory, engine
from lmchat.core.middleware import RequestLoggingMiddleware
from lmchat.services.completion_client import CompletionTransportError

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    # Startup
    logger.info("Starting LM Chat API", env=settings.app_env, provider=settings.lmstudio_base_url)
    yield
    # Shutdown
    logger.info("Shutting down LM Chat API")
    await engine.dispose()


app = FastAPI(
    title="LM Chat API",
    description="Project-scoped chat with locally hosted language models",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    # Disable trailing slash redirects (307/308) which strip Authorization headers
    # when the frontend proxy follows the redirect cross-origin.
    redirect_slashes=False,
)

# ── Middleware ─────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(CompletionTransportError)
async def completion_transport_error_handler(request: Request, exc: CompletionTransportError):
    logger.warning("completion_provider_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# ── Health Check ──────────────────────────────────
@app.get("/health", tags=["system"])
async def health_check():
    """Liveness probe: always returns healthy if the process is running."""
    return {"status": "healthy", "version": "0.1.0"}


@app.get("/ready", tags=["system"])
async def readiness_check():
    """Readiness probe: checks DB connectivity."""
    checks = {"database": "unknown", "api": "ok"}
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"
        return {"status": "degraded", "checks": checks}

    return {"status": "ready", "checks": checks}


# ── API Routes ────────────────────────────────────
from lmchat.api.v1 import models, projects  # noqa: E402

app.include_router(projects.router, prefix="/api/v1/projects", tags=["projects"])
app.include_router(models.router, prefix="/api/v1/models", tags=["models"])
