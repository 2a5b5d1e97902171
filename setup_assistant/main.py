"""
main.py — Setup Assistant FastAPI application entry point.

Start with: uvicorn setup_assistant.main:app --reload --port 8000
(run from the repository root)
"""
import asyncio
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from setup_assistant.config import settings

# ---------------------------------------------------------------------------
# Logging — configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


def run_migrations() -> None:
    """Apply Alembic migrations. A failure is logged; the process keeps serving."""
    package_dir = os.path.dirname(os.path.abspath(__file__))
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        cwd=package_dir,
    )
    if result.returncode != 0:
        logger.error("Alembic migration failed:\n%s", result.stderr)
        return
    msg = result.stdout.strip() or "No pending migrations"
    logger.info("Alembic: %s", msg)


# ---------------------------------------------------------------------------
# Lifespan — startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations
      2. Redis pool (None when unreachable — hot cache disabled)
      3. External model client + semaphore (None without an API key)
      4. Conversation state store, reloaded from the last snapshot
      5. Response router (LangGraph) and background jobs
    Shutdown:
      1. Stop background jobs
      2. Snapshot conversation states
      3. Close Redis pool
    """
    from setup_assistant.agents.conversation.state_store import ConversationStateStore
    from setup_assistant.agents.responder.llm_service import create_external_client
    from setup_assistant.cache import create_redis_pool
    from setup_assistant.database import AsyncSessionLocal
    from setup_assistant.graph.graph import ResponseRouter
    from setup_assistant.graph.nodes import RouterResources
    from setup_assistant.scheduler import build_scheduler

    # --- 1. Database: run Alembic migrations ---
    await asyncio.to_thread(run_migrations)

    # --- 2. Redis: hot cache for promoted answers ---
    try:
        app.state.redis = await create_redis_pool()
    except (RedisError, OSError) as exc:
        logger.warning("Redis unavailable — learned-answer hot cache disabled: %s", exc)
        app.state.redis = None

    # --- 3. External model — semaphore MUST be created inside async context ---
    app.state.llm_semaphore = asyncio.Semaphore(settings.llm_concurrency)
    app.state.llm_client = create_external_client(app.state.llm_semaphore)
    logger.info("External model semaphore initialized (concurrency=%d)", settings.llm_concurrency)

    # --- 4. Conversation state ---
    app.state.session_factory = AsyncSessionLocal
    app.state.state_store = ConversationStateStore(
        ttl=timedelta(hours=settings.conversation_ttl_hours)
    )
    await app.state.state_store.load(AsyncSessionLocal)

    # --- 5. Response router + background jobs ---
    app.state.response_router = ResponseRouter(
        RouterResources(
            session_factory=AsyncSessionLocal,
            state_store=app.state.state_store,
            llm_client=app.state.llm_client,
            redis=app.state.redis,
        )
    )
    app.state.scheduler = build_scheduler(app.state.state_store, AsyncSessionLocal)
    app.state.scheduler.start()

    logger.info("Setup Assistant v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    await app.state.scheduler.shutdown()
    try:
        await app.state.state_store.flush(AsyncSessionLocal)
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Conversation state snapshot failed: %s", exc)
    if app.state.redis is not None:
        await app.state.redis.aclose()
        logger.info("Redis connection pool closed")
    logger.info("Setup Assistant shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Setup Assistant API",
    version=settings.app_version,
    description=(
        "Conversational setup assistant for workflow-automation templates. "
        "Answers from learned answers and rules first, calls an external model only when needed."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS middleware — restricted to frontend origins from settings
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Global exception handlers — registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Converts Pydantic / FastAPI 422 validation errors to standard format.
    Returns ALL field violations in one response (missing question, unknown
    feedback value, extra fields on feedback, ...).
    """
    details = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Converts HTTPException (e.g. unknown interaction id) to the standard envelope."""
    code_map = {
        400: "BAD_REQUEST",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMITED",
        503: "SERVICE_UNAVAILABLE",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(ValueError)
async def value_error_handler(
    request: Request, exc: ValueError
) -> JSONResponse:
    """
    Catches ValueError raised by business logic (MalformedFeedbackRequest from
    store.record_feedback). Surfaces as 422 VALIDATION_ERROR.
    """
    return _make_error_response(
        code="VALIDATION_ERROR",
        message=str(exc),
        status_code=422,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors.
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    """Liveness only; dependency checks live under /api/ai/health."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from setup_assistant.agents.responder.routes import router as assistant_router  # noqa: E402

app.include_router(assistant_router)
