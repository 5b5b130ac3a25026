import logging
from contextlib import asynccontextmanager
from typing import Callable
from uuid import uuid4

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request, Response  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest  # noqa: E402
from starlette.middleware.base import BaseHTTPMiddleware  # noqa: E402

from ravenloom.database import init_database  # noqa: E402
from ravenloom.errors import register_exception_handlers  # noqa: E402
from ravenloom.observability.logging import (  # noqa: E402
    clear_request_context,
    set_request_context,
    setup_logging,
)
from ravenloom.observability.metrics import MetricsMiddleware  # noqa: E402
from ravenloom.routers import (  # noqa: E402
    ask_router,
    facts_router,
    health_router,
    objectives_router,
    questions_router,
    remember_router,
    scopes_router,
)
from ravenloom.settings import get_settings  # noqa: E402

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind X-Request-ID and X-User-Id to the logging context for each request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        set_request_context(request_id=request_id, user_id=request.headers.get("X-User-Id"))
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Invalid settings raise here and stop startup
    settings = get_settings()
    setup_logging(settings.log_level, format_json=settings.log_json)
    logger.info("Settings validated successfully")

    init_database()
    logger.info("Database ready")

    yield

    logger.info("Application shutting down")


app = FastAPI(title="RavenLoom Knowledge API", lifespan=lifespan)

# Metrics middleware for Prometheus (request count, duration)
app.add_middleware(MetricsMiddleware)

app.add_middleware(RequestContextMiddleware)

allowed_origins = get_settings().cors_allowed_origins.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Knowledge errors -> {"error", "message", "retryable"}; missing principal -> 401
register_exception_handlers(app)


# Prometheus metrics endpoint (no auth required)
@app.get("/metrics", tags=["observability"])
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST
    )


# Include routers
app.include_router(health_router)  # Health checks first for quick responses
app.include_router(scopes_router)
app.include_router(remember_router)
app.include_router(facts_router)
app.include_router(ask_router)
app.include_router(questions_router)
app.include_router(objectives_router)
