"""
gitcity.api.main — FastAPI application entry point
=====================================================

Run with::

    uvicorn gitcity.api.main:app --reload --port 8000

or ``python -m gitcity.api``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from gitcity.api.deps import get_engine  # noqa: E402
from gitcity.api.routes.achievements import router as achievements_router  # noqa: E402
from gitcity.api.routes.cron import router as cron_router  # noqa: E402
from gitcity.api.routes.feed import router as feed_router  # noqa: E402
from gitcity.api.routes.interactions import router as interactions_router  # noqa: E402
from gitcity.api.routes.milestones import router as milestones_router  # noqa: E402
from gitcity.api.routes.notifications import router as notifications_router  # noqa: E402
from gitcity.api.routes.shop import router as shop_router  # noqa: E402
from gitcity.api.routes.sky_ads import router as sky_ads_router  # noqa: E402
from gitcity.api.routes.webhooks import router as webhooks_router  # noqa: E402
from gitcity.services.errors import ServiceError  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle: warm the DB engine."""
    engine = get_engine()
    logger.info("Git City API started, engine ready (%s)", engine.url.database)
    yield
    logger.info("Git City API shutting down")


app = FastAPI(
    title="Git City API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed input is a plain 400 across the API.
    return JSONResponse(status_code=400, content={"detail": exc.errors()})


# Mount routers
app.include_router(achievements_router, prefix="/api")
app.include_router(interactions_router, prefix="/api")
app.include_router(notifications_router, prefix="/api")
app.include_router(sky_ads_router, prefix="/api")
app.include_router(shop_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")
app.include_router(cron_router, prefix="/api")
app.include_router(milestones_router, prefix="/api")
app.include_router(feed_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
