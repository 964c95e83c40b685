"""
conduit.api.main — FastAPI application entry point
=====================================================

Run with::

    uvicorn conduit.api.main:app --reload --port 8000

Domain exceptions raised by the workflow service are mapped to HTTP
responses here, once, instead of in every route.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from conduit.api.deps import get_engine  # noqa: E402
from conduit.api.routes.workflows import router as workflows_router  # noqa: E402
from conduit.services.errors import DuplicateCommandError, PersistenceError  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Allowed dashboard origins: CORS_ALLOW_ORIGINS (comma-separated),
    else FRONTEND_URL, else none."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    return [frontend_url.rstrip("/")] if frontend_url else []


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()
    logger.info("Conduit API started (database: %s)", engine.url.database)
    yield
    logger.info("Conduit API shutting down")


app = FastAPI(
    title="Conduit Dashboard API",
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

app.include_router(workflows_router, prefix="/api")


@app.exception_handler(DuplicateCommandError)
async def duplicate_command_handler(request: Request, exc: DuplicateCommandError):
    return JSONResponse(status_code=409, content={
        "error": str(exc),
        "code": "DUPLICATE_COMMAND",
    })


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    # Already logged with full context by the service layer.
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.get("/api/health")
def health():
    return {"status": "ok"}
