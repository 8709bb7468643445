"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from grade_engine.api import engine_router, health_router
from grade_engine.config import settings
from grade_engine.core.errors import (
    ConcurrencyConflict,
    ConfigurationError,
    DataIntegrityError,
    DuplicateRecord,
    EngineError,
    InvalidTransition,
    JobCancelled,
    NotFound,
    RecomputeTimeout,
)
from grade_engine.schemas.common import ErrorResponse

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s  %(name)-25s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger(__name__)

_HTTP_STATUS: dict[type[EngineError], int] = {
    NotFound: 404,
    DuplicateRecord: 409,
    ConcurrencyConflict: 409,
    InvalidTransition: 409,
    JobCancelled: 409,
    DataIntegrityError: 422,
    ConfigurationError: 422,
    RecomputeTimeout: 503,
}


def status_for(exc: EngineError) -> int:
    for cls in type(exc).__mro__:
        if cls in _HTTP_STATUS:
            return _HTTP_STATUS[cls]
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Grade engine starting (env=%s, lock backend=%s)", settings.ENV, settings.LOCK_BACKEND)
    yield
    logger.info("Grade engine shut down")


app = FastAPI(
    title="Grade Engine API",
    description="Quiz scoring, course grades, analytics rollups and interventions",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Middleware ─────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Errors ────────────────────────────────────────────────────────────────────


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    body = ErrorResponse(error_code=exc.error_code, message=str(exc), details=exc.as_details())
    return JSONResponse(status_code=status_code, content=body.model_dump())


# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(health_router, tags=["Health"])
app.include_router(engine_router, prefix="/api/engine", tags=["Engine"])


@app.get("/")
async def root():
    return {
        "name": "Grade Engine API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
