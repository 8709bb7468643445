"""Health check endpoint."""

from fastapi import APIRouter

from grade_engine.config import settings

router = APIRouter()


@router.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "grade-engine",
        "env": settings.ENV,
        "lock_backend": settings.LOCK_BACKEND,
    }
