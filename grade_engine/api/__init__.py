"""API route package: imports all routers for main.py."""

from grade_engine.api.health import router as health_router  # noqa: F401
from grade_engine.api.engine import router as engine_router  # noqa: F401
