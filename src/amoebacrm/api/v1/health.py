"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness checks
the database and whether AmoebaCRM credentials are configured.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.amoebacrm.config import get_settings
from src.amoebacrm.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and AmoebaCRM authorization."""
    checks: dict = {"database": "ok", "amoebacrm": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    sync_engine = getattr(request.app.state, "sync_engine", None)
    if sync_engine is None:
        checks["amoebacrm"] = "not_initialized"
    elif not sync_engine.connector.is_authorized():
        checks["amoebacrm"] = "unauthorized"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if the database is reachable and sync is initialized."""
    checks = await _check_dependencies(request)
    all_healthy = checks.get("database") == "ok" and checks.get("amoebacrm") in (
        "ok",
        "unauthorized",
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
