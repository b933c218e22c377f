"""
Health and readiness endpoints.

Lightweight liveness and readiness checks; no secrets in any response.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from unrepo.core.database import check_connection, get_engine, metadata

logger = logging.getLogger("unrepo")

root_router = APIRouter(tags=["health"])


@root_router.get("/health")
def health():
    """Liveness with a timestamp."""
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    required_tables = [table.name for table in metadata.sorted_tables]

    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        engine = get_engine()
        inspector = inspect(engine)
        missing = [t for t in required_tables if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except SQLAlchemyError as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
