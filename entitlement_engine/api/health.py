"""
Health endpoints.

Liveness and readiness probes. Readiness requires the database to be
reachable and every table the engine defines to exist.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from entitlement_engine.core.database import check_connection, get_engine, metadata

logger = logging.getLogger("entitlements.health")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = sorted(metadata.tables)


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    inspector = inspect(get_engine())
    missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("[readyz] not ready", extra={"missing_tables": missing})
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok"}
