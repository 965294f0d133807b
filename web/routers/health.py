"""Health-related API endpoints."""

from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import database
from web.deps import get_behavior_ingestor, get_trial_manager

router = APIRouter(prefix="/health", tags=["Health"])


def ping_database() -> Tuple[bool, Optional[str]]:
    """Return database connectivity status and optional error message."""
    db = database.SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return True, None
    except SQLAlchemyError as exc:
        return False, str(exc)
    finally:
        db.close()


@router.get(
    "/status",
    summary="Service runtime status",
    description="Aggregated health of the ledger database, rate limiter backend and behavior tracking.",
)
def read_service_status():
    db_ok, db_error = ping_database()
    ingestor = get_behavior_ingestor()
    limiter = get_trial_manager().rate_limiter
    degraded = not db_ok or ingestor.degraded
    payload = {
        "status": "degraded" if degraded else "ok",
        "database": {"ok": db_ok},
        "rateLimiter": {"backend": "redis" if limiter.uses_redis else "ledger"},
        "behaviorTracking": {
            "degraded": ingestor.degraded,
            "consecutiveFailures": ingestor.consecutive_failures,
        },
    }
    if db_error:
        payload["database"]["error"] = db_error
    return payload


__all__ = ["router", "ping_database"]
