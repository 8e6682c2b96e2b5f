"""Health and readiness endpoints.

/health answers "is the process alive" and reports the state of optional
backing services; it stays 200 when degraded.  /ready answers "can this
instance take traffic": Redis is optional (the redirect records fall back to
memory), so readiness only fails when a configured state file cannot be
written.
"""

from __future__ import annotations

import os
from pathlib import Path

from fastapi import APIRouter, Response

from app.core.config import SETTINGS
from app.db.redis import redis_pool

router = APIRouter(tags=["health"])


def _state_file_writable(path: str) -> bool:
    target = Path(path)
    if target.exists():
        return os.access(target, os.W_OK)
    return target.parent.exists() and os.access(target.parent, os.W_OK)


@router.get("/health")
async def health() -> dict:
    checks: dict[str, str] = {}
    overall = "ok"

    if redis_pool is not None:
        try:
            await redis_pool.ping()  # type: ignore[misc]
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "degraded"
            overall = "degraded"
    else:
        checks["redis"] = "not_configured"

    if SETTINGS.state_file:
        if _state_file_writable(SETTINGS.state_file):
            checks["state_file"] = "ok"
        else:
            checks["state_file"] = "degraded"
            overall = "degraded"
    else:
        checks["state_file"] = "in_memory"

    return {
        "status": overall,
        "checks": checks,
        "delivery_mode": SETTINGS.delivery_mode,
    }


@router.get("/ready")
async def ready() -> Response:
    if SETTINGS.state_file and not _state_file_writable(SETTINGS.state_file):
        return Response(status_code=503)
    return Response(status_code=200)
