import time

from fastapi import APIRouter, Request
from sqlalchemy import text

import app.core.database as db_module
from app.schemas.health import HealthResponse

router = APIRouter()

_start_time = time.monotonic()


@router.get("/v1/health")
async def health_check(request: Request) -> HealthResponse:
    """Service health check (no auth required)."""
    try:
        async with db_module.async_session() as session:
            await session.execute(text("SELECT 1"))
        database = "connected"
    except Exception:
        database = "disconnected"

    storage = getattr(request.app.state, "storage", None)
    storage_ok = storage is not None and storage.root.is_dir()
    queue = getattr(request.app.state, "job_queue", None)

    return HealthResponse(
        status="ok" if database == "connected" and storage_ok else "degraded",
        database=database,
        storage="ok" if storage_ok else "unavailable",
        active_jobs=len(queue.active_jobs) if queue is not None else 0,
        uptime_seconds=round(time.monotonic() - _start_time, 1),
    )
