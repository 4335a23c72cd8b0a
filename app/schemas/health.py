from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str  # "ok" or "degraded"
    database: str  # "connected" or "disconnected"
    storage: str  # "ok" or "unavailable"
    active_jobs: int = 0
    uptime_seconds: float = 0.0
    version: str = "0.1.0"
