from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = Field("healthy", description="Always 'healthy' while the process serves requests")


class TickRecordOut(BaseModel):
    namespace: str
    name: str
    state: str = Field(..., description="ok|requeue|error")
    message: str
    requeue_after: float | None = Field(None, ge=0, description="Seconds until the next tick")
    failures: int = Field(0, ge=0, description="Consecutive failed ticks")
    updated_at: str
