"""Health check response schemas."""

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(extra="forbid")

    ok: bool
    version: str
    time: str
    database: bool
    cache: bool
    workers: int
