"""Health check endpoint. No auth required."""

import os
from datetime import datetime, timezone

from fastapi import APIRouter

from apps.context_engine.schemas.health import HealthResponse
from apps.context_engine.services.tenant_context import ContainerDep

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health(container: ContainerDep) -> HealthResponse:
    """Health check. ok is False when the database does not answer."""
    version = os.getenv("GIT_SHA", "dev").strip() or "dev"
    db_ok = container.db.ping()
    return HealthResponse(
        ok=db_ok,
        version=version,
        time=datetime.now(timezone.utc).isoformat(),
        database=db_ok,
        cache=container.cache.is_available(),
        workers=container.indexing.get_service_stats()["workers"],
    )
