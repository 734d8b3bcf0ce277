"""Usage report and export endpoints. Tenant from auth middleware only."""

from datetime import datetime, timedelta

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import Response

from apps.context_engine.errors import StoreUnavailable, ValidationError
from apps.context_engine.models.base import utcnow
from apps.context_engine.services.tenant_context import ContainerDep, TenantId

router = APIRouter()


@router.get("/report")
def usage_report(
    tenant_id: TenantId,
    container: ContainerDep,
    period: str = Query("day", description="hour, day, week or month"),
) -> dict:
    """{summary, breakdown, trends, alerts} for the trailing period."""
    try:
        return container.usage.generate_usage_report(tenant_id, period)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict()) from e
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=e.to_dict()) from e


@router.get("/export")
def usage_export(
    tenant_id: TenantId,
    container: ContainerDep,
    start: datetime | None = Query(None, description="ISO-8601; defaults to 30 days before end"),
    end: datetime | None = Query(None, description="ISO-8601; defaults to now"),
    format: str = Query("json", description="json or csv"),
) -> Response:
    """Raw usage rows for the window, as a download."""
    end = end or utcnow()
    start = start or end - timedelta(days=30)
    try:
        body = container.usage.export_usage_data(tenant_id, start, end, format)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict()) from e
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=e.to_dict()) from e
    media_type = "text/csv" if format.strip().lower() == "csv" else "application/json"
    return Response(content=body, media_type=media_type)
