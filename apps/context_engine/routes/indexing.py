"""Indexing endpoints: the write path from the CRUD layer into the job queue.

Jobs are only visible to the tenant that queued them (404 otherwise).
"""

from fastapi import APIRouter, HTTPException

from apps.context_engine.errors import AdmissionDeniedError, NotFoundError, ValidationError
from apps.context_engine.schemas.requests import IndexBatchRequest, IndexJobRequest
from apps.context_engine.schemas.responses import (
    BatchAccepted,
    BatchStatus,
    IndexingJobView,
    JobAccepted,
    RetryResult,
)
from apps.context_engine.services.tenant_context import ContainerDep, TenantId

router = APIRouter()


def _bad_request(e: ValidationError) -> HTTPException:
    status = 429 if isinstance(e, AdmissionDeniedError) else 400
    return HTTPException(status_code=status, detail=e.to_dict())


@router.post("/jobs", response_model=JobAccepted, status_code=202)
def queue_job(body: IndexJobRequest, tenant_id: TenantId, container: ContainerDep) -> JobAccepted:
    try:
        job_id = container.indexing.queue_trigger_job(
            tenant_id, body.operation, body.content_type, body.content_id, body.payload
        )
    except ValidationError as e:
        raise _bad_request(e) from e
    if job_id is None:
        raise HTTPException(status_code=503, detail="Auto-trigger indexing is disabled")
    return JobAccepted(job_id=job_id)


@router.post("/batches", response_model=BatchAccepted, status_code=202)
def queue_batch(body: IndexBatchRequest, tenant_id: TenantId, container: ContainerDep) -> BatchAccepted:
    try:
        batch_id = container.indexing.queue_batch_trigger_jobs(tenant_id, body.jobs)
    except ValidationError as e:
        raise _bad_request(e) from e
    if batch_id is None:
        raise HTTPException(status_code=503, detail="Auto-trigger indexing is disabled")
    job_ids = [j.job_id for j in container.indexing.list_jobs(tenant_id) if j.batch_id == batch_id]
    return BatchAccepted(batch_id=batch_id, job_ids=job_ids)


@router.get("/jobs/{job_id}", response_model=IndexingJobView)
def get_job(job_id: str, tenant_id: TenantId, container: ContainerDep) -> IndexingJobView:
    try:
        return container.indexing.get_job_status(job_id, tenant_id).to_view()
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message) from e


@router.get("/batches/{batch_id}", response_model=BatchStatus)
def get_batch(batch_id: str, tenant_id: TenantId, container: ContainerDep) -> BatchStatus:
    try:
        return BatchStatus(**container.indexing.get_batch_status(batch_id, tenant_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message) from e


@router.post("/retry-failed", response_model=RetryResult)
def retry_failed(tenant_id: TenantId, container: ContainerDep) -> RetryResult:
    return RetryResult(retried=container.indexing.retry_failed_jobs(tenant_id))


@router.get("/stats")
def indexing_stats(tenant_id: TenantId, container: ContainerDep) -> dict:
    """Service-wide queue stats plus this tenant's job counts."""
    stats = container.indexing.get_service_stats()
    mine = container.indexing.list_jobs(tenant_id)
    stats["tenant"] = {
        "total_jobs": len(mine),
        "by_status": {s: sum(1 for j in mine if j.status.value == s) for s in stats["by_status"]},
    }
    return stats
