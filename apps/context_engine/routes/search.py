"""Search endpoints: POST /search/{menu,policies,faqs,business,all}.

Tenant injected server-side from auth; client-provided tenant_id ignored.
Envelope errors map to HTTP status: INVALID_REQUEST 400, SEARCH_FAILED 502,
INTERNAL_ERROR 500.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from apps.context_engine.errors import INTERNAL_ERROR, INVALID_REQUEST, SEARCH_FAILED, UNAUTHORIZED
from apps.context_engine.schemas.content import ContentType
from apps.context_engine.schemas.requests import SearchRequest
from apps.context_engine.schemas.responses import RetrievalResponse
from apps.context_engine.services.tenant_context import ContainerDep, TenantId

router = APIRouter()

STATUS_BY_CODE = {
    INVALID_REQUEST: 400,
    UNAUTHORIZED: 401,
    SEARCH_FAILED: 502,
    INTERNAL_ERROR: 500,
}


def envelope_response(resp: RetrievalResponse) -> JSONResponse:
    status = 200 if resp.success else STATUS_BY_CODE.get(resp.error.code, 500)
    return JSONResponse(status_code=status, content=resp.model_dump(mode="json", by_alias=True, exclude_none=True))


def _search(container, tenant_id: str, body: SearchRequest, content_type: ContentType) -> JSONResponse:
    resp = container.retriever.retrieve_context(
        tenant_id,
        body.query,
        content_type=content_type,
        top_n=body.top_n,
        min_score=body.min_score,
        include_metadata=body.include_metadata,
    )
    return envelope_response(resp)


@router.post("/menu", response_model=RetrievalResponse)
def search_menu(body: SearchRequest, tenant_id: TenantId, container: ContainerDep) -> JSONResponse:
    return _search(container, tenant_id, body, ContentType.MENU)


@router.post("/policies", response_model=RetrievalResponse)
def search_policies(body: SearchRequest, tenant_id: TenantId, container: ContainerDep) -> JSONResponse:
    return _search(container, tenant_id, body, ContentType.POLICY)


@router.post("/faqs", response_model=RetrievalResponse)
def search_faqs(body: SearchRequest, tenant_id: TenantId, container: ContainerDep) -> JSONResponse:
    return _search(container, tenant_id, body, ContentType.FAQ)


@router.post("/business", response_model=RetrievalResponse)
def search_business(body: SearchRequest, tenant_id: TenantId, container: ContainerDep) -> JSONResponse:
    return _search(container, tenant_id, body, ContentType.BUSINESS)


@router.post("/all", response_model=RetrievalResponse)
def search_all(body: SearchRequest, tenant_id: TenantId, container: ContainerDep) -> JSONResponse:
    """All content types in one call; data.breakdown has per-type counts."""
    resp = container.retriever.retrieve_all_context(
        tenant_id,
        body.query,
        top_n=body.top_n,
        min_score=body.min_score,
        include_metadata=body.include_metadata,
    )
    return envelope_response(resp)


@router.get("/stats")
def search_stats(tenant_id: TenantId, container: ContainerDep) -> dict:
    """Embedding counts per content type plus cache statistics."""
    return container.retriever.get_retrieval_stats(tenant_id)
