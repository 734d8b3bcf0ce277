"""Request schemas reject tenant_id (and any other unknown field) in the payload."""

import pytest
from pydantic import ValidationError

from apps.context_engine.schemas.requests import IndexBatchRequest, IndexJobRequest, SearchRequest


@pytest.mark.parametrize("field", ["tenant_id", "tenantId", "tenant", "extra"])
def test_search_request_rejects_unknown_fields(field) -> None:
    with pytest.raises(ValidationError):
        SearchRequest(**{"query": "q", field: "t1"})


def test_index_job_request_rejects_tenant_id() -> None:
    with pytest.raises(ValidationError):
        IndexJobRequest(operation="create", content_type="MENU", content_id="1", tenant_id="t1")


def test_index_job_request_rejects_unknown_operation() -> None:
    with pytest.raises(ValidationError):
        IndexJobRequest(operation="upsert", content_type="MENU", content_id="1")


def test_batch_request_needs_jobs() -> None:
    with pytest.raises(ValidationError):
        IndexBatchRequest(jobs=[])


def test_search_request_accepts_camel_and_snake() -> None:
    camel = SearchRequest.model_validate({"query": "q", "topN": 3, "minScore": 0.5, "includeMetadata": False})
    snake = SearchRequest(query="q", top_n=3, min_score=0.5, include_metadata=False)
    assert camel == snake
    assert camel.top_n == 3


def test_index_job_request_accepts_valid_payload() -> None:
    r = IndexJobRequest.model_validate(
        {"operation": "delete", "contentType": "FAQ", "contentId": "f1"}
    )
    assert r.payload == {}
    assert r.content_id == "f1"
