"""Request schemas for API endpoints. tenant_id is never accepted in payload."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Request(BaseModel):
    # camelCase on the wire, snake_case accepted too
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class SearchRequest(_Request):
    """Request body for POST /search/*. Range checks happen in the retriever (INVALID_REQUEST)."""

    query: str = Field(..., description="Search query, 1-1000 characters")
    top_n: int | None = Field(None, description="Max results (1-20, default 5)")
    min_score: float | None = Field(None, description="Similarity floor (0-1)")
    include_metadata: bool = Field(True, description="Return stored metadata per result")


class IndexJobRequest(_Request):
    """One content mutation to (re)index."""

    operation: Literal["create", "update", "delete"]
    content_type: str = Field(..., description="MENU, POLICY, FAQ or BUSINESS")
    content_id: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class IndexBatchRequest(_Request):
    """Request body for POST /indexing/batches."""

    jobs: list[IndexJobRequest] = Field(..., min_length=1, max_length=500)
