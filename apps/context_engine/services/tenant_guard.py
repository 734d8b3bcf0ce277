"""Tenant-scoped query choke point. Every store method calls require_tenant_id first."""

from apps.context_engine.errors import TenantRequiredError
from apps.context_engine.repositories.tenant_filters import tenant_where


def require_tenant_id(tenant_id: str | None) -> str:
    """
    Validate tenant_id; return stripped value. Raises TenantRequiredError if missing/empty.
    Call at start of every tenant-scoped method, before any DB or cache access.
    """
    if not tenant_id or not str(tenant_id).strip():
        raise TenantRequiredError("tenant_id is required and must be non-empty")
    return str(tenant_id).strip()


__all__ = ["TenantRequiredError", "require_tenant_id", "tenant_where"]
