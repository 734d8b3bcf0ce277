"""Server-side tenant context and component injection for routes.

Tenant is taken from auth (request.state.tenant_id set by auth_middleware).
Client-provided tenant_id in query/body is explicitly ignored.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from apps.context_engine.services.container import Container

# Keys that MUST NOT be trusted from query/body; tenant comes from auth only
IGNORED_CLIENT_TENANT_KEYS = frozenset({"tenant_id", "tenant", "x-tenant-id"})


def get_tenant_id(request: Request) -> str:
    """FastAPI dependency: tenant_id from request.state. 401 if missing."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if not tenant_id or not str(tenant_id).strip():
        raise HTTPException(status_code=401, detail="Tenant ID required")
    return str(tenant_id).strip()


def get_container(request: Request) -> Container:
    """FastAPI dependency: the Container built in the app lifespan."""
    return request.app.state.container


TenantId = Annotated[str, Depends(get_tenant_id)]
ContainerDep = Annotated[Container, Depends(get_container)]
