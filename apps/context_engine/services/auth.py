"""Auth middleware: inject tenant_id from Authorization header only.

Authentication proper belongs to the surrounding product; this stand-in accepts
`Authorization: Bearer tenant:<id>` (or `tenant=<id>`). Client-provided
tenant_id in query/body/headers is explicitly ignored, except X-Tenant-Debug
when ENV=test AND ENABLE_TEST_TENANT_HEADER=1 (testing only).
"""

import os
import re

from starlette.requests import Request
from starlette.responses import JSONResponse

from apps.context_engine.errors import UNAUTHORIZED

# "Bearer tenant:A" or "Bearer tenant=B"
BEARER_TENANT_PATTERN = re.compile(r"^Bearer\s+tenant[:=](.+)$", re.IGNORECASE)

PUBLIC_PATHS = frozenset({"/health", "/docs", "/openapi.json"})


def _allow_tenant_debug_header() -> bool:
    """Only allow X-Tenant-Debug when ENV=test AND ENABLE_TEST_TENANT_HEADER=1."""
    env = (os.getenv("ENV") or os.getenv("ENVIRONMENT") or "").lower()
    if env != "test":
        return False
    return os.getenv("ENABLE_TEST_TENANT_HEADER", "").lower() in ("1", "true", "yes")


def extract_tenant(auth_header: str | None) -> str | None:
    """Parse tenant_id from a Bearer header. None if missing or malformed."""
    if not auth_header:
        return None
    m = BEARER_TENANT_PATTERN.match(auth_header.strip())
    if not m:
        return None
    return m.group(1).strip() or None


def unauthorized(message: str = "Missing or invalid tenant. Use Authorization: Bearer tenant:<id>") -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"success": False, "error": {"code": UNAUTHORIZED, "message": message}},
    )


async def auth_middleware(request: Request, call_next):
    """Set request.state.tenant_id or answer 401. Never reads tenant_id from query params or body."""
    if request.url.path.rstrip("/") in PUBLIC_PATHS:
        return await call_next(request)

    tenant_id = extract_tenant(request.headers.get("Authorization"))
    if tenant_id is None and _allow_tenant_debug_header():
        tenant_id = (request.headers.get("X-Tenant-Debug") or "").strip() or None

    if not tenant_id:
        return unauthorized()

    request.state.tenant_id = tenant_id
    return await call_next(request)
