"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apps.context_engine.config import Settings
from apps.context_engine.errors import INVALID_REQUEST
from apps.context_engine.routes import health, indexing, search, usage
from apps.context_engine.services.auth import auth_middleware
from apps.context_engine.services.container import Container, build_container

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies (including a client-sent tenant_id) use the envelope shape with 400."""
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {"code": INVALID_REQUEST, "message": "Invalid request body"},
            "detail": jsonable_encoder(exc.errors()),
        },
    )


def create_app(container: Container | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the app. An injected container is used as-is (tests); otherwise one is built
    from the environment at startup and its workers are started."""
    settings = settings or (container.settings if container else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.container is None
        if owned:
            app.state.container = build_container(settings)
            app.state.container.start()
        else:
            app.state.container.db.ensure_tables()
        try:
            yield
        finally:
            if owned:
                app.state.container.shutdown()
                app.state.container = None

    app = FastAPI(title="Context Engine API", version="0.1.0", lifespan=lifespan)
    app.state.container = container

    app.add_middleware(CORSMiddleware, allow_origins=settings.cors_origins, allow_methods=["*"], allow_headers=["*"])
    app.middleware("http")(auth_middleware)
    app.add_exception_handler(RequestValidationError, _validation_error)

    app.include_router(health.router, tags=["health"])
    app.include_router(search.router, prefix="/search", tags=["search"])
    app.include_router(indexing.router, prefix="/indexing", tags=["indexing"])
    app.include_router(usage.router, prefix="/usage", tags=["usage"])
    return app


app = create_app()
