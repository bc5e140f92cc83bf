from __future__ import annotations

"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) to
improve testability and separation of concerns compared to a monolithic main.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from kwcoord.api.routes import health_router, webhooks_router
from kwcoord.core.config import settings
from kwcoord.core.dependencies import close_dependencies
from kwcoord.core.exception_handlers import setup_exception_handlers
from kwcoord.core.logging import configure_logging
from kwcoord.core.middleware import request_id_middleware
from kwcoord.core.openapi import apply_openapi_customizations


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_dependencies()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Keyword Coordination API",
        description=(
            "Shared-state coordination for a keyword research service: "
            "identity records, usage quotas, rate limits, result caching and "
            "exactly-once handling of billing webhooks, all backed by one "
            "key-value store."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(webhooks_router, prefix="/v1")
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
