"""FastAPI application entrypoint.

Includes the sync trigger router and exposes a healthcheck endpoint.
"""

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
import logging
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .routers import sync as sync_router
from .telemetry import init_observability
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    app = FastAPI(
        title="adsync API",
        description="""
        adsync keeps a local copy of advertising data in sync with the ads platform.

        This API provides endpoints for:
        - Running a dispatch tick (scheduled syncs due this hour)
        - Manual entity and insight syncs of one account
        - Rebuilding branch rollups
        - Lead attribution backfill
        - Per-tenant sync schedules

        ## Authentication

        Every /sync endpoint requires the `X-Internal-Key` header.
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto headers from load balancers
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    app.include_router(sync_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="Unauthenticated liveness check for load balancers.",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        status = init_observability()
        logger.info("[STARTUP] Observability: %s", status)

    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema

        openapi_schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )

        openapi_schema.setdefault("components", {})["securitySchemes"] = {
            "internalKey": {
                "type": "apiKey",
                "in": "header",
                "name": "X-Internal-Key",
                "description": "Shared secret for system-to-system calls",
            }
        }

        for path in openapi_schema["paths"]:
            if path == "/health":
                continue
            for method in openapi_schema["paths"][path]:
                if "security" not in openapi_schema["paths"][path][method]:
                    openapi_schema["paths"][path][method]["security"] = [
                        {"internalKey": []}
                    ]

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


app = create_app()
