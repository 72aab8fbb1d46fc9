"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings  # noqa: E402
from .routers import staging_sync as staging_sync_router  # noqa: E402
from .telemetry import init_observability  # noqa: E402
from .workers.arq_enqueue import close_arq_pool  # noqa: E402
from . import schemas  # noqa: E402

# Import models so Alembic can discover metadata
from . import models  # noqa: E402,F401


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_arq_pool()


def create_app() -> FastAPI:
    init_observability()

    app = FastAPI(
        lifespan=lifespan,
        title="codsync API",
        description="""
        Staging reconciliation for a cash-on-delivery order platform.

        Warehouse and carrier ingestion lands raw rows in per-provider staging
        tables; this service merges them into the storefront's canonical orders.

        - Trigger a reconciliation run per user
        - Poll its progress (phase, percentage, counts, run id, version)
        - Reset a stuck session
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS can be a comma-separated list
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info("[CORS] Allowed origins: %s", allowed_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(staging_sync_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
