"""FastAPI application factory.

Creates the app with logging and metrics middleware, lifespan events for
database initialization and SyncEngine wiring, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.amoebacrm.api.v1.router import router as v1_router
from src.amoebacrm.config import get_settings
from src.amoebacrm.core.database import close_db, get_session, init_db
from src.amoebacrm.core.logging import LoggingMiddleware, configure_structlog
from src.amoebacrm.core.monitoring import MetricsMiddleware, get_metrics_response
from src.amoebacrm.crm.client import AmoebaCrmClient
from src.amoebacrm.sync.engine import SyncEngine
from src.amoebacrm.sync.leads import LeadRepository
from src.amoebacrm.sync.ledger import IdentityLedger
from src.amoebacrm.sync.schemas import INTEGRATION_NAME


def build_sync_engine(client: AmoebaCrmClient) -> SyncEngine:
    """Wire a SyncEngine over the default session factory."""
    ledger = IdentityLedger(session_factory=get_session, integration=INTEGRATION_NAME)
    leads = LeadRepository(session_factory=get_session)
    return SyncEngine(connector=client, ledger=ledger, leads=leads)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and the sync engine on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    client = AmoebaCrmClient.from_settings(settings)
    app.state.sync_engine = build_sync_engine(client)
    if not client.is_authorized():
        log.warning(
            "amoebacrm.not_authorized",
            instance_url=settings.AMOEBACRM_INSTANCE_URL or None,
        )
    log.info("amoebacrm.sync_engine_initialized")

    yield

    app.state.sync_engine = None
    await client.aclose()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="AmoebaCRM Sync API",
        version="0.1.0",
        description="Contact sync between the local lead store and AmoebaCRM",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
