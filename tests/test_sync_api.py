"""Integration tests for the sync API endpoints.

Uses an AsyncMock SyncEngine on app.state and httpx AsyncClient over
ASGITransport. Covers push, pull, single-lead push, field discovery,
and the 503 when the engine is not initialized.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.amoebacrm.crm.field_mapping import MappingGapPolicy
from src.amoebacrm.sync.engine import SyncEngine
from src.amoebacrm.sync.schemas import PullResult, PushResult


def _make_app(engine) -> FastAPI:
    """Create a minimal FastAPI app with the sync router mounted under /v1."""
    from src.amoebacrm.api.v1.sync import router

    app = FastAPI()
    app.include_router(router, prefix="/v1")
    app.state.sync_engine = engine
    return app


@pytest_asyncio.fixture
async def client_and_engine():
    engine = AsyncMock(spec=SyncEngine)
    engine.connector = MagicMock()
    engine.connector.get_available_lead_fields = AsyncMock(return_value={})

    transport = ASGITransport(app=_make_app(engine))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, engine


async def test_push_returns_counts(client_and_engine):
    """POST /v1/sync/push -> 200 with the pass result."""
    client, engine = client_and_engine
    engine.push_pending.return_value = PushResult(updated=2, created=1, errors=1, ignored=0)

    response = await client.post("/v1/sync/push")

    assert response.status_code == 200
    assert response.json() == {"updated": 2, "created": 1, "errors": 1, "ignored": 0}
    engine.push_pending.assert_awaited_once()


async def test_push_applies_overrides(client_and_engine):
    client, engine = client_and_engine
    engine.push_pending.return_value = PushResult()

    response = await client.post(
        "/v1/sync/push",
        json={"lead_fields": {"email": "email"}, "gap_policy": "reject"},
    )

    assert response.status_code == 200
    settings = engine.push_pending.await_args.args[0]
    assert settings.lead_fields == {"email": "email"}
    assert settings.gap_policy == MappingGapPolicy.REJECT


async def test_pull_passes_paging(client_and_engine):
    """POST /v1/sync/pull -> 200 with updated/created counts."""
    client, engine = client_and_engine
    engine.pull_batch.return_value = PullResult(updated=3, created=4)

    response = await client.post("/v1/sync/pull", json={"page_size": 50, "max_pages": 2})

    assert response.status_code == 200
    assert response.json() == {"updated": 3, "created": 4}
    params = engine.pull_batch.await_args.args[0]
    assert params.page_size == 50
    assert params.max_pages == 2


async def test_pull_applies_objects_override(client_and_engine):
    client, engine = client_and_engine
    engine.pull_batch.return_value = PullResult()

    response = await client.post("/v1/sync/pull", json={"objects": ["Company"]})

    assert response.status_code == 200
    params = engine.pull_batch.await_args.args[0]
    assert params.settings.objects == ["Company"]


async def test_pull_rejects_bad_page_size(client_and_engine):
    client, engine = client_and_engine

    response = await client.post("/v1/sync/pull", json={"page_size": 0})

    assert response.status_code == 422
    engine.pull_batch.assert_not_called()


async def test_push_single_lead(client_and_engine):
    client, engine = client_and_engine
    engine.push_lead.return_value = True

    response = await client.post("/v1/sync/leads/42/push")

    assert response.status_code == 200
    assert response.json() == {"lead_id": 42, "synced": True}
    assert engine.push_lead.await_args.args[1] == 42


async def test_push_single_lead_not_found(client_and_engine):
    client, engine = client_and_engine
    engine.push_lead.return_value = None

    response = await client.post("/v1/sync/leads/404/push")

    assert response.status_code == 404


async def test_available_fields(client_and_engine):
    client, engine = client_and_engine
    fields = {"email": {"label": "Email", "type": "string", "required": True, "group": "Contact"}}
    engine.connector.get_available_lead_fields.return_value = fields

    response = await client.get("/v1/sync/fields")

    assert response.status_code == 200
    assert response.json() == {"fields": fields}


async def test_engine_not_initialized_returns_503():
    """app.state.sync_engine = None -> 503."""
    transport = ASGITransport(app=_make_app(None))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/v1/sync/push")

    assert response.status_code == 503


async def test_health_and_metrics():
    """GET /health -> ok; GET /metrics exposes the sync counters."""
    from src.amoebacrm.main import create_app

    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        health = await client.get("/health")
        metrics = await client.get("/metrics")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.headers["X-Request-ID"]
    assert metrics.status_code == 200
    assert "amoebacrm_sync_records_total" in metrics.text
