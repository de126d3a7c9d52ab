"""REST API endpoints for triggering AmoebaCRM contact sync.

Provides push (all pending leads), pull, single-lead push and the remote
field catalogue. The SyncEngine is read from app.state; endpoints answer 503
while it is not initialized.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from src.amoebacrm.config import get_settings
from src.amoebacrm.crm.field_mapping import MappingGapPolicy
from src.amoebacrm.sync.schemas import FeatureSettings, PullParams

router = APIRouter(prefix="/sync", tags=["sync"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class PushRequest(BaseModel):
    """Optional per-call overrides of the configured feature settings."""

    lead_fields: dict[str, str] | None = None
    objects: list[str] | None = None
    gap_policy: MappingGapPolicy | None = None
    default_country_code: str | None = None


class PullRequest(BaseModel):
    """Pull pass parameters; page_size falls back to SYNC_PULL_PAGE_SIZE."""

    page_size: int | None = Field(default=None, ge=1)
    max_pages: int | None = Field(default=None, ge=1)
    objects: list[str] | None = None


class PushResponse(BaseModel):
    updated: int
    created: int
    errors: int
    ignored: int


class PullResponse(BaseModel):
    updated: int
    created: int


class LeadPushResponse(BaseModel):
    lead_id: int
    synced: bool


class FieldsResponse(BaseModel):
    fields: dict[str, dict[str, Any]] = Field(default_factory=dict)


# ── Dependency Injection Helper ──────────────────────────────────────────────


def _get_sync_engine(request: Request) -> Any:
    """Retrieve SyncEngine from app.state, 503 if not available."""
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Contact sync not initialized",
        )
    return engine


def _feature_settings(body: PushRequest | None = None) -> FeatureSettings:
    overrides = body.model_dump(exclude_none=True) if body else {}
    return FeatureSettings.from_settings(get_settings(), **overrides)


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/push", response_model=PushResponse)
async def push_leads(request: Request, body: PushRequest | None = None) -> PushResponse:
    """Push every lead that changed since its last sync or was never synced."""
    engine = _get_sync_engine(request)
    result = await engine.push_pending(_feature_settings(body))
    return PushResponse(**result._asdict())


@router.post("/pull", response_model=PullResponse)
async def pull_contacts(request: Request, body: PullRequest | None = None) -> PullResponse:
    """Fetch AmoebaCRM contacts into the local lead store."""
    engine = _get_sync_engine(request)
    body = body or PullRequest()
    params = PullParams(
        settings=FeatureSettings.from_settings(get_settings(), objects=body.objects),
        page_size=body.page_size or get_settings().SYNC_PULL_PAGE_SIZE,
        max_pages=body.max_pages,
    )
    result = await engine.pull_batch(params)
    return PullResponse(**result._asdict())


@router.post("/leads/{lead_id}/push", response_model=LeadPushResponse)
async def push_lead(lead_id: int, request: Request) -> LeadPushResponse:
    """Push one lead, updating its contact or creating one."""
    engine = _get_sync_engine(request)
    synced = await engine.push_lead(_feature_settings(), lead_id)
    if synced is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Lead {lead_id} not found",
        )
    return LeadPushResponse(lead_id=lead_id, synced=synced)


@router.get("/fields", response_model=FieldsResponse)
async def available_fields(request: Request) -> FieldsResponse:
    """AmoebaCRM contact fields available for mapping."""
    engine = _get_sync_engine(request)
    fields = await engine.connector.get_available_lead_fields()
    return FieldsResponse(fields=fields)
