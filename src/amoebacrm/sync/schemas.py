"""Pydantic schemas and result types for AmoebaCRM contact sync.

Defines:
- RecordState / transition(): Per-record sync state machine and its legal moves
- LocalRecord: A local lead, built from a query row or a managed ORM entity
- RemoteRecord: An AmoebaCRM contact as returned by the retrieve endpoint
- IdentityLink: Persistent local id <-> remote id association
- FeatureSettings / PullParams: Sync configuration surface
- PushResult / PullResult: Pass outcome tuples
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, NamedTuple

from pydantic import BaseModel, Field

from src.amoebacrm.crm.field_mapping import MappingGapPolicy

if TYPE_CHECKING:
    from src.amoebacrm.config import Settings
    from src.amoebacrm.sync.models import LeadModel

INTEGRATION_NAME = "AmoebaCrm"
INTEGRATION_ENTITY = "Contact"
INTERNAL_ENTITY = "lead"


# ── Record State Machine ────────────────────────────────────────────────────


class RecordState(str, Enum):
    """Where a record is within one push pass."""

    UNSYNCED = "unsynced"
    PENDING_UPDATE = "pending_update"
    PENDING_CREATE = "pending_create"
    SYNCED = "synced"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RecordState.SYNCED, RecordState.FAILED)


ALLOWED_TRANSITIONS: dict[RecordState, frozenset[RecordState]] = {
    RecordState.UNSYNCED: frozenset({RecordState.PENDING_UPDATE, RecordState.PENDING_CREATE}),
    RecordState.PENDING_UPDATE: frozenset(
        {RecordState.SYNCED, RecordState.PENDING_CREATE, RecordState.FAILED}
    ),
    RecordState.PENDING_CREATE: frozenset({RecordState.SYNCED, RecordState.FAILED}),
    RecordState.SYNCED: frozenset(),
    RecordState.FAILED: frozenset(),
}


def transition(current: RecordState, target: RecordState) -> RecordState:
    """Return ``target`` if the move from ``current`` is legal.

    Raises:
        ValueError: On a transition not listed in ALLOWED_TRANSITIONS.
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise ValueError(
            f"Illegal record state transition: {current.value} -> {target.value}"
        )
    return target


# ── Records ─────────────────────────────────────────────────────────────────


class LocalRecord(BaseModel):
    """A lead known to the local system.

    Whatever shape the lead arrives in (a ledger query row or a managed
    LeadModel entity), callers only ever see ``id`` and ``fields``.
    """

    id: int
    fields: dict[str, Any] = Field(default_factory=dict)
    date_modified: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> LocalRecord:
        """Build from a query row; ``internal_entity_id`` wins over ``id``."""
        data = dict(row)
        internal_id = data.pop("internal_entity_id", None)
        row_id = data.pop("id", None)
        lead_id = internal_id if internal_id is not None else row_id
        data.pop("integration_entity_id", None)
        date_modified = data.pop("date_modified", None)
        return cls(id=int(lead_id or 0), fields=data, date_modified=date_modified)

    @classmethod
    def from_entity(cls, entity: LeadModel) -> LocalRecord:
        """Build from a managed LeadModel entity."""
        fields = dict(entity.fields or {})
        if entity.email:
            fields.setdefault("email", entity.email)
        return cls(id=entity.id, fields=fields, date_modified=entity.date_modified)


class RemoteRecord(BaseModel):
    """An AmoebaCRM contact: remote id plus its (possibly wrapped) fields."""

    id: str
    fields: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> RemoteRecord:
        """Split a raw retrieve-endpoint record into id and fields.

        Raises:
            ValueError: If the record carries no id.
        """
        if not isinstance(payload, Mapping):
            raise ValueError(f"Contact record is not an object: {payload!r}")
        remote_id = payload.get("id")
        if remote_id in (None, ""):
            raise ValueError("Contact record has no id")
        fields = {k: v for k, v in payload.items() if k != "id"}
        return cls(id=str(remote_id), fields=fields)


class IdentityLink(BaseModel):
    """Association between one local lead and one AmoebaCRM contact."""

    id: int
    integration: str = INTEGRATION_NAME
    integration_entity: str = INTEGRATION_ENTITY
    integration_entity_id: str
    internal_entity: str = INTERNAL_ENTITY
    internal_entity_id: int
    last_sync_date: datetime | None = None
    date_added: datetime | None = None


# ── Configuration Surface ───────────────────────────────────────────────────


class FeatureSettings(BaseModel):
    """Per-integration feature settings for a sync pass."""

    lead_fields: dict[str, str] = Field(default_factory=dict)
    objects: list[str] = Field(default_factory=lambda: [INTEGRATION_ENTITY])
    update_match_keys: list[str] = Field(default_factory=lambda: ["email"])
    gap_policy: MappingGapPolicy = MappingGapPolicy.DROP
    default_country_code: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> FeatureSettings:
        """Merge application settings with per-call overrides."""
        values: dict[str, Any] = {
            "lead_fields": dict(settings.SYNC_LEAD_FIELDS),
            "objects": list(settings.SYNC_OBJECTS),
            "update_match_keys": list(settings.SYNC_UPDATE_MATCH_KEYS),
            "gap_policy": MappingGapPolicy(settings.SYNC_MAPPING_GAP_POLICY),
            "default_country_code": settings.SYNC_DEFAULT_COUNTRY_CODE or None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class PullParams(BaseModel):
    """Parameters for one pull pass."""

    settings: FeatureSettings = Field(default_factory=FeatureSettings)
    page_size: int | None = Field(default=None, ge=1)
    max_pages: int | None = Field(default=None, ge=1)


# ── Pass Results ────────────────────────────────────────────────────────────


class PushResult(NamedTuple):
    """Outcome counts of a push pass."""

    updated: int = 0
    created: int = 0
    errors: int = 0
    ignored: int = 0

    @property
    def total(self) -> int:
        return self.updated + self.created + self.errors + self.ignored


class PullResult(NamedTuple):
    """Outcome counts of a pull pass."""

    updated: int = 0
    created: int = 0
