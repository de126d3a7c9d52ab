"""Local lead store used by the pull pass and the outer surfaces.

LeadRepository wraps the ``leads`` table with the session_factory pattern.
Field values live in a JSON column; ``email`` is mirrored into its own
indexed column because it is the default key for matching pulled contacts.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select

from src.amoebacrm.core.database import SessionFactory, session_scope
from src.amoebacrm.sync.models import LeadModel
from src.amoebacrm.sync.schemas import LocalRecord

logger = structlog.get_logger(__name__)


class LeadRepository:
    """Async CRUD for local leads.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get_lead(self, lead_id: int) -> LocalRecord | None:
        """Get a lead by id, or None if it does not exist."""
        async with session_scope(self._session_factory, "get_lead") as session:
            model = await session.get(LeadModel, lead_id)
            if model is None:
                return None
            return LocalRecord.from_entity(model)

    async def create_lead(self, fields: Mapping[str, Any]) -> LocalRecord:
        """Insert a new lead with the given field values."""
        async with session_scope(self._session_factory, "create_lead") as session:
            model = LeadModel(
                email=fields.get("email"),
                fields=dict(fields),
                date_modified=datetime.now(timezone.utc),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return LocalRecord.from_entity(model)

    async def update_lead(
        self, lead_id: int, fields: Mapping[str, Any]
    ) -> LocalRecord | None:
        """Merge field values into an existing lead.

        ``date_modified`` only moves when a value actually changes.

        Returns:
            The updated LocalRecord, or None if the lead does not exist.
        """
        async with session_scope(self._session_factory, "update_lead") as session:
            model = await session.get(LeadModel, lead_id)
            if model is None:
                return None
            if _merge(model, fields):
                await session.commit()
                await session.refresh(model)
            return LocalRecord.from_entity(model)

    async def upsert_from_remote(
        self,
        fields: Mapping[str, Any],
        match_keys: Iterable[str] = ("email",),
    ) -> tuple[LocalRecord, bool, bool]:
        """Create or update the local lead matching a pulled contact.

        The first match key with a non-empty value decides which lead is
        matched; ``email`` uses the indexed column, other keys the JSON column.

        Args:
            fields: Local field values converted from the remote record.
            match_keys: Local field keys tried in order.

        Returns:
            (record, created, changed) where ``changed`` is True when an
            existing lead had at least one value replaced.
        """
        async with session_scope(self._session_factory, "upsert_lead") as session:
            model: LeadModel | None = None
            for key in match_keys:
                value = fields.get(key)
                if value in (None, ""):
                    continue
                if key == "email":
                    stmt = select(LeadModel).where(LeadModel.email == value)
                else:
                    stmt = select(LeadModel).where(
                        LeadModel.fields[key].as_string() == str(value)
                    )
                result = await session.execute(stmt.order_by(LeadModel.id).limit(1))
                model = result.scalar_one_or_none()
                if model is not None:
                    break

            if model is None:
                model = LeadModel(
                    email=fields.get("email"),
                    fields=dict(fields),
                    date_modified=datetime.now(timezone.utc),
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                logger.debug("leads.created_from_remote", lead_id=model.id)
                return LocalRecord.from_entity(model), True, False

            changed = _merge(model, fields)
            if changed:
                await session.commit()
                await session.refresh(model)
            return LocalRecord.from_entity(model), False, changed


def _merge(model: LeadModel, fields: Mapping[str, Any]) -> bool:
    """Apply field values to a managed model; return whether anything changed."""
    current = dict(model.fields or {})
    merged = {**current, **fields}
    if merged == current:
        return False
    # JSON columns are not mutation-tracked, so assign a fresh dict
    model.fields = merged
    if "email" in fields:
        model.email = fields["email"]
    model.date_modified = datetime.now(timezone.utc)
    return True
