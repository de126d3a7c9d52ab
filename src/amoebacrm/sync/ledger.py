"""Identity ledger -- persistent local lead <-> AmoebaCRM contact links.

Provides IdentityLedger with the session_factory callable pattern used by
the lead store. One link row exists per (integration, remote entity type,
local entity type, local id); the unique constraint on the table enforces it.

Besides link CRUD, the ledger answers the two work-set questions of a push
pass: which leads have never been linked (find_creatable) and which linked
leads changed since their last sync (find_updatable).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import and_, delete, or_, select, update

from src.amoebacrm.core.database import SessionFactory, session_scope
from src.amoebacrm.crm.errors import PersistenceError
from src.amoebacrm.crm.field_mapping import parse_selector
from src.amoebacrm.sync.models import IdentityLinkModel, LeadModel
from src.amoebacrm.sync.schemas import (
    INTEGRATION_ENTITY,
    INTERNAL_ENTITY,
    IdentityLink,
    LocalRecord,
)

logger = structlog.get_logger(__name__)


def _model_to_link(model: IdentityLinkModel) -> IdentityLink:
    """Convert IdentityLinkModel to IdentityLink schema."""
    return IdentityLink(
        id=model.id,
        integration=model.integration,
        integration_entity=model.integration_entity,
        integration_entity_id=model.integration_entity_id,
        internal_entity=model.internal_entity,
        internal_entity_id=model.internal_entity_id,
        last_sync_date=model.last_sync_date,
        date_added=model.date_added,
    )


def _project(lead: LeadModel, selector: str) -> LocalRecord:
    """Build a LocalRecord carrying only the fields named in the selector."""
    names = parse_selector(selector)
    data: dict[str, Any] = {"id": lead.id, "date_modified": lead.date_modified}
    values = dict(lead.fields or {})
    if lead.email is not None:
        values.setdefault("email", lead.email)
    if names:
        for name in names:
            data[name] = values.get(name)
    else:
        data.update(values)
    return LocalRecord.from_row(data)


class IdentityLedger:
    """Async persistence of identity links for one integration.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        integration: Integration name written on every link.
        internal_entity: Local entity type the links point at.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        integration: str,
        internal_entity: str = INTERNAL_ENTITY,
    ) -> None:
        self._session_factory = session_factory
        self._integration = integration
        self._internal_entity = internal_entity

    @property
    def integration(self) -> str:
        return self._integration

    # ── Lookups ─────────────────────────────────────────────────────────────

    async def find_link(
        self, local_id: int, entity_type: str = INTEGRATION_ENTITY
    ) -> IdentityLink | None:
        """Get the link for a local lead, if it has ever been synced.

        Args:
            local_id: Local lead id.
            entity_type: Remote entity type.

        Returns:
            IdentityLink if found, None otherwise.
        """
        async with session_scope(self._session_factory, "find_link") as session:
            stmt = select(IdentityLinkModel).where(
                IdentityLinkModel.integration == self._integration,
                IdentityLinkModel.integration_entity == entity_type,
                IdentityLinkModel.internal_entity == self._internal_entity,
                IdentityLinkModel.internal_entity_id == local_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_link(model)

    async def find_creatable(
        self,
        integration: str,
        selector: str,
        limit: int | None = None,
    ) -> list[LocalRecord]:
        """List leads with no link for the integration.

        Args:
            integration: Integration name to check links against.
            selector: Field selection clause (``"l.email, l.firstname"``).
                Empty selects every field.
            limit: Optional cap on the number of leads returned.

        Returns:
            LocalRecords ordered by lead id.
        """
        async with session_scope(self._session_factory, "find_creatable") as session:
            stmt = (
                select(LeadModel)
                .outerjoin(
                    IdentityLinkModel,
                    and_(
                        IdentityLinkModel.internal_entity_id == LeadModel.id,
                        IdentityLinkModel.integration == integration,
                        IdentityLinkModel.internal_entity == self._internal_entity,
                    ),
                )
                .where(IdentityLinkModel.id.is_(None))
                .order_by(LeadModel.id)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [_project(lead, selector) for lead in result.scalars().all()]

    async def find_updatable(
        self,
        integration: str,
        entity_type: str,
        selector: str,
        limit: int | None = None,
    ) -> list[tuple[LocalRecord, str]]:
        """List linked leads modified since their last sync (or never synced).

        Args:
            integration: Integration name of the links.
            entity_type: Remote entity type of the links.
            selector: Field selection clause, as for find_creatable().
            limit: Optional cap on the number of leads returned.

        Returns:
            (LocalRecord, remote_id) pairs ordered by lead id.
        """
        async with session_scope(self._session_factory, "find_updatable") as session:
            stmt = (
                select(LeadModel, IdentityLinkModel.integration_entity_id)
                .join(
                    IdentityLinkModel,
                    and_(
                        IdentityLinkModel.internal_entity_id == LeadModel.id,
                        IdentityLinkModel.integration == integration,
                        IdentityLinkModel.integration_entity == entity_type,
                        IdentityLinkModel.internal_entity == self._internal_entity,
                    ),
                )
                .where(
                    or_(
                        IdentityLinkModel.last_sync_date.is_(None),
                        LeadModel.date_modified > IdentityLinkModel.last_sync_date,
                    )
                )
                .order_by(LeadModel.id)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [
                (_project(lead, selector), remote_id)
                for lead, remote_id in result.all()
            ]

    # ── Mutations ───────────────────────────────────────────────────────────

    async def upsert_link(
        self,
        entity_type: str,
        remote_id: str,
        local_entity_type: str,
        local_id: int,
        synced_at: datetime | None = None,
    ) -> IdentityLink:
        """Create the link for a lead, or repoint and touch the existing one.

        Args:
            entity_type: Remote entity type (``"Contact"``).
            remote_id: AmoebaCRM contact id.
            local_entity_type: Local entity type (``"lead"``).
            local_id: Local lead id.
            synced_at: Sync timestamp; defaults to now (UTC).

        Returns:
            The persisted IdentityLink.
        """
        synced_at = synced_at or datetime.now(timezone.utc)
        async with session_scope(self._session_factory, "upsert_link") as session:
            stmt = select(IdentityLinkModel).where(
                IdentityLinkModel.integration == self._integration,
                IdentityLinkModel.integration_entity == entity_type,
                IdentityLinkModel.internal_entity == local_entity_type,
                IdentityLinkModel.internal_entity_id == local_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = IdentityLinkModel(
                    integration=self._integration,
                    integration_entity=entity_type,
                    integration_entity_id=str(remote_id),
                    internal_entity=local_entity_type,
                    internal_entity_id=local_id,
                    date_added=synced_at,
                    last_sync_date=synced_at,
                )
                session.add(model)
            else:
                model.integration_entity_id = str(remote_id)
                model.last_sync_date = synced_at
            await session.commit()
            await session.refresh(model)
            logger.debug(
                "ledger.link_upserted",
                lead_id=local_id,
                remote_id=str(remote_id),
            )
            return _model_to_link(model)

    async def touch_link(
        self, link: IdentityLink, synced_at: datetime | None = None
    ) -> IdentityLink:
        """Record a confirmed sync on an existing link.

        Raises:
            PersistenceError: If the link no longer exists.
        """
        synced_at = synced_at or datetime.now(timezone.utc)
        async with session_scope(self._session_factory, "touch_link") as session:
            stmt = (
                update(IdentityLinkModel)
                .where(IdentityLinkModel.id == link.id)
                .values(last_sync_date=synced_at)
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                raise PersistenceError(f"Identity link {link.id} no longer exists")
            return link.model_copy(update={"last_sync_date": synced_at})

    async def delete_link(self, link: IdentityLink) -> None:
        """Remove a link whose remote contact could not be confirmed."""
        async with session_scope(self._session_factory, "delete_link") as session:
            await session.execute(
                delete(IdentityLinkModel).where(IdentityLinkModel.id == link.id)
            )
            await session.commit()
            logger.info(
                "ledger.link_deleted",
                lead_id=link.internal_entity_id,
                remote_id=link.integration_entity_id,
            )
