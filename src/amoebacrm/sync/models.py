"""Persistence models for the local lead store and the identity ledger.

Two SQLAlchemy models:
- LeadModel: Local leads with custom field values held in a JSON column
- IdentityLinkModel: One row per (integration, remote entity, local entity, local id),
  mapping a local lead to its AmoebaCRM contact id with the last sync time
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.amoebacrm.core.database import Base


class LeadModel(Base):
    """A lead/contact owned by the local system.

    ``date_modified`` moves forward whenever field values change, which is
    what makes a linked lead eligible for the next push-as-update.
    """

    __tablename__ = "leads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    fields: Mapped[dict] = mapped_column(JSON, default=dict)
    date_added: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    date_modified: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class IdentityLinkModel(Base):
    """Sync state of record for one local lead against one AmoebaCRM contact."""

    __tablename__ = "integration_entity"
    __table_args__ = (
        UniqueConstraint(
            "integration",
            "integration_entity",
            "internal_entity",
            "internal_entity_id",
            name="uq_integration_entity_link",
        ),
        Index(
            "ix_integration_entity_remote",
            "integration",
            "integration_entity_id",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    integration: Mapped[str] = mapped_column(String(100), nullable=False)
    integration_entity: Mapped[str] = mapped_column(String(100), nullable=False)
    integration_entity_id: Mapped[str] = mapped_column(String(200), nullable=False)
    internal_entity: Mapped[str] = mapped_column(String(100), nullable=False)
    internal_entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date_added: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    last_sync_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
