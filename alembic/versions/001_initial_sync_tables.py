"""Create the lead store and identity ledger tables.

Revision ID: 001_initial_sync
Revises:
Create Date: 2026-10-19

Creates two tables:
- leads: Local leads with custom field values in a JSON column
- integration_entity: Identity links between leads and AmoebaCRM contacts,
  one per (integration, integration_entity, internal_entity, internal_entity_id)
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── leads table ─────────────────────────────────────────────────────

    op.create_table(
        "leads",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("fields", sa.JSON(), nullable=False),
        sa.Column(
            "date_added",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("date_modified", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_leads_email", "leads", ["email"])

    # ── integration_entity table ────────────────────────────────────────

    op.create_table(
        "integration_entity",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("integration", sa.String(100), nullable=False),
        sa.Column("integration_entity", sa.String(100), nullable=False),
        sa.Column("integration_entity_id", sa.String(200), nullable=False),
        sa.Column("internal_entity", sa.String(100), nullable=False),
        sa.Column("internal_entity_id", sa.Integer(), nullable=False),
        sa.Column(
            "date_added",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("last_sync_date", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "integration",
            "integration_entity",
            "internal_entity",
            "internal_entity_id",
            name="uq_integration_entity_link",
        ),
    )
    op.create_index(
        "ix_integration_entity_remote",
        "integration_entity",
        ["integration", "integration_entity_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_integration_entity_remote", table_name="integration_entity")
    op.drop_table("integration_entity")
    op.drop_index("ix_leads_email", table_name="leads")
    op.drop_table("leads")
