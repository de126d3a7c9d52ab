"""Tests for IdentityLedger and LeadRepository against in-memory SQLite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.amoebacrm.crm.errors import PersistenceError
from src.amoebacrm.sync.schemas import (
    INTEGRATION_ENTITY,
    INTEGRATION_NAME,
    INTERNAL_ENTITY,
    IdentityLink,
)

SELECTOR = "l.email, l.firstname"


class TestIdentityLedger:
    """Link CRUD and work-set queries."""

    async def test_find_link_missing(self, ledger):
        assert await ledger.find_link(999) is None

    async def test_upsert_creates_then_repoints(self, ledger, leads):
        lead = await leads.create_lead({"email": "ana@example.com"})

        first = await ledger.upsert_link(INTEGRATION_ENTITY, "c-1", INTERNAL_ENTITY, lead.id)
        second = await ledger.upsert_link(INTEGRATION_ENTITY, "c-2", INTERNAL_ENTITY, lead.id)

        assert second.id == first.id
        found = await ledger.find_link(lead.id)
        assert found is not None
        assert found.integration == INTEGRATION_NAME
        assert found.integration_entity_id == "c-2"
        assert found.last_sync_date is not None

    async def test_delete_link(self, ledger, leads):
        lead = await leads.create_lead({"email": "ana@example.com"})
        link = await ledger.upsert_link(INTEGRATION_ENTITY, "c-1", INTERNAL_ENTITY, lead.id)

        await ledger.delete_link(link)

        assert await ledger.find_link(lead.id) is None

    async def test_touch_link_updates_timestamp(self, ledger, leads):
        lead = await leads.create_lead({"email": "ana@example.com"})
        old = datetime(2020, 1, 1, tzinfo=timezone.utc)
        link = await ledger.upsert_link(
            INTEGRATION_ENTITY, "c-1", INTERNAL_ENTITY, lead.id, synced_at=old
        )

        touched = await ledger.touch_link(link)

        assert touched.last_sync_date > old

    async def test_touch_vanished_link_raises(self, ledger):
        ghost = IdentityLink(id=12345, integration_entity_id="c-x", internal_entity_id=1)

        with pytest.raises(PersistenceError):
            await ledger.touch_link(ghost)

    async def test_find_creatable_excludes_linked(self, ledger, leads):
        linked = await leads.create_lead({"email": "a@example.com", "firstname": "A"})
        unlinked = await leads.create_lead({"email": "b@example.com", "firstname": "B"})
        await ledger.upsert_link(INTEGRATION_ENTITY, "c-1", INTERNAL_ENTITY, linked.id)

        creatable = await ledger.find_creatable(INTEGRATION_NAME, SELECTOR)

        assert [r.id for r in creatable] == [unlinked.id]
        assert creatable[0].fields == {"email": "b@example.com", "firstname": "B"}

    async def test_find_creatable_projects_selected_fields(self, ledger, leads):
        await leads.create_lead({"email": "a@example.com", "phone": "555"})

        creatable = await ledger.find_creatable(INTEGRATION_NAME, "l.email")

        assert creatable[0].fields == {"email": "a@example.com"}

    async def test_find_updatable_only_modified_since_sync(self, ledger, leads):
        stale = await leads.create_lead({"email": "a@example.com"})
        fresh = await leads.create_lead({"email": "b@example.com"})
        past = datetime.now(timezone.utc) - timedelta(days=1)
        future = datetime.now(timezone.utc) + timedelta(days=1)
        await ledger.upsert_link(
            INTEGRATION_ENTITY, "c-stale", INTERNAL_ENTITY, stale.id, synced_at=past
        )
        await ledger.upsert_link(
            INTEGRATION_ENTITY, "c-fresh", INTERNAL_ENTITY, fresh.id, synced_at=future
        )

        updatable = await ledger.find_updatable(INTEGRATION_NAME, INTEGRATION_ENTITY, SELECTOR)

        assert [(r.id, remote_id) for r, remote_id in updatable] == [(stale.id, "c-stale")]

    async def test_other_integration_links_ignored(self, ledger, leads):
        lead = await leads.create_lead({"email": "a@example.com"})
        await ledger.upsert_link(INTEGRATION_ENTITY, "c-1", INTERNAL_ENTITY, lead.id)

        creatable = await ledger.find_creatable("OtherCrm", SELECTOR)

        assert [r.id for r in creatable] == [lead.id]


class TestLeadRepository:
    """Local lead store used by pull passes."""

    async def test_get_missing_lead(self, leads):
        assert await leads.get_lead(404) is None

    async def test_upsert_creates_new_lead(self, leads):
        record, created, changed = await leads.upsert_from_remote(
            {"email": "ana@example.com", "firstname": "Ana"}
        )

        assert created is True
        assert changed is False
        stored = await leads.get_lead(record.id)
        assert stored.fields == {"email": "ana@example.com", "firstname": "Ana"}

    async def test_upsert_matches_by_email(self, leads):
        existing = await leads.create_lead({"email": "ana@example.com", "firstname": "A"})

        record, created, changed = await leads.upsert_from_remote(
            {"email": "ana@example.com", "firstname": "Ana"}
        )

        assert record.id == existing.id
        assert created is False
        assert changed is True
        assert record.fields["firstname"] == "Ana"

    async def test_upsert_unchanged_keeps_date_modified(self, leads):
        existing = await leads.create_lead({"email": "ana@example.com", "firstname": "Ana"})

        record, created, changed = await leads.upsert_from_remote(
            {"email": "ana@example.com", "firstname": "Ana"}
        )

        assert (created, changed) == (False, False)
        assert record.date_modified == existing.date_modified

    async def test_upsert_matches_by_json_key(self, leads):
        existing = await leads.create_lead({"email": "old@example.com", "external_ref": "R-9"})

        record, created, _ = await leads.upsert_from_remote(
            {"external_ref": "R-9", "email": "new@example.com"},
            match_keys=["external_ref"],
        )

        assert record.id == existing.id
        assert created is False
        assert record.fields["email"] == "new@example.com"
