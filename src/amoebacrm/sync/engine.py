"""Contact sync engine -- reconciles local leads with AmoebaCRM contacts.

Push side: every local lead is either linked to a remote contact (update it)
or not (create one). An update that AmoebaCRM does not confirm loses its
link and is re-queued as a create within the same pass, so a contact deleted
remotely is recreated instead of being retried forever.

Pull side: remote contacts are upserted into the local lead store and linked.

Rules applied by every pass:
- Records are processed one at a time; the only await per record is the
  remote call plus its ledger writes.
- Per-record failures are logged with the lead id bound, counted and never
  propagated.
- A RemoteTimeout keeps the link (remote state unknown) and fails the record.
- Cancellation is checked between records; unprocessed records are "ignored".
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from src.amoebacrm.core.monitoring import sync_records_total
from src.amoebacrm.crm.connector import CrmConnector
from src.amoebacrm.crm.errors import (
    ConnectorError,
    MappingGapError,
    PersistenceError,
    RemoteRejection,
    RemoteTimeout,
)
from src.amoebacrm.crm.field_mapping import (
    build_query_field_list,
    map_local_to_remote,
    map_remote_to_local,
    populate_lead_fields,
)
from src.amoebacrm.sync.leads import LeadRepository
from src.amoebacrm.sync.ledger import IdentityLedger
from src.amoebacrm.sync.schemas import (
    INTEGRATION_ENTITY,
    INTERNAL_ENTITY,
    FeatureSettings,
    LocalRecord,
    PullParams,
    PullResult,
    PushResult,
    RecordState,
    RemoteRecord,
    transition,
)

logger = structlog.get_logger(__name__)


def _cancelled(cancel_event: asyncio.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _remote_id(raw: Any) -> str | None:
    if isinstance(raw, Mapping) and raw.get("id") not in (None, ""):
        return str(raw["id"])
    return None


class SyncEngine:
    """Orchestrates push and pull passes for one AmoebaCRM integration.

    Args:
        connector: Remote contact store (AmoebaCrmClient in production).
        ledger: Identity link persistence.
        leads: Local lead store, used by pull passes and single-lead pushes.
    """

    def __init__(
        self,
        connector: CrmConnector,
        ledger: IdentityLedger,
        leads: LeadRepository,
    ) -> None:
        self._connector = connector
        self._ledger = ledger
        self._leads = leads

    @property
    def connector(self) -> CrmConnector:
        return self._connector

    # ── Push ────────────────────────────────────────────────────────────────

    async def push_batch(
        self,
        settings: FeatureSettings,
        records: Iterable[LocalRecord],
        cancel_event: asyncio.Event | None = None,
    ) -> PushResult:
        """Push the given leads, creating or updating each remote contact.

        Args:
            settings: Feature settings (field mapping, gap policy).
            records: Local leads to push.
            cancel_event: When set, stops the pass before the next record.

        Returns:
            PushResult with ``updated + created + errors + ignored`` equal to
            the number of records.
        """
        records = list(records)
        updates: list[tuple[LocalRecord, str]] = []
        creates: list[LocalRecord] = []
        errors = 0

        for record in records:
            try:
                link = await self._ledger.find_link(record.id)
            except PersistenceError as exc:
                logger.error("sync.link_lookup_failed", lead_id=record.id, error=str(exc))
                errors += 1
                continue
            if link is not None:
                updates.append((record, link.integration_entity_id))
            else:
                creates.append(record)

        result = await self._run_push(settings, updates, creates, cancel_event)
        result = result._replace(errors=result.errors + errors)
        if errors:
            sync_records_total.labels(direction="push", outcome="error").inc(errors)
        return result

    async def push_pending(
        self,
        settings: FeatureSettings,
        cancel_event: asyncio.Event | None = None,
    ) -> PushResult:
        """Push every lead the ledger reports as changed or never synced.

        A failure to load the work sets is logged and gives a zero result.
        """
        selector = build_query_field_list(settings.lead_fields.keys())
        try:
            updatable = await self._ledger.find_updatable(
                self._ledger.integration, INTEGRATION_ENTITY, selector
            )
            creatable = await self._ledger.find_creatable(self._ledger.integration, selector)
        except PersistenceError as exc:
            logger.error("sync.load_failed", error=str(exc))
            return PushResult()

        logger.info(
            "sync.push_pending",
            to_update=len(updatable),
            to_create=len(creatable),
        )
        return await self._run_push(settings, updatable, creatable, cancel_event)

    async def push_single(self, settings: FeatureSettings, record: LocalRecord) -> bool:
        """Push one lead: update when linked, create when not or when the update fails.

        Returns:
            True if the lead ended up synced.
        """
        if not settings.lead_fields:
            logger.error("sync.no_lead_fields", lead_id=record.id)
            return False
        if not self._connector.is_authorized():
            logger.warning("sync.unauthorized", lead_id=record.id)
            return False

        try:
            link = await self._ledger.find_link(record.id)
        except PersistenceError as exc:
            logger.error("sync.link_lookup_failed", lead_id=record.id, error=str(exc))
            return False

        state = RecordState.UNSYNCED
        if link is not None:
            state = await self._update_one(settings, record, link.integration_entity_id)
            if state.is_terminal:
                return state is RecordState.SYNCED

        state = await self._create_one(settings, record, state)
        return state is RecordState.SYNCED

    async def push_lead(self, settings: FeatureSettings, lead_id: int) -> bool | None:
        """Load a lead by id and push it; None if the lead does not exist."""
        record = await self._leads.get_lead(lead_id)
        if record is None:
            return None
        return await self.push_single(settings, record)

    async def _run_push(
        self,
        settings: FeatureSettings,
        updates: list[tuple[LocalRecord, str]],
        creates: list[LocalRecord],
        cancel_event: asyncio.Event | None,
    ) -> PushResult:
        """Updates first, then creates (including re-queued failed updates)."""
        total = len(updates) + len(creates)
        if total == 0:
            return PushResult()

        if not self._connector.is_authorized():
            logger.warning("sync.unauthorized", records=total)
            sync_records_total.labels(direction="push", outcome="error").inc(total)
            return PushResult(errors=total)

        updated = created = errors = 0
        requeued: list[LocalRecord] = []
        cancelled = False

        for record, remote_id in updates:
            if _cancelled(cancel_event):
                cancelled = True
                break
            state = await self._update_one(settings, record, remote_id)
            if state is RecordState.SYNCED:
                updated += 1
            elif state is RecordState.PENDING_CREATE:
                requeued.append(record)
            else:
                errors += 1

        if not cancelled:
            pending = [(r, RecordState.UNSYNCED) for r in creates]
            pending += [(r, RecordState.PENDING_CREATE) for r in requeued]
            for record, state in pending:
                if _cancelled(cancel_event):
                    break
                state = await self._create_one(settings, record, state)
                if state is RecordState.SYNCED:
                    created += 1
                else:
                    errors += 1

        ignored = total - (updated + created + errors)
        sync_records_total.labels(direction="push", outcome="updated").inc(updated)
        sync_records_total.labels(direction="push", outcome="created").inc(created)
        sync_records_total.labels(direction="push", outcome="error").inc(errors)
        sync_records_total.labels(direction="push", outcome="ignored").inc(ignored)

        if ignored:
            logger.warning("sync.push_ignored", ignored=ignored, total=total)
        logger.info(
            "sync.push_complete",
            updated=updated,
            created=created,
            errors=errors,
            ignored=ignored,
        )
        return PushResult(updated=updated, created=created, errors=errors, ignored=ignored)

    def _build_payload(self, settings: FeatureSettings, record: LocalRecord) -> dict[str, Any]:
        populated = populate_lead_fields(record.fields, settings.lead_fields)
        return map_local_to_remote(
            populated,
            gap_policy=settings.gap_policy,
            default_country_code=settings.default_country_code,
        )

    async def _update_one(
        self, settings: FeatureSettings, record: LocalRecord, remote_id: str
    ) -> RecordState:
        """Try to update a linked contact.

        Returns SYNCED, FAILED, or PENDING_CREATE when the update was not
        confirmed and the link has been dropped.
        """
        state = transition(RecordState.UNSYNCED, RecordState.PENDING_UPDATE)
        log = logger.bind(lead_id=record.id, remote_id=remote_id)

        try:
            payload = self._build_payload(settings, record)
        except MappingGapError as exc:
            log.warning("sync.mapping_gap", field=exc.field, value=exc.value)
            return transition(state, RecordState.FAILED)
        if not payload:
            log.error("sync.empty_payload")
            return transition(state, RecordState.FAILED)

        confirmed_id: str | None = None
        try:
            confirmed_id = await self._connector.update_contact(remote_id, payload)
        except RemoteTimeout as exc:
            log.error("sync.update_timeout", error=str(exc))
            return transition(state, RecordState.FAILED)
        except RemoteRejection as exc:
            exc.set_contact_id(record.id)
            log.warning(
                "sync.update_rejected",
                status_code=exc.status_code,
                error=exc.message,
            )
        except ConnectorError as exc:
            log.warning("sync.update_failed", error=str(exc))

        try:
            link = await self._ledger.find_link(record.id)
            if confirmed_id:
                if link is not None:
                    await self._ledger.touch_link(link)
                else:
                    await self._ledger.upsert_link(
                        INTEGRATION_ENTITY, confirmed_id, INTERNAL_ENTITY, record.id
                    )
                log.debug("sync.updated")
                return transition(state, RecordState.SYNCED)
            if link is not None:
                await self._ledger.delete_link(link)
        except PersistenceError as exc:
            log.error("sync.ledger_failed", error=str(exc))
            return transition(state, RecordState.FAILED)

        log.info("sync.update_requeued")
        return transition(state, RecordState.PENDING_CREATE)

    async def _create_one(
        self,
        settings: FeatureSettings,
        record: LocalRecord,
        state: RecordState = RecordState.UNSYNCED,
    ) -> RecordState:
        """Create a remote contact and link it. Returns SYNCED or FAILED."""
        if state is not RecordState.PENDING_CREATE:
            state = transition(state, RecordState.PENDING_CREATE)
        log = logger.bind(lead_id=record.id)

        try:
            payload = self._build_payload(settings, record)
        except MappingGapError as exc:
            log.warning("sync.mapping_gap", field=exc.field, value=exc.value)
            return transition(state, RecordState.FAILED)
        if not payload:
            log.error("sync.empty_payload")
            return transition(state, RecordState.FAILED)

        try:
            remote_id = await self._connector.create_contact(payload)
        except RemoteRejection as exc:
            exc.set_contact_id(record.id)
            log.error("sync.create_failed", status_code=exc.status_code, error=exc.message)
            return transition(state, RecordState.FAILED)
        except ConnectorError as exc:
            log.error("sync.create_failed", error=str(exc))
            return transition(state, RecordState.FAILED)

        if not remote_id:
            log.error("sync.create_failed", error="response carried no contact id")
            return transition(state, RecordState.FAILED)

        try:
            await self._ledger.upsert_link(
                INTEGRATION_ENTITY, remote_id, INTERNAL_ENTITY, record.id
            )
        except PersistenceError as exc:
            log.error("sync.ledger_failed", remote_id=remote_id, error=str(exc))
            return transition(state, RecordState.FAILED)

        log.debug("sync.created", remote_id=remote_id)
        return transition(state, RecordState.SYNCED)

    # ── Pull ────────────────────────────────────────────────────────────────

    async def pull_batch(
        self,
        params: PullParams,
        cancel_event: asyncio.Event | None = None,
    ) -> PullResult:
        """Fetch remote contacts and upsert them as local leads.

        A single unpaginated request unless ``params.page_size`` is set, in
        which case pages are fetched until one comes back short or longer than
        ``page_size``, repeats only contacts already seen in this pass, or
        ``params.max_pages`` is reached. Contacts repeated across pages are
        upserted once. A failure fetching a later page
        keeps what earlier pages produced.
        """
        settings = params.settings
        if INTEGRATION_ENTITY not in settings.objects:
            logger.info("sync.pull_skipped", objects=settings.objects)
            return PullResult()
        if not self._connector.is_authorized():
            logger.warning("sync.unauthorized")
            return PullResult()

        updated = created = 0
        page = 1 if params.page_size else None
        pages = 0
        seen: set[str] = set()

        while True:
            try:
                records = await self._connector.retrieve_contacts(
                    page=page, limit=params.page_size
                )
            except ConnectorError as exc:
                logger.error("sync.pull_fetch_failed", page=page, error=str(exc))
                break
            pages += 1

            # A remote that ignores paging answers every page with the same list
            page_ids = {_remote_id(raw) for raw in records} - {None}
            if pages > 1 and records and not page_ids - seen:
                logger.warning("sync.pull_page_repeated", page=page)
                break

            cancelled = False
            for raw in records:
                if _cancelled(cancel_event):
                    cancelled = True
                    break
                remote_id = _remote_id(raw)
                if remote_id is not None and remote_id in seen:
                    continue
                if remote_id is not None:
                    seen.add(remote_id)
                outcome = await self._pull_one(settings, raw)
                if outcome == "created":
                    created += 1
                elif outcome == "updated":
                    updated += 1
                sync_records_total.labels(direction="pull", outcome=outcome).inc()

            if cancelled:
                logger.warning("sync.pull_cancelled", pages=pages)
                break
            if page is None or len(records) != params.page_size:
                break
            if params.max_pages is not None and pages >= params.max_pages:
                break
            page += 1

        logger.info("sync.pull_complete", updated=updated, created=created, pages=pages)
        return PullResult(updated=updated, created=created)

    async def _pull_one(self, settings: FeatureSettings, raw: Any) -> str:
        """Upsert one remote record. Returns created, updated, unchanged or skipped."""
        try:
            remote = RemoteRecord.from_payload(raw)
        except ValueError as exc:
            logger.warning("sync.pull_record_invalid", error=str(exc))
            return "skipped"

        log = logger.bind(remote_id=remote.id)
        fields = map_remote_to_local(remote.fields, settings.lead_fields)
        if not fields:
            log.warning("sync.pull_record_empty")
            return "skipped"

        try:
            record, was_created, changed = await self._leads.upsert_from_remote(
                fields, settings.update_match_keys
            )
            await self._ledger.upsert_link(
                INTEGRATION_ENTITY, remote.id, INTERNAL_ENTITY, record.id
            )
        except PersistenceError as exc:
            log.error("sync.pull_record_failed", error=str(exc))
            return "skipped"

        if was_created:
            return "created"
        return "updated" if changed else "unchanged"
