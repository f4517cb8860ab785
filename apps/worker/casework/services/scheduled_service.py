"""Scheduled service - cron-driven polling, office syncs and cleanup.

Nothing here syncs records directly. Poll and sync-office jobs decide what
changed and delegate to the sync and triage queues.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from casework.core.identifiers import OfficeId
from casework.core.structured_logging import build_log_context
from casework.db.enums import CleanupType, EmailType, JobName, PollType, SyncEntityType, SyncMode
from casework.jobs.client import JobSender
from casework.jobs.utils import elapsed_ms
from casework.schemas.jobs import (
    ScheduledCleanupPayload,
    ScheduledJobResult,
    ScheduledPollLegacyPayload,
    ScheduledSyncOfficePayload,
    SyncCasesPayload,
    SyncConstituentsPayload,
    SyncEmailsPayload,
    SyncReferenceDataPayload,
    TriageProcessEmailPayload,
)
from casework.services import email_service, job_service, reference_data_service, sync_status_service
from casework.services.legacy_api import LegacyApiClient
from casework.utils.datetime_parsing import to_utc, utcnow

logger = logging.getLogger(__name__)

POLL_PAGE_SIZE = 100


def _results(response: dict[str, Any] | None) -> list[dict[str, Any]]:
    return list((response or {}).get("results") or [])


class ScheduledService:
    def __init__(
        self,
        db: Session,
        legacy_api: LegacyApiClient,
        jobs: JobSender,
        *,
        default_lookback_hours: int = 24,
    ):
        self.db = db
        self.legacy_api = legacy_api
        self.jobs = jobs
        self.default_lookback = timedelta(hours=default_lookback_hours)

    # -------------------------------------------------------------------------
    # Poll legacy
    # -------------------------------------------------------------------------

    def poll_since(self, office: OfficeId, payload: ScheduledPollLegacyPayload) -> datetime:
        if payload.last_poll_at is not None:
            return to_utc(payload.last_poll_at)
        stored = sync_status_service.get_poll_time(self.db, office, payload.poll_type.value)
        return stored or utcnow() - self.default_lookback

    async def _poll_emails(
        self, office: OfficeId, since: datetime, correlation_id: str | None
    ) -> dict[str, Any]:
        response = await self.legacy_api.search_inbox(
            office,
            page=1,
            limit=POLL_PAGE_SIZE,
            actioned=False,
            email_type=EmailType.RECEIVED.value,
            date_from=since,
        )
        records = _results(response)
        if not records:
            return {"found": 0, "new": 0}

        await self.jobs.send(
            JobName.SYNC_EMAILS,
            SyncEmailsPayload(
                office_id=office.value,
                correlation_id=correlation_id,
                mode=SyncMode.INCREMENTAL,
                modified_since=since,
                email_type=EmailType.RECEIVED,
                actioned_only=False,
            ),
        )

        senders = {
            int(record["id"]): record.get("from") for record in records if str(record.get("id", "")).isdigit()
        }
        known = email_service.existing_external_ids(self.db, office, senders)
        new_ids = sorted(set(senders) - known)
        # Queued behind the sync; triage resolves the shadow row by external id once it lands.
        if new_ids:
            await self.jobs.send_batch(
                [
                    (
                        JobName.TRIAGE_PROCESS_EMAIL,
                        TriageProcessEmailPayload(
                            office_id=office.value,
                            correlation_id=correlation_id,
                            email_id=str(external_id),
                            email_external_id=external_id,
                            from_address=senders[external_id],
                        ),
                        None,
                    )
                    for external_id in new_ids
                ]
            )
        return {"found": len(records), "new": len(new_ids)}

    async def _poll_cases(
        self, office: OfficeId, since: datetime, correlation_id: str | None
    ) -> dict[str, Any]:
        response = await self.legacy_api.search_cases(
            office, page=1, limit=POLL_PAGE_SIZE, modified_from=since, modified_to=utcnow()
        )
        records = _results(response)
        if records:
            await self.jobs.send(
                JobName.SYNC_CASES,
                SyncCasesPayload(
                    office_id=office.value,
                    correlation_id=correlation_id,
                    mode=SyncMode.INCREMENTAL,
                    modified_since=since,
                ),
            )
        return {"found": len(records)}

    async def _poll_constituents(
        self, office: OfficeId, since: datetime, correlation_id: str | None
    ) -> dict[str, Any]:
        response = await self.legacy_api.search_constituents(
            office, page=1, limit=POLL_PAGE_SIZE, modified_after=since
        )
        records = _results(response)
        if records:
            await self.jobs.send(
                JobName.SYNC_CONSTITUENTS,
                SyncConstituentsPayload(
                    office_id=office.value,
                    correlation_id=correlation_id,
                    mode=SyncMode.INCREMENTAL,
                    modified_since=since,
                ),
            )
        return {"found": len(records)}

    async def poll_legacy(self, payload: ScheduledPollLegacyPayload) -> ScheduledJobResult:
        """Look for upstream changes since the last poll and queue syncs for them."""
        started = time.monotonic()
        office = payload.office
        context = build_log_context(office_id=office, correlation_id=payload.correlation_id)
        polled_at = utcnow()
        since = self.poll_since(office, payload)

        pollers = {
            PollType.EMAILS: self._poll_emails,
            PollType.CASES: self._poll_cases,
            PollType.CONSTITUENTS: self._poll_constituents,
        }
        selected = list(pollers) if payload.poll_type == PollType.ALL else [payload.poll_type]

        details: dict[str, Any] = {"since": since.isoformat()}
        items = 0
        for poll_type in selected:
            summary = await pollers[poll_type](office, since, payload.correlation_id)
            details[poll_type.value] = summary
            items += summary["found"]

        sync_status_service.set_poll_time(self.db, office, payload.poll_type.value, polled_at)
        logger.info("Polled legacy (%s): %s changed records", payload.poll_type.value, items, extra=context)
        return ScheduledJobResult(
            success=True,
            job_type=JobName.SCHEDULED_POLL_LEGACY.value,
            items_processed=items,
            details=details,
            duration_ms=elapsed_ms(started),
        )

    # -------------------------------------------------------------------------
    # Sync office
    # -------------------------------------------------------------------------

    async def sync_office(self, payload: ScheduledSyncOfficePayload) -> ScheduledJobResult:
        started = time.monotonic()
        office = payload.office
        base = {"office_id": office.value, "correlation_id": payload.correlation_id}
        submissions = {
            SyncEntityType.REFERENCE_DATA: (JobName.SYNC_REFERENCE_DATA, SyncReferenceDataPayload(**base)),
            SyncEntityType.CONSTITUENTS: (
                JobName.SYNC_CONSTITUENTS,
                SyncConstituentsPayload(**base, mode=SyncMode.FULL),
            ),
            SyncEntityType.CASES: (JobName.SYNC_CASES, SyncCasesPayload(**base, mode=SyncMode.FULL)),
            SyncEntityType.EMAILS: (JobName.SYNC_EMAILS, SyncEmailsPayload(**base, mode=SyncMode.INCREMENTAL)),
        }

        job_ids: dict[str, str | None] = {}
        for entity in payload.sync_entities:
            if entity not in submissions:
                logger.warning(
                    "Scheduled office sync does not cover %s", entity.value, extra=build_log_context(office_id=office)
                )
                continue
            name, job_payload = submissions[entity]
            job_ids[name.value] = await self.jobs.send(name, job_payload)

        logger.info(
            "Queued office sync: %s",
            ", ".join(job_ids),
            extra=build_log_context(office_id=office, correlation_id=payload.correlation_id),
        )
        return ScheduledJobResult(
            success=True,
            job_type=JobName.SCHEDULED_SYNC_OFFICE.value,
            items_processed=len(job_ids),
            details={"jobs": job_ids},
            duration_ms=elapsed_ms(started),
        )

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def cleanup(self, payload: ScheduledCleanupPayload) -> ScheduledJobResult:
        started = time.monotonic()
        office = payload.office
        cutoff = utcnow() - timedelta(days=payload.older_than_days)

        if payload.cleanup_type == CleanupType.STALE_SYNCS:
            removed = sync_status_service.delete_stale(self.db, office, cutoff)
        elif payload.cleanup_type == CleanupType.ORPHANED_RECORDS:
            # Shadow entities are reconciled by maintenance:reconcile.
            removed = reference_data_service.delete_not_synced_since(self.db, office, cutoff)
        else:
            removed = job_service.delete_terminal_jobs(self.db, cutoff, office_id=office.uuid)

        logger.info(
            "Cleanup %s removed %s rows older than %s days",
            payload.cleanup_type.value,
            removed,
            payload.older_than_days,
            extra=build_log_context(office_id=office, correlation_id=payload.correlation_id),
        )
        return ScheduledJobResult(
            success=True,
            job_type=JobName.SCHEDULED_CLEANUP.value,
            items_processed=removed,
            details={"cleanup_type": payload.cleanup_type.value, "cutoff": cutoff.isoformat()},
            duration_ms=elapsed_ms(started),
        )
