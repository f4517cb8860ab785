"""Queue service - the submission API the HTTP layer uses to enqueue work."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from casework.core.identifiers import OfficeId
from casework.core.structured_logging import build_log_context
from casework.db.enums import CleanupType, JobName, PollType, SyncEntityType, SyncMode
from casework.db.models import Job
from casework.jobs.client import JobStoreClient
from casework.jobs.policies import JobOptions
from casework.schemas.jobs import (
    CasenotePushData,
    CasePushData,
    ConstituentPushData,
    EmailPushData,
    PushCasenotePayload,
    PushCasePayload,
    PushConstituentPayload,
    PushEmailPayload,
    ScheduledCleanupPayload,
    ScheduledPollLegacyPayload,
    ScheduledSyncOfficePayload,
    SyncAllPayload,
    SyncCasesPayload,
    SyncConstituentsPayload,
    SyncEmailsPayload,
    SyncReferenceDataPayload,
    TriageBatchPrefetchPayload,
    TriageDecision,
    TriageProcessEmailPayload,
    TriageSubmitDecisionPayload,
)
from casework.schemas.triage import TriageCacheEntry
from casework.services import sync_status_service
from casework.services.sync_service import PAGED_JOBS
from casework.services.triage_cache import TriageCache

logger = logging.getLogger(__name__)

DECISION_PRIORITY = 10

_INCREMENTAL_PAYLOADS = {
    SyncEntityType.CONSTITUENTS: SyncConstituentsPayload,
    SyncEntityType.CASES: SyncCasesPayload,
    SyncEntityType.EMAILS: SyncEmailsPayload,
}


def _correlation_id(correlation_id: str | None) -> str:
    return correlation_id or str(uuid.uuid4())


class QueueService:
    """Typed submission helpers over ``JobStoreClient``."""

    def __init__(
        self,
        jobs: JobStoreClient,
        session_factory: sessionmaker[Session],
        cache: TriageCache,
        *,
        prefetch_ahead: int = 3,
    ):
        self.jobs = jobs
        self.session_factory = session_factory
        self.cache = cache
        self.prefetch_ahead = prefetch_ahead

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def schedule_sync_all(
        self,
        office: OfficeId,
        mode: SyncMode = SyncMode.INCREMENTAL,
        *,
        include_reference_data: bool = True,
        correlation_id: str | None = None,
        initiated_by: str | None = None,
    ) -> str | None:
        payload = SyncAllPayload(
            office_id=office.value,
            mode=mode,
            include_reference_data=include_reference_data,
            correlation_id=_correlation_id(correlation_id),
            initiated_by=initiated_by,
        )
        return await self.jobs.send_singleton(JobName.SYNC_ALL, payload)

    async def schedule_sync_constituents(
        self, office: OfficeId, mode: SyncMode = SyncMode.INCREMENTAL, *, correlation_id: str | None = None
    ) -> str | None:
        payload = SyncConstituentsPayload(
            office_id=office.value, mode=mode, correlation_id=_correlation_id(correlation_id)
        )
        return await self.jobs.send_singleton(JobName.SYNC_CONSTITUENTS, payload)

    async def schedule_sync_cases(
        self, office: OfficeId, mode: SyncMode = SyncMode.INCREMENTAL, *, correlation_id: str | None = None
    ) -> str | None:
        payload = SyncCasesPayload(office_id=office.value, mode=mode, correlation_id=_correlation_id(correlation_id))
        return await self.jobs.send_singleton(JobName.SYNC_CASES, payload)

    async def schedule_sync_emails(
        self,
        office: OfficeId,
        mode: SyncMode = SyncMode.INCREMENTAL,
        *,
        actioned_only: bool | None = None,
        correlation_id: str | None = None,
    ) -> str | None:
        payload = SyncEmailsPayload(
            office_id=office.value,
            mode=mode,
            actioned_only=actioned_only,
            correlation_id=_correlation_id(correlation_id),
        )
        return await self.jobs.send_singleton(JobName.SYNC_EMAILS, payload)

    async def schedule_sync_reference_data(
        self, office: OfficeId, *, correlation_id: str | None = None
    ) -> str | None:
        payload = SyncReferenceDataPayload(office_id=office.value, correlation_id=_correlation_id(correlation_id))
        return await self.jobs.send_singleton(JobName.SYNC_REFERENCE_DATA, payload)

    async def schedule_incremental_sync(
        self,
        office: OfficeId,
        entity_type: SyncEntityType,
        modified_since: datetime | None = None,
        *,
        correlation_id: str | None = None,
    ) -> str | None:
        model = _INCREMENTAL_PAYLOADS.get(entity_type)
        if model is None:
            raise ValueError(f"Incremental sync is not supported for {entity_type.value}")
        payload = model(
            office_id=office.value,
            mode=SyncMode.INCREMENTAL,
            modified_since=modified_since,
            correlation_id=_correlation_id(correlation_id),
        )
        return await self.jobs.send_singleton(PAGED_JOBS[entity_type], payload)

    def request_sync_cancellation(self, office: OfficeId, entity_type: SyncEntityType) -> bool:
        """Flag a running sync to stop after its current page. False when nothing is running."""
        with self.session_factory() as db:
            requested = sync_status_service.request_cancel(db, office, entity_type.value)
        logger.info(
            "Sync cancellation %s for %s",
            "requested" if requested else "ignored (not running)",
            entity_type.value,
            extra=build_log_context(office_id=office, entity_type=entity_type.value),
        )
        return requested

    # -------------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------------

    async def push_constituent(
        self,
        office: OfficeId,
        constituent_id: str,
        operation: str,
        data: ConstituentPushData | None = None,
        *,
        correlation_id: str | None = None,
    ) -> str | None:
        payload = PushConstituentPayload(
            office_id=office.value,
            constituent_id=constituent_id,
            operation=operation,
            data=data or ConstituentPushData(),
            correlation_id=_correlation_id(correlation_id),
        )
        return await self.jobs.send(JobName.PUSH_CONSTITUENT, payload)

    async def push_case(
        self,
        office: OfficeId,
        case_id: str,
        operation: str,
        data: CasePushData | None = None,
        *,
        correlation_id: str | None = None,
    ) -> str | None:
        payload = PushCasePayload(
            office_id=office.value,
            case_id=case_id,
            operation=operation,
            data=data or CasePushData(),
            correlation_id=_correlation_id(correlation_id),
        )
        return await self.jobs.send(JobName.PUSH_CASE, payload)

    async def push_email(
        self,
        office: OfficeId,
        email_id: str,
        operation: str,
        data: EmailPushData | None = None,
        *,
        correlation_id: str | None = None,
    ) -> str | None:
        payload = PushEmailPayload(
            office_id=office.value,
            email_id=email_id,
            operation=operation,
            data=data or EmailPushData(),
            correlation_id=_correlation_id(correlation_id),
        )
        return await self.jobs.send(JobName.PUSH_EMAIL, payload)

    async def push_casenote(
        self,
        office: OfficeId,
        casenote_id: str,
        operation: str,
        data: CasenotePushData | None = None,
        *,
        case_external_id: int | None = None,
        casenote_external_id: int | None = None,
        correlation_id: str | None = None,
    ) -> str | None:
        payload = PushCasenotePayload(
            office_id=office.value,
            casenote_id=casenote_id,
            case_external_id=case_external_id,
            casenote_external_id=casenote_external_id,
            operation=operation,
            data=data or CasenotePushData(),
            correlation_id=_correlation_id(correlation_id),
        )
        return await self.jobs.send(JobName.PUSH_CASENOTE, payload)

    # -------------------------------------------------------------------------
    # Triage
    # -------------------------------------------------------------------------

    async def schedule_email_processing(
        self,
        office: OfficeId,
        email_id: str,
        *,
        email_external_id: int | None = None,
        from_address: str | None = None,
        subject: str | None = None,
        correlation_id: str | None = None,
    ) -> str | None:
        payload = TriageProcessEmailPayload(
            office_id=office.value,
            email_id=email_id,
            email_external_id=email_external_id,
            from_address=from_address,
            subject=subject,
            correlation_id=_correlation_id(correlation_id),
        )
        return await self.jobs.send(JobName.TRIAGE_PROCESS_EMAIL, payload)

    async def submit_triage_decision(
        self,
        office: OfficeId,
        email_id: str,
        email_external_id: int,
        decision: TriageDecision,
        *,
        correlation_id: str | None = None,
        initiated_by: str | None = None,
    ) -> str | None:
        """Decisions jump the triage queue: a caseworker is waiting on them."""
        payload = TriageSubmitDecisionPayload(
            office_id=office.value,
            email_id=email_id,
            email_external_id=email_external_id,
            decision=decision,
            correlation_id=_correlation_id(correlation_id),
            initiated_by=initiated_by,
        )
        return await self.jobs.send(
            JobName.TRIAGE_SUBMIT_DECISION, payload, JobOptions(priority=DECISION_PRIORITY)
        )

    async def schedule_batch_prefetch(
        self,
        office: OfficeId,
        email_ids: list[str],
        *,
        prefetch_ahead: int | None = None,
        correlation_id: str | None = None,
    ) -> str | None:
        payload = TriageBatchPrefetchPayload(
            office_id=office.value,
            email_ids=email_ids,
            prefetch_ahead=self.prefetch_ahead if prefetch_ahead is None else prefetch_ahead,
            correlation_id=_correlation_id(correlation_id),
        )
        return await self.jobs.send(JobName.TRIAGE_BATCH_PREFETCH, payload)

    def get_cached_triage(self, office: OfficeId, email_id: str) -> TriageCacheEntry | None:
        return self.cache.get(office, email_id)

    # -------------------------------------------------------------------------
    # Recurring schedules
    # -------------------------------------------------------------------------

    async def setup_office_schedules(
        self,
        office: OfficeId,
        *,
        poll_cron: str = "*/5 * * * *",
        full_sync_cron: str = "0 2 * * *",
        cleanup_cron: str | None = "0 3 * * 0",
        cleanup_older_than_days: int = 30,
        timezone: str = "Europe/London",
    ) -> None:
        """Register the poll, nightly sync and weekly cleanup schedules for one office."""
        key = office.value
        await self.jobs.schedule(
            JobName.SCHEDULED_POLL_LEGACY,
            poll_cron,
            ScheduledPollLegacyPayload(office_id=office.value, poll_type=PollType.ALL),
            timezone=timezone,
            key=key,
        )
        await self.jobs.schedule(
            JobName.SCHEDULED_SYNC_OFFICE,
            full_sync_cron,
            ScheduledSyncOfficePayload(office_id=office.value),
            timezone=timezone,
            key=key,
        )
        if cleanup_cron:
            await self.jobs.schedule(
                JobName.SCHEDULED_CLEANUP,
                cleanup_cron,
                ScheduledCleanupPayload(
                    office_id=office.value,
                    cleanup_type=CleanupType.STALE_SYNCS,
                    older_than_days=cleanup_older_than_days,
                ),
                timezone=timezone,
                key=key,
            )
        logger.info("Set up schedules for office", extra=build_log_context(office_id=office))

    async def remove_office_schedules(self, office: OfficeId) -> int:
        removed = 0
        for name in (JobName.SCHEDULED_POLL_LEGACY, JobName.SCHEDULED_SYNC_OFFICE, JobName.SCHEDULED_CLEANUP):
            removed += await self.jobs.unschedule(name, key=office.value)
        logger.info("Removed %s office schedules", removed, extra=build_log_context(office_id=office))
        return removed

    # -------------------------------------------------------------------------
    # Queue management
    # -------------------------------------------------------------------------

    async def get_queue_size(self, name: JobName) -> int:
        return await self.jobs.get_queue_size(name)

    async def get_all_queue_sizes(self) -> dict[str, int]:
        return {name.value: await self.jobs.get_queue_size(name) for name in JobName}

    async def cancel_job(self, job_id: str) -> bool:
        return await self.jobs.cancel(job_id)

    async def get_job(self, job_id: str) -> Job | None:
        return await self.jobs.get_job(job_id)

    async def purge_queue(self, name: JobName) -> int:
        return await self.jobs.purge_queue(name)

    async def health_check(self) -> dict[str, Any]:
        if not self.jobs.is_running():
            return {"healthy": False, "error": "Job store not running"}
        return {
            "healthy": True,
            "queues": await self.get_all_queue_sizes(),
            "cached_triage_entries": len(self.cache),
        }
