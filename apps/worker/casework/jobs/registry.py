"""Job handler registry."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping

from casework.db.enums import JobName
from casework.jobs.handlers import maintenance, push, scheduled, sync, triage

JobHandler = Callable[[object, object, object], Awaitable[Any]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobName.SYNC_CONSTITUENTS.value: sync.process_sync_constituents,
    JobName.SYNC_CASES.value: sync.process_sync_cases,
    JobName.SYNC_EMAILS.value: sync.process_sync_emails,
    JobName.SYNC_CASENOTES.value: sync.process_sync_casenotes,
    JobName.SYNC_REFERENCE_DATA.value: sync.process_sync_reference_data,
    JobName.SYNC_ALL.value: sync.process_sync_all,
    JobName.PUSH_CONSTITUENT.value: push.process_push_constituent,
    JobName.PUSH_CASE.value: push.process_push_case,
    JobName.PUSH_EMAIL.value: push.process_push_email,
    JobName.PUSH_CASENOTE.value: push.process_push_casenote,
    JobName.TRIAGE_PROCESS_EMAIL.value: triage.process_triage_email,
    JobName.TRIAGE_SUBMIT_DECISION.value: triage.process_triage_decision,
    JobName.TRIAGE_BATCH_PREFETCH.value: triage.process_triage_prefetch,
    JobName.SCHEDULED_POLL_LEGACY.value: scheduled.process_poll_legacy,
    JobName.SCHEDULED_SYNC_OFFICE.value: scheduled.process_sync_office,
    JobName.SCHEDULED_CLEANUP.value: scheduled.process_cleanup,
    JobName.MAINTENANCE_RECONCILE.value: maintenance.process_reconcile,
    JobName.MAINTENANCE_HEALTH_CHECK.value: maintenance.process_health_check,
}


def resolve_job_handler(job_name: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_name)
    if not handler:
        raise ValueError(f"Unknown job type: {job_name}")
    return handler
