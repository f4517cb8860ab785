"""Scheduled (cron-driven) job handlers."""

from __future__ import annotations

from casework.jobs.dependencies import WorkerDependencies
from casework.schemas.jobs import ScheduledJobResult, parse_job_payload
from casework.services.scheduled_service import ScheduledService


def _service(db, deps: WorkerDependencies) -> ScheduledService:
    return ScheduledService(
        db,
        deps.legacy_api,
        deps.jobs,
        default_lookback_hours=deps.settings.POLL_DEFAULT_LOOKBACK_HOURS,
    )


async def process_poll_legacy(db, job, deps: WorkerDependencies) -> ScheduledJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await _service(db, deps).poll_legacy(payload)


async def process_sync_office(db, job, deps: WorkerDependencies) -> ScheduledJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await _service(db, deps).sync_office(payload)


async def process_cleanup(db, job, deps: WorkerDependencies) -> ScheduledJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await _service(db, deps).cleanup(payload)
