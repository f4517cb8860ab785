"""Maintenance job handlers."""

from __future__ import annotations

from casework.jobs.dependencies import WorkerDependencies
from casework.schemas.jobs import ScheduledJobResult, parse_job_payload
from casework.services.maintenance_service import MaintenanceService


def _service(db, deps: WorkerDependencies) -> MaintenanceService:
    return MaintenanceService(
        db,
        deps.legacy_api,
        page_size=deps.settings.SYNC_BATCH_SIZE,
        stale_after_minutes=deps.settings.SYNC_STALE_AFTER_MINUTES,
    )


async def process_reconcile(db, job, deps: WorkerDependencies) -> ScheduledJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await _service(db, deps).reconcile(payload)


async def process_health_check(db, job, deps: WorkerDependencies) -> ScheduledJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await _service(db, deps).health_check(payload)
