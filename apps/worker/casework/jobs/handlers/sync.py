"""Sync job handlers."""

from __future__ import annotations

import logging

from casework.db.enums import SyncEntityType
from casework.jobs.dependencies import WorkerDependencies
from casework.schemas.jobs import SyncJobResult, parse_job_payload
from casework.services.sync_service import SyncService

logger = logging.getLogger(__name__)


def _service(db, deps: WorkerDependencies) -> SyncService:
    return SyncService(
        db,
        deps.legacy_api,
        deps.jobs,
        batch_size=deps.settings.SYNC_BATCH_SIZE,
        stale_after_minutes=deps.settings.SYNC_STALE_AFTER_MINUTES,
        default_lookback_hours=deps.settings.SYNC_DEFAULT_LOOKBACK_HOURS,
    )


async def _process_page(db, job, deps: WorkerDependencies, entity_type: SyncEntityType) -> SyncJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await _service(db, deps).execute_page(payload.office, entity_type, payload)


async def process_sync_constituents(db, job, deps: WorkerDependencies) -> SyncJobResult:
    return await _process_page(db, job, deps, SyncEntityType.CONSTITUENTS)


async def process_sync_cases(db, job, deps: WorkerDependencies) -> SyncJobResult:
    return await _process_page(db, job, deps, SyncEntityType.CASES)


async def process_sync_emails(db, job, deps: WorkerDependencies) -> SyncJobResult:
    return await _process_page(db, job, deps, SyncEntityType.EMAILS)


async def process_sync_casenotes(db, job, deps: WorkerDependencies) -> SyncJobResult:
    """Case notes page like the other entities, optionally narrowed to one case."""
    return await _process_page(db, job, deps, SyncEntityType.CASENOTES)


async def process_sync_reference_data(db, job, deps: WorkerDependencies) -> SyncJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await _service(db, deps).sync_reference_data(payload.office, payload.entities)


async def process_sync_all(db, job, deps: WorkerDependencies) -> dict:
    """Fan out one sync:all request into its child sync jobs."""
    payload = parse_job_payload(job.name, job.payload or {})
    logger.info("Fanning out sync:all (%s) for job %s", payload.mode.value, job.id)
    return {"jobs": await _service(db, deps).fan_out_sync_all(payload)}
