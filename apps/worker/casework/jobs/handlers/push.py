"""Push job handlers (shadow store -> legacy system)."""

from __future__ import annotations

from casework.jobs.dependencies import WorkerDependencies
from casework.schemas.jobs import PushJobResult, parse_job_payload
from casework.services.push_service import PushService


async def process_push_constituent(db, job, deps: WorkerDependencies) -> PushJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await PushService(db, deps.legacy_api).push_constituent(payload)


async def process_push_case(db, job, deps: WorkerDependencies) -> PushJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await PushService(db, deps.legacy_api).push_case(payload)


async def process_push_email(db, job, deps: WorkerDependencies) -> PushJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await PushService(db, deps.legacy_api).push_email(payload)


async def process_push_casenote(db, job, deps: WorkerDependencies) -> PushJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await PushService(db, deps.legacy_api).push_casenote(payload)
