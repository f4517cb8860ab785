"""Triage job handlers."""

from __future__ import annotations

from casework.jobs.dependencies import WorkerDependencies
from casework.schemas.jobs import parse_job_payload
from casework.schemas.triage import TriageDecisionResult, TriageJobResult
from casework.services.triage_service import TriageService


def _service(db, deps: WorkerDependencies) -> TriageService:
    return TriageService(
        db,
        deps.legacy_api,
        deps.jobs,
        deps.cache,
        deps.llm_service,
        email_contact_type_id=deps.settings.EMAIL_CONTACT_TYPE_ID,
    )


async def process_triage_email(db, job, deps: WorkerDependencies) -> TriageJobResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await _service(db, deps).process_email(payload)


async def process_triage_decision(db, job, deps: WorkerDependencies) -> TriageDecisionResult:
    payload = parse_job_payload(job.name, job.payload or {})
    return await _service(db, deps).submit_decision(payload)


async def process_triage_prefetch(db, job, deps: WorkerDependencies) -> dict:
    payload = parse_job_payload(job.name, job.payload or {})
    return await _service(db, deps).prefetch(payload)
