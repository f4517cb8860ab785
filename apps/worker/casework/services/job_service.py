"""Job service - row-level primitives for the durable job queue.

Every function takes a ``Session`` and commits its own unit of work. The
``JobStoreClient`` builds the worker-facing lifecycle on top of these.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from casework.db.enums import LIVE_JOB_STATES, TERMINAL_JOB_STATES, JobState
from casework.db.models import Job, JobQueue, JobSchedule
from casework.jobs.policies import JobPolicy
from casework.utils.datetime_parsing import to_utc, utcnow


class QueueNotProvisionedError(RuntimeError):
    """Submission to a queue that was never created. Configuration fault, never retried."""

    def __init__(self, name: str):
        super().__init__(f"Queue '{name}' is not provisioned")
        self.name = name


# =============================================================================
# Queues
# =============================================================================


def ensure_queue(db: Session, name: str) -> None:
    """Provision a queue (idempotent)."""
    if db.get(JobQueue, name) is not None:
        return
    db.add(JobQueue(name=name))
    try:
        db.commit()
    except IntegrityError:
        # Another worker provisioned it first.
        db.rollback()


def queue_exists(db: Session, name: str) -> bool:
    return db.get(JobQueue, name) is not None


# =============================================================================
# Submission
# =============================================================================


def insert_job(
    db: Session,
    name: str,
    payload: dict[str, Any],
    policy: JobPolicy,
    *,
    office_id: uuid.UUID | None = None,
    priority: int = 0,
    start_after: datetime | None = None,
    singleton_key: str | None = None,
) -> Job | None:
    """
    Insert a job in ``created`` state.

    Returns None when ``singleton_key`` collides with a live job, or with any
    non-cancelled job created inside ``policy.singleton_seconds``. Raises
    ``QueueNotProvisionedError`` for unknown queues.
    """
    if not queue_exists(db, name):
        raise QueueNotProvisionedError(name)

    now = utcnow()
    if singleton_key and policy.singleton_seconds:
        window_start = now - timedelta(seconds=policy.singleton_seconds)
        recent = db.scalar(
            select(Job.id)
            .where(
                Job.name == name,
                Job.singleton_key == singleton_key,
                Job.state != JobState.CANCELLED.value,
                Job.created_at >= window_start,
            )
            .limit(1)
        )
        if recent is not None:
            return None

    job = Job(
        name=name,
        office_id=office_id,
        payload=payload,
        state=JobState.CREATED.value,
        priority=priority,
        retry_limit=policy.retry_limit,
        retry_delay_seconds=policy.retry_delay_seconds,
        retry_backoff=policy.retry_backoff,
        expire_in_seconds=policy.expire_in_seconds,
        dead_letter=policy.dead_letter,
        singleton_key=singleton_key,
        start_after=start_after or now,
        created_at=now,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        # Partial unique index: a live job already holds this singleton key.
        db.rollback()
        return None
    db.refresh(job)
    return job


# =============================================================================
# Leasing and state transitions
# =============================================================================


def fetch_jobs(db: Session, name: str, batch_size: int = 1) -> list[Job]:
    """
    Lease up to ``batch_size`` due jobs from a queue.

    Uses ``FOR UPDATE SKIP LOCKED`` so concurrent workers never lease the
    same row (the clause compiles to nothing on SQLite).
    """
    now = utcnow()
    jobs = list(
        db.scalars(
            select(Job)
            .where(
                Job.name == name,
                Job.state == JobState.CREATED.value,
                Job.start_after <= now,
            )
            .order_by(Job.priority.desc(), Job.start_after, Job.created_at)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
    )
    for job in jobs:
        job.state = JobState.ACTIVE.value
        job.started_at = now
        job.attempts += 1
    db.commit()
    return jobs


def get_job(db: Session, job_id: uuid.UUID) -> Job | None:
    return db.get(Job, job_id)


def complete_job(db: Session, job_id: uuid.UUID, output: dict[str, Any] | None = None) -> Job | None:
    """Mark a leased job completed and store its output."""
    job = db.get(Job, job_id)
    if job is None or job.state in TERMINAL_JOB_STATES:
        return job
    job.state = JobState.COMPLETED.value
    job.completed_at = utcnow()
    job.output = output
    job.last_error = None
    db.commit()
    db.refresh(job)
    return job


def fail_job(db: Session, job_id: uuid.UUID, error: str, *, expired: bool = False) -> Job | None:
    """
    Record a failed attempt.

    With retry budget left the job goes back to ``created`` after the policy
    delay. Otherwise it becomes ``failed`` (or ``expired`` for timeouts) and a
    copy is written to its dead-letter queue if one is configured.
    """
    job = db.get(Job, job_id)
    if job is None or job.state in TERMINAL_JOB_STATES:
        return job

    now = utcnow()
    job.last_error = error
    if job.attempts <= job.retry_limit:
        policy = JobPolicy(
            retry_delay_seconds=job.retry_delay_seconds, retry_backoff=job.retry_backoff
        )
        job.state = JobState.CREATED.value
        job.started_at = None
        job.start_after = now + timedelta(seconds=policy.retry_delay_for(job.attempts))
    else:
        job.state = JobState.EXPIRED.value if expired else JobState.FAILED.value
        job.completed_at = now
        if job.dead_letter:
            db.add(
                Job(
                    name=job.dead_letter,
                    office_id=job.office_id,
                    payload={
                        "original_job_id": str(job.id),
                        "original_name": job.name,
                        "payload": job.payload,
                        "error": error,
                        "attempts": job.attempts,
                    },
                    state=JobState.CREATED.value,
                    retry_limit=0,
                    expire_in_seconds=job.expire_in_seconds,
                    start_after=now,
                    created_at=now,
                )
            )
    db.commit()
    db.refresh(job)
    return job


def find_expired_leases(db: Session) -> list[Job]:
    """Active jobs whose lease outlived ``started_at + expire_in_seconds``."""
    now = utcnow()
    active = db.scalars(select(Job).where(Job.state == JobState.ACTIVE.value)).all()
    return [
        job
        for job in active
        if job.started_at is not None
        and to_utc(job.started_at) + timedelta(seconds=job.expire_in_seconds) < now
    ]


def cancel_job(db: Session, job_id: uuid.UUID) -> bool:
    job = db.get(Job, job_id)
    if job is None or job.state not in LIVE_JOB_STATES:
        return False
    job.state = JobState.CANCELLED.value
    job.completed_at = utcnow()
    db.commit()
    return True


def resume_job(db: Session, job_id: uuid.UUID) -> bool:
    """Move a cancelled job back to ``created``."""
    job = db.get(Job, job_id)
    if job is None or job.state != JobState.CANCELLED.value:
        return False
    job.state = JobState.CREATED.value
    job.completed_at = None
    job.start_after = utcnow()
    try:
        db.commit()
    except IntegrityError:
        # A newer live job took the singleton key meanwhile.
        db.rollback()
        return False
    return True


# =============================================================================
# Introspection and housekeeping
# =============================================================================


def count_queued(db: Session, name: str) -> int:
    return db.scalar(
        select(func.count())
        .select_from(Job)
        .where(Job.name == name, Job.state == JobState.CREATED.value)
    ) or 0


def purge_queue(db: Session, name: str) -> int:
    """Delete every job still waiting in ``created``."""
    result = db.execute(
        delete(Job).where(Job.name == name, Job.state == JobState.CREATED.value).execution_options(
            synchronize_session=False
        )
    )
    db.commit()
    return result.rowcount or 0


def delete_terminal_jobs(
    db: Session, older_than: datetime, office_id: uuid.UUID | None = None
) -> int:
    """Delete completed/failed/cancelled/expired jobs created before ``older_than``."""
    stmt = delete(Job).where(Job.state.in_(TERMINAL_JOB_STATES), Job.created_at < older_than)
    if office_id is not None:
        stmt = stmt.where(Job.office_id == office_id)
    result = db.execute(stmt.execution_options(synchronize_session=False))
    db.commit()
    return result.rowcount or 0


# =============================================================================
# Cron schedules
# =============================================================================


def next_cron_run(cron: str, timezone: str, after: datetime) -> datetime:
    """Next fire time of ``cron`` evaluated in ``timezone``, returned in UTC."""
    local_after = to_utc(after).astimezone(ZoneInfo(timezone))
    return to_utc(croniter(cron, local_after).get_next(datetime))


def upsert_schedule(
    db: Session,
    name: str,
    cron: str,
    payload: dict[str, Any],
    *,
    timezone: str = "UTC",
    key: str = "",
    options: dict[str, Any] | None = None,
) -> JobSchedule:
    if not croniter.is_valid(cron):
        raise ValueError(f"Invalid cron expression: {cron}")
    if not queue_exists(db, name):
        raise QueueNotProvisionedError(name)

    next_run_at = next_cron_run(cron, timezone, utcnow())
    schedule = db.get(JobSchedule, (name, key))
    if schedule is None:
        schedule = JobSchedule(name=name, key=key)
        db.add(schedule)
    schedule.cron = cron
    schedule.timezone = timezone
    schedule.payload = payload
    schedule.options = options
    schedule.next_run_at = next_run_at
    db.commit()
    db.refresh(schedule)
    return schedule


def delete_schedules(db: Session, name: str, key: str | None = None) -> int:
    stmt = delete(JobSchedule).where(JobSchedule.name == name)
    if key is not None:
        stmt = stmt.where(JobSchedule.key == key)
    result = db.execute(stmt.execution_options(synchronize_session=False))
    db.commit()
    return result.rowcount or 0


def claim_due_schedules(db: Session) -> list[JobSchedule]:
    """
    Return schedules whose ``next_run_at`` has passed and advance them.

    Rows are locked with SKIP LOCKED so only one worker process fires each
    occurrence.
    """
    now = utcnow()
    due = list(
        db.scalars(
            select(JobSchedule)
            .where(JobSchedule.next_run_at <= now)
            .with_for_update(skip_locked=True)
        )
    )
    for schedule in due:
        schedule.last_run_at = now
        schedule.next_run_at = next_cron_run(schedule.cron, schedule.timezone, now)
    db.commit()
    return due
