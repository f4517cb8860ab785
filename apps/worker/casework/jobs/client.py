"""Typed client over the durable job queue.

Owns the queue lifecycle: provisioning, submission, cron firing, leasing jobs
to registered handlers and recovering leases whose worker died.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterator, Mapping, Protocol

from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from casework.core.structured_logging import build_log_context
from casework.db.enums import DeadLetterQueue, JobName, JobState
from casework.db.models import Job, JobSchedule
from casework.jobs.policies import (
    DEFAULT_SINGLETON_SECONDS,
    JobOptions,
    resolve_policy,
    singleton_key_for,
)
from casework.services import job_service
from casework.services.job_service import QueueNotProvisionedError
from casework.utils.datetime_parsing import utcnow

JobHandler = Callable[[Job], Awaitable[Any]]

__all__ = [
    "JobHandler",
    "JobSender",
    "JobStoreClient",
    "JobStoreNotStartedError",
    "QueueNotProvisionedError",
]


class JobStoreNotStartedError(RuntimeError):
    """Raised when the client is used before ``start()``."""


class JobSender(Protocol):
    """Submission side of the job store, as seen by services that enqueue follow-up work."""

    async def send(
        self, name: JobName | str, payload: BaseModel | Mapping[str, Any], options: JobOptions | None = None
    ) -> str | None: ...

    async def send_batch(
        self, jobs: list[tuple[JobName | str, BaseModel | Mapping[str, Any], JobOptions | None]]
    ) -> list[str | None]: ...

    async def send_singleton(
        self, name: JobName, payload: BaseModel | Mapping[str, Any], options: JobOptions | None = None
    ) -> str | None: ...


@dataclass
class _Registration:
    name: str
    handler: JobHandler
    concurrency: int


def _queue_name(name: JobName | str) -> str:
    return name.value if isinstance(name, JobName) else str(name)


def _job_uuid(job_id: str | uuid.UUID) -> uuid.UUID:
    return job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))


def _payload_dict(payload: BaseModel | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", exclude_none=True)
    return dict(payload)


def _office_uuid(payload: Mapping[str, Any]) -> uuid.UUID | None:
    office_id = payload.get("office_id")
    if not office_id:
        return None
    try:
        return uuid.UUID(str(office_id))
    except ValueError:
        return None


def _to_output(result: Any) -> dict[str, Any] | None:
    if result is None:
        return None
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if isinstance(result, dict):
        return result
    return {"value": result}


class JobStoreClient:
    """
    Job store with start/stop lifecycle.

    ``start()`` provisions every queue and launches consumer, scheduler and
    maintenance tasks on the running event loop. ``stop()`` stops leasing,
    lets in-flight handlers finish, then returns.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        poll_interval_seconds: float = 2.0,
        maintenance_interval_seconds: float = 60.0,
        delete_after_days: int = 7,
        logger: logging.Logger | None = None,
    ):
        self._session_factory = session_factory
        self._poll_interval = poll_interval_seconds
        self._maintenance_interval = maintenance_interval_seconds
        self._delete_after_days = delete_after_days
        self._logger = logger or logging.getLogger(__name__)

        self._registrations: dict[str, _Registration] = {}
        self._consumer_tasks: list[asyncio.Task] = []
        self._background_tasks: list[asyncio.Task] = []
        self._stopping: asyncio.Event | None = None
        self._started = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._session_factory() as db:
            yield db

    def _require_started(self) -> None:
        if not self._started:
            raise JobStoreNotStartedError("Job store client not started. Call start() first.")

    async def start(self) -> None:
        if self._started:
            return
        with self._session() as db:
            for name in JobName:
                job_service.ensure_queue(db, name.value)
            for dead_letter in DeadLetterQueue:
                job_service.ensure_queue(db, dead_letter.value)

        self._stopping = asyncio.Event()
        self._started = True
        for registration in self._registrations.values():
            self._spawn_consumers(registration)
        self._background_tasks = [
            asyncio.create_task(self._scheduler_loop(), name="jobs:scheduler"),
            asyncio.create_task(self._maintenance_loop(), name="jobs:maintenance"),
        ]
        self._logger.info("Job store started (%s workers registered)", len(self._registrations))

    async def stop(self) -> None:
        if not self._started:
            return
        assert self._stopping is not None
        self._stopping.set()
        # Consumers exit after their current job; nothing is interrupted.
        await asyncio.gather(*self._consumer_tasks, return_exceptions=True)
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._consumer_tasks = []
        self._background_tasks = []
        self._started = False
        self._logger.info("Job store stopped")

    def is_running(self) -> bool:
        return self._started

    async def create_queue(self, name: str) -> None:
        with self._session() as db:
            job_service.ensure_queue(db, name)

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def send(
        self,
        name: JobName | str,
        payload: BaseModel | Mapping[str, Any],
        options: JobOptions | None = None,
    ) -> str | None:
        """
        Submit one job.

        Returns the job id, or None when the singleton key is already taken
        ("already scheduled"). Every other failure raises.
        """
        self._require_started()
        queue = _queue_name(name)
        data = _payload_dict(payload)
        policy = resolve_policy(queue, options)
        with self._session() as db:
            job = job_service.insert_job(
                db,
                queue,
                data,
                policy,
                office_id=_office_uuid(data),
                priority=(options.priority if options and options.priority is not None else 0),
                start_after=options.start_after if options else None,
                singleton_key=options.singleton_key if options else None,
            )
        if job is None:
            self._logger.debug(
                "Job %s not queued: singleton key already held",
                queue,
                extra=build_log_context(office_id=data.get("office_id"), job_name=queue),
            )
            return None
        return str(job.id)

    async def send_batch(
        self,
        jobs: list[tuple[JobName | str, BaseModel | Mapping[str, Any], JobOptions | None]],
    ) -> list[str | None]:
        return [await self.send(name, payload, options) for name, payload, options in jobs]

    async def send_singleton(
        self,
        name: JobName,
        payload: BaseModel | Mapping[str, Any],
        options: JobOptions | None = None,
    ) -> str | None:
        """Office-scoped singleton submission (key ``"{office_id}:{name}"``)."""
        data = _payload_dict(payload)
        office_id = data.get("office_id")
        if not office_id:
            raise ValueError("Singleton submission requires office_id in the payload")
        base = options or JobOptions()
        merged = JobOptions(
            priority=base.priority,
            start_after=base.start_after,
            singleton_key=singleton_key_for(str(office_id), name),
            singleton_seconds=base.singleton_seconds or DEFAULT_SINGLETON_SECONDS,
            retry_limit=base.retry_limit,
            retry_delay_seconds=base.retry_delay_seconds,
            retry_backoff=base.retry_backoff,
            expire_in_seconds=base.expire_in_seconds,
            dead_letter=base.dead_letter,
        )
        return await self.send(name, data, merged)

    # -------------------------------------------------------------------------
    # Schedules
    # -------------------------------------------------------------------------

    async def schedule(
        self,
        name: JobName,
        cron: str,
        payload: BaseModel | Mapping[str, Any],
        *,
        timezone: str = "UTC",
        key: str = "",
    ) -> JobSchedule:
        self._require_started()
        with self._session() as db:
            schedule = job_service.upsert_schedule(
                db, _queue_name(name), cron, _payload_dict(payload), timezone=timezone, key=key
            )
        self._logger.info("Scheduled %s (key=%s) with cron: %s", schedule.name, key or "-", cron)
        return schedule

    async def unschedule(self, name: JobName, key: str | None = None) -> int:
        self._require_started()
        with self._session() as db:
            removed = job_service.delete_schedules(db, _queue_name(name), key)
        self._logger.info("Unscheduled %s (key=%s, removed=%s)", _queue_name(name), key or "*", removed)
        return removed

    # -------------------------------------------------------------------------
    # Consumption
    # -------------------------------------------------------------------------

    def work(self, name: JobName | str, handler: JobHandler, concurrency: int = 1) -> str:
        """Register ``handler`` for a queue. Consumers start with the client."""
        queue = _queue_name(name)
        if queue in self._registrations:
            raise ValueError(f"A worker is already registered for {queue}")
        registration = _Registration(name=queue, handler=handler, concurrency=max(1, concurrency))
        self._registrations[queue] = registration
        if self._started:
            self._spawn_consumers(registration)
        return queue

    def _spawn_consumers(self, registration: _Registration) -> None:
        for index in range(registration.concurrency):
            self._consumer_tasks.append(
                asyncio.create_task(
                    self._consume(registration),
                    name=f"jobs:{registration.name}:{index}",
                )
            )

    async def _consume(self, registration: _Registration) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                with self._session() as db:
                    jobs = job_service.fetch_jobs(db, registration.name, batch_size=1)
            except Exception:
                self._logger.exception("Error leasing jobs from %s", registration.name)
                jobs = []

            if not jobs:
                await self._idle(self._poll_interval)
                continue

            for job in jobs:
                await self.execute(job, registration.handler)

    async def execute(self, job: Job, handler: JobHandler) -> Job | None:
        """Run ``handler`` for a leased job and settle its state."""
        context = build_log_context(
            office_id=job.office_id,
            job_id=job.id,
            job_name=job.name,
            correlation_id=(job.payload or {}).get("correlation_id"),
            attempt=job.attempts,
        )
        self._logger.info("Processing job %s (%s, attempt=%s)", job.id, job.name, job.attempts, extra=context)
        try:
            result = await asyncio.wait_for(handler(job), timeout=job.expire_in_seconds)
        except asyncio.TimeoutError:
            message = f"Job exceeded expiry of {job.expire_in_seconds}s"
            self._logger.error("Job %s expired: %s", job.id, message, extra=context)
            with self._session() as db:
                return job_service.fail_job(db, job.id, message, expired=True)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            self._logger.error("Job %s failed: %s", job.id, message, extra=context)
            with self._session() as db:
                settled = job_service.fail_job(db, job.id, message)
            if settled is not None and settled.dead_letter and settled.state == JobState.FAILED.value:
                self._logger.warning(
                    "Job %s exhausted retries; moved to %s", job.id, settled.dead_letter, extra=context
                )
            return settled

        with self._session() as db:
            settled = job_service.complete_job(db, job.id, _to_output(result))
        self._logger.info("Job %s completed", job.id, extra=context)
        return settled

    async def _idle(self, seconds: float) -> None:
        assert self._stopping is not None
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # -------------------------------------------------------------------------
    # Direct job control
    # -------------------------------------------------------------------------

    async def fetch(self, name: JobName | str, batch_size: int = 1) -> list[Job]:
        self._require_started()
        queue = _queue_name(name)
        with self._session() as db:
            return job_service.fetch_jobs(db, queue, batch_size=batch_size)

    async def complete(self, job_id: str | uuid.UUID, output: Any = None) -> Job | None:
        with self._session() as db:
            return job_service.complete_job(db, _job_uuid(job_id), _to_output(output))

    async def fail(self, job_id: str | uuid.UUID, error: Exception | str) -> Job | None:
        message = f"{type(error).__name__}: {error}" if isinstance(error, Exception) else error
        with self._session() as db:
            return job_service.fail_job(db, _job_uuid(job_id), message)

    async def cancel(self, job_id: str | uuid.UUID) -> bool:
        with self._session() as db:
            return job_service.cancel_job(db, _job_uuid(job_id))

    async def resume(self, job_id: str | uuid.UUID) -> bool:
        with self._session() as db:
            return job_service.resume_job(db, _job_uuid(job_id))

    async def get_job(self, job_id: str | uuid.UUID) -> Job | None:
        with self._session() as db:
            return job_service.get_job(db, _job_uuid(job_id))

    async def get_queue_size(self, name: JobName | str) -> int:
        queue = _queue_name(name)
        with self._session() as db:
            return job_service.count_queued(db, queue)

    async def purge_queue(self, name: JobName | str) -> int:
        queue = _queue_name(name)
        with self._session() as db:
            removed = job_service.purge_queue(db, queue)
        self._logger.info("Purged %s queued jobs from %s", removed, queue)
        return removed

    # -------------------------------------------------------------------------
    # Background loops
    # -------------------------------------------------------------------------

    async def fire_due_schedules(self) -> list[str | None]:
        """Submit one job for every schedule whose next run has passed."""
        with self._session() as db:
            due = job_service.claim_due_schedules(db)
        submitted: list[str | None] = []
        for schedule in due:
            office_id = schedule.payload.get("office_id")
            key = singleton_key_for(str(office_id), schedule.name) if office_id else schedule.name
            job_id = await self.send(schedule.name, schedule.payload, JobOptions(singleton_key=key))
            if job_id is None:
                self._logger.info(
                    "Skipped scheduled %s: previous run still in progress",
                    schedule.name,
                    extra=build_log_context(office_id=office_id, job_name=schedule.name),
                )
            submitted.append(job_id)
        return submitted

    async def recover_expired(self) -> int:
        """Fail (and so retry or expire) active jobs whose lease has run out."""
        with self._session() as db:
            stale = job_service.find_expired_leases(db)
            for job in stale:
                self._logger.warning(
                    "Recovering expired lease for job %s",
                    job.id,
                    extra=build_log_context(office_id=job.office_id, job_id=job.id, job_name=job.name),
                )
                job_service.fail_job(db, job.id, "Lease expired before completion", expired=True)
        return len(stale)

    async def delete_old_jobs(self, older_than: datetime | None = None) -> int:
        cutoff = older_than or utcnow() - timedelta(days=self._delete_after_days)
        with self._session() as db:
            return job_service.delete_terminal_jobs(db, cutoff)

    async def _scheduler_loop(self) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                await self.fire_due_schedules()
            except Exception:
                self._logger.exception("Error firing scheduled jobs")
            await self._idle(self._poll_interval)

    async def _maintenance_loop(self) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                await self.recover_expired()
                await self.delete_old_jobs()
            except Exception:
                self._logger.exception("Error in job store maintenance")
            await self._idle(self._maintenance_interval)
