"""Retry, expiry and singleton policy per job.

``JOB_POLICIES`` is the only place retry behaviour is defined. Handlers never
set their own retry options.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from types import MappingProxyType
from typing import Mapping

from casework.db.enums import DeadLetterQueue, JobFamily, JobName

DEFAULT_SINGLETON_SECONDS = 300


@dataclass(frozen=True)
class JobPolicy:
    retry_limit: int = 0
    retry_delay_seconds: int = 0
    retry_backoff: bool = False
    expire_in_seconds: int = 900
    singleton_seconds: int | None = None
    dead_letter: str | None = None

    def retry_delay_for(self, attempt: int) -> int:
        """Seconds to wait before retrying after ``attempt`` failed attempts."""
        if self.retry_backoff and attempt > 0:
            return self.retry_delay_seconds * 2 ** (attempt - 1)
        return self.retry_delay_seconds


@dataclass(frozen=True)
class JobOptions:
    """Per-submission overrides. ``None`` means "use the policy value"."""

    priority: int | None = None
    start_after: datetime | None = None
    singleton_key: str | None = None
    singleton_seconds: int | None = None
    retry_limit: int | None = None
    retry_delay_seconds: int | None = None
    retry_backoff: bool | None = None
    expire_in_seconds: int | None = None
    dead_letter: str | None = None


_SYNC = JobPolicy(retry_limit=3, retry_delay_seconds=60, retry_backoff=True, expire_in_seconds=3600)
_PUSH = JobPolicy(
    retry_limit=5,
    retry_delay_seconds=30,
    retry_backoff=True,
    expire_in_seconds=300,
    dead_letter=DeadLetterQueue.PUSH.value,
)
_MAINTENANCE = JobPolicy(retry_limit=1, retry_delay_seconds=60, expire_in_seconds=1800)

JOB_POLICIES: Mapping[JobName, JobPolicy] = MappingProxyType(
    {
        # Sync
        JobName.SYNC_CONSTITUENTS: _SYNC,
        JobName.SYNC_CASES: _SYNC,
        JobName.SYNC_EMAILS: _SYNC,
        JobName.SYNC_CASENOTES: _SYNC,
        JobName.SYNC_REFERENCE_DATA: JobPolicy(
            retry_limit=3, retry_delay_seconds=30, expire_in_seconds=600
        ),
        JobName.SYNC_ALL: JobPolicy(retry_limit=3, retry_delay_seconds=30, expire_in_seconds=300),
        # Push
        JobName.PUSH_CONSTITUENT: _PUSH,
        JobName.PUSH_CASE: _PUSH,
        JobName.PUSH_EMAIL: _PUSH,
        JobName.PUSH_CASENOTE: _PUSH,
        # Triage
        JobName.TRIAGE_PROCESS_EMAIL: JobPolicy(
            retry_limit=2, retry_delay_seconds=10, expire_in_seconds=120
        ),
        JobName.TRIAGE_SUBMIT_DECISION: JobPolicy(
            retry_limit=3,
            retry_delay_seconds=30,
            retry_backoff=True,
            expire_in_seconds=300,
            dead_letter=DeadLetterQueue.TRIAGE.value,
        ),
        JobName.TRIAGE_BATCH_PREFETCH: JobPolicy(
            retry_limit=1, retry_delay_seconds=10, expire_in_seconds=120
        ),
        # Scheduled
        JobName.SCHEDULED_POLL_LEGACY: JobPolicy(
            retry_limit=1, expire_in_seconds=300, singleton_seconds=240
        ),
        JobName.SCHEDULED_SYNC_OFFICE: JobPolicy(
            retry_limit=1, expire_in_seconds=7200, singleton_seconds=7000
        ),
        JobName.SCHEDULED_CLEANUP: JobPolicy(
            retry_limit=1, expire_in_seconds=1800, singleton_seconds=3600
        ),
        # Maintenance
        JobName.MAINTENANCE_RECONCILE: _MAINTENANCE,
        JobName.MAINTENANCE_HEALTH_CHECK: _MAINTENANCE,
    }
)

# Dead-letter queues only hold jobs for inspection.
DEAD_LETTER_POLICY = JobPolicy(retry_limit=0, expire_in_seconds=900)


def get_policy(name: str) -> JobPolicy:
    try:
        return JOB_POLICIES[JobName(name)]
    except ValueError:
        return DEAD_LETTER_POLICY


def resolve_policy(name: str, options: JobOptions | None = None) -> JobPolicy:
    """Merge per-call overrides onto the registered policy."""
    policy = get_policy(name)
    if options is None:
        return policy
    overrides = {
        field: getattr(options, field)
        for field in (
            "retry_limit",
            "retry_delay_seconds",
            "retry_backoff",
            "expire_in_seconds",
            "singleton_seconds",
            "dead_letter",
        )
        if getattr(options, field) is not None
    }
    return replace(policy, **overrides) if overrides else policy


def default_concurrency(name: JobName, concurrency_by_family: Mapping[str, int]) -> int:
    """Worker tasks per queue. Casenote pushes run narrower than other pushes."""
    if name is JobName.PUSH_CASENOTE:
        return max(1, min(2, concurrency_by_family.get(JobFamily.PUSH.value, 2)))
    return max(1, concurrency_by_family.get(name.family.value, 1))


def singleton_key_for(office_id: str, name: JobName | str) -> str:
    return f"{office_id}:{JobName(name).value}"
