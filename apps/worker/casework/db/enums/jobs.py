"""Job-related enums."""

from enum import Enum


class JobFamily(str, Enum):
    """Job families, each with its own worker concurrency."""

    SYNC = "sync"
    PUSH = "push"
    TRIAGE = "triage"
    SCHEDULED = "scheduled"
    MAINTENANCE = "maintenance"


class JobName(str, Enum):
    """Queue names for every background job."""

    # Sync: legacy -> shadow store
    SYNC_CONSTITUENTS = "sync:constituents"
    SYNC_CASES = "sync:cases"
    SYNC_EMAILS = "sync:emails"
    SYNC_REFERENCE_DATA = "sync:reference-data"
    SYNC_CASENOTES = "sync:casenotes"
    SYNC_ALL = "sync:all"

    # Push: shadow store -> legacy
    PUSH_CONSTITUENT = "push:constituent"
    PUSH_CASE = "push:case"
    PUSH_EMAIL = "push:email"
    PUSH_CASENOTE = "push:casenote"

    # Triage
    TRIAGE_PROCESS_EMAIL = "triage:process-email"
    TRIAGE_SUBMIT_DECISION = "triage:submit-decision"
    TRIAGE_BATCH_PREFETCH = "triage:batch-prefetch"

    # Scheduled (cron-driven)
    SCHEDULED_POLL_LEGACY = "scheduled:poll-legacy"
    SCHEDULED_SYNC_OFFICE = "scheduled:sync-office"
    SCHEDULED_CLEANUP = "scheduled:cleanup"

    # Maintenance
    MAINTENANCE_RECONCILE = "maintenance:reconcile"
    MAINTENANCE_HEALTH_CHECK = "maintenance:health-check"

    @property
    def family(self) -> JobFamily:
        return JobFamily(self.value.split(":", 1)[0])


class DeadLetterQueue(str, Enum):
    """Terminal queues for jobs that exhausted their retries."""

    PUSH = "dead-letter:push"
    TRIAGE = "dead-letter:triage"


class JobState(str, Enum):
    """Lifecycle state of a queued job."""

    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


LIVE_JOB_STATES = (JobState.CREATED.value, JobState.ACTIVE.value)
TERMINAL_JOB_STATES = (
    JobState.COMPLETED.value,
    JobState.FAILED.value,
    JobState.CANCELLED.value,
    JobState.EXPIRED.value,
)
