"""Enum definitions for queue, sync and triage constants."""

from casework.db.enums.jobs import (
    LIVE_JOB_STATES,
    TERMINAL_JOB_STATES,
    DeadLetterQueue,
    JobFamily,
    JobName,
    JobState,
)
from casework.db.enums.sync import (
    CleanupType,
    EmailType,
    HealthCheckType,
    PollType,
    PushEntityType,
    PushOperation,
    ReferenceDataKind,
    SyncEntityType,
    SyncMode,
)
from casework.db.enums.triage import MatchType, TriageAction, TriageStatus, Urgency

__all__ = [
    # Jobs
    "DeadLetterQueue",
    "JobFamily",
    "JobName",
    "JobState",
    "LIVE_JOB_STATES",
    "TERMINAL_JOB_STATES",
    # Sync / push / scheduling
    "CleanupType",
    "EmailType",
    "HealthCheckType",
    "PollType",
    "PushEntityType",
    "PushOperation",
    "ReferenceDataKind",
    "SyncEntityType",
    "SyncMode",
    # Triage
    "MatchType",
    "TriageAction",
    "TriageStatus",
    "Urgency",
]
