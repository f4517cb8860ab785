"""SQLAlchemy ORM models."""

from casework.db.models.jobs import Job, JobQueue, JobSchedule
from casework.db.models.shadow import (
    Case,
    CaseNote,
    Constituent,
    ConstituentContact,
    Email,
    ReferenceDataItem,
)
from casework.db.models.sync import SyncAuditLog, SyncStatus

__all__ = [
    # Queue
    "Job",
    "JobQueue",
    "JobSchedule",
    # Shadow store
    "Case",
    "CaseNote",
    "Constituent",
    "ConstituentContact",
    "Email",
    "ReferenceDataItem",
    # Sync bookkeeping
    "SyncAuditLog",
    "SyncStatus",
]
