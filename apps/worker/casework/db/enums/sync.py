"""Sync, push and scheduling enums."""

from enum import Enum


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncEntityType(str, Enum):
    """Entity types tracked in sync_status."""

    CONSTITUENTS = "constituents"
    CASES = "cases"
    EMAILS = "emails"
    CASENOTES = "casenotes"
    REFERENCE_DATA = "referenceData"


class ReferenceDataKind(str, Enum):
    CASE_TYPES = "caseTypes"
    STATUS_TYPES = "statusTypes"
    CATEGORY_TYPES = "categoryTypes"
    CONTACT_TYPES = "contactTypes"
    CASEWORKERS = "caseworkers"


class EmailType(str, Enum):
    RECEIVED = "received"
    SENT = "sent"
    DRAFT = "draft"
    SCHEDULED = "scheduled"


class PushEntityType(str, Enum):
    CONSTITUENT = "constituent"
    CASE = "case"
    EMAIL = "email"
    CASENOTE = "casenote"


class PushOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    SEND = "send"
    DELETE = "delete"


class PollType(str, Enum):
    EMAILS = "emails"
    CASES = "cases"
    CONSTITUENTS = "constituents"
    ALL = "all"


class CleanupType(str, Enum):
    OLD_JOBS = "old_jobs"
    STALE_SYNCS = "stale_syncs"
    ORPHANED_RECORDS = "orphaned_records"


class HealthCheckType(str, Enum):
    API_CONNECTIVITY = "api_connectivity"
    DATA_INTEGRITY = "data_integrity"
    SYNC_STATUS = "sync_status"
