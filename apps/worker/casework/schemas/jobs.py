"""Pydantic payloads for every background job.

Each payload carries a ``type`` discriminator equal to its queue name, so a
stored job can be validated back into the right variant with
``parse_job_payload``.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from casework.core.identifiers import OfficeId
from casework.db.enums import (
    CleanupType,
    EmailType,
    HealthCheckType,
    JobName,
    PollType,
    ReferenceDataKind,
    SyncEntityType,
    SyncMode,
)


class BaseJobPayload(BaseModel):
    """Fields shared by every job payload."""

    model_config = ConfigDict(extra="ignore")

    office_id: str
    correlation_id: str | None = None
    initiated_by: str | None = None

    @field_validator("office_id", mode="before")
    @classmethod
    def _validate_office_id(cls, value: Any) -> str:
        return OfficeId.create(value).value

    @property
    def office(self) -> OfficeId:
        return OfficeId.create(self.office_id)

    def to_job_data(self) -> dict[str, Any]:
        """JSON-safe dict for the jobs table."""
        return self.model_dump(mode="json", exclude_none=True)


# =============================================================================
# Sync
# =============================================================================


class SyncPagePayload(BaseJobPayload):
    """One page of a paginated legacy -> shadow sync."""

    mode: SyncMode = SyncMode.INCREMENTAL
    cursor: str | None = None
    modified_since: datetime | None = None
    batch_size: int | None = Field(default=None, gt=0)
    # Lower bound fixed by the first page and carried by every continuation.
    watermark: datetime | None = None

    @property
    def page(self) -> int:
        return int(self.cursor) if self.cursor else 1

    @property
    def is_continuation(self) -> bool:
        return self.cursor is not None


class SyncConstituentsPayload(SyncPagePayload):
    type: Literal["sync:constituents"] = "sync:constituents"


class SyncCasesPayload(SyncPagePayload):
    type: Literal["sync:cases"] = "sync:cases"


class SyncEmailsPayload(SyncPagePayload):
    type: Literal["sync:emails"] = "sync:emails"
    email_type: EmailType | None = None
    actioned_only: bool | None = None


class SyncCasenotesPayload(SyncPagePayload):
    type: Literal["sync:casenotes"] = "sync:casenotes"
    case_external_id: int | None = Field(default=None, ge=0)


class SyncReferenceDataPayload(BaseJobPayload):
    type: Literal["sync:reference-data"] = "sync:reference-data"
    entities: list[ReferenceDataKind] | None = None


class SyncAllPayload(BaseJobPayload):
    type: Literal["sync:all"] = "sync:all"
    mode: SyncMode = SyncMode.INCREMENTAL
    include_reference_data: bool = True


# =============================================================================
# Push
# =============================================================================


class ConstituentPushData(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    title: str | None = None
    organisation_type: str | None = None


class CasePushData(BaseModel):
    constituent_id: str | None = None
    case_type_id: int | None = None
    status_id: int | None = None
    category_type_id: int | None = None
    contact_type_id: int | None = None
    assigned_to_id: int | None = None
    summary: str | None = None
    review_date: str | None = None


class EmailPushData(BaseModel):
    subject: str | None = None
    html_body: str | None = None
    to: list[str] | None = None
    cc: list[str] | None = None
    bcc: list[str] | None = None
    case_id: int | None = None
    actioned: bool | None = None


class CasenotePushData(BaseModel):
    type: str = "note"
    content: str | None = None


class PushConstituentPayload(BaseJobPayload):
    type: Literal["push:constituent"] = "push:constituent"
    constituent_id: str
    operation: Literal["create", "update"]
    data: ConstituentPushData = Field(default_factory=ConstituentPushData)


class PushCasePayload(BaseJobPayload):
    type: Literal["push:case"] = "push:case"
    case_id: str
    operation: Literal["create", "update"]
    data: CasePushData = Field(default_factory=CasePushData)


class PushEmailPayload(BaseJobPayload):
    type: Literal["push:email"] = "push:email"
    email_id: str
    operation: Literal["create", "update", "send"]
    data: EmailPushData = Field(default_factory=EmailPushData)


class PushCasenotePayload(BaseJobPayload):
    type: Literal["push:casenote"] = "push:casenote"
    casenote_id: str
    case_external_id: int | None = Field(default=None, ge=0)
    # Needed for update/delete when the local row is already gone.
    casenote_external_id: int | None = Field(default=None, ge=0)
    operation: Literal["create", "update", "delete"]
    data: CasenotePushData = Field(default_factory=CasenotePushData)


# =============================================================================
# Triage
# =============================================================================


class NewConstituentData(BaseModel):
    first_name: str
    last_name: str
    title: str | None = None
    email: str | None = None


class NewCaseData(BaseModel):
    case_type_id: int | None = None
    status_id: int | None = None
    category_type_id: int | None = None
    assigned_to_id: int | None = None
    summary: str | None = None


class TriageDecision(BaseModel):
    """User decision for one triaged email."""

    action: Literal["create_new", "add_to_case", "ignore"]
    constituent_id: str | None = None
    new_constituent: NewConstituentData | None = None
    case_id: str | None = None
    new_case: NewCaseData | None = None
    mark_actioned: bool = False

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> Any:
        # The UI calls the create branch "create_case".
        return "create_new" if value == "create_case" else value


class TriageProcessEmailPayload(BaseJobPayload):
    type: Literal["triage:process-email"] = "triage:process-email"
    email_id: str
    email_external_id: int | None = Field(default=None, ge=0)
    from_address: str | None = None
    subject: str | None = None


class TriageSubmitDecisionPayload(BaseJobPayload):
    type: Literal["triage:submit-decision"] = "triage:submit-decision"
    email_id: str
    email_external_id: int = Field(ge=0)
    decision: TriageDecision


class TriageBatchPrefetchPayload(BaseJobPayload):
    type: Literal["triage:batch-prefetch"] = "triage:batch-prefetch"
    email_ids: list[str]
    prefetch_ahead: int = Field(default=3, ge=0)


# =============================================================================
# Scheduled
# =============================================================================


class ScheduledPollLegacyPayload(BaseJobPayload):
    type: Literal["scheduled:poll-legacy"] = "scheduled:poll-legacy"
    poll_type: PollType = PollType.ALL
    last_poll_at: datetime | None = None


class ScheduledSyncOfficePayload(BaseJobPayload):
    type: Literal["scheduled:sync-office"] = "scheduled:sync-office"
    sync_entities: list[SyncEntityType] = Field(
        default_factory=lambda: [
            SyncEntityType.REFERENCE_DATA,
            SyncEntityType.CONSTITUENTS,
            SyncEntityType.CASES,
            SyncEntityType.EMAILS,
        ]
    )


class ScheduledCleanupPayload(BaseJobPayload):
    type: Literal["scheduled:cleanup"] = "scheduled:cleanup"
    cleanup_type: CleanupType
    older_than_days: int = Field(default=30, gt=0)


# =============================================================================
# Maintenance
# =============================================================================


class MaintenanceReconcilePayload(BaseJobPayload):
    type: Literal["maintenance:reconcile"] = "maintenance:reconcile"
    entity_type: Literal["constituents", "cases", "emails"]
    dry_run: bool = False


class MaintenanceHealthCheckPayload(BaseJobPayload):
    type: Literal["maintenance:health-check"] = "maintenance:health-check"
    check_type: HealthCheckType


JobPayload = (
    SyncConstituentsPayload
    | SyncCasesPayload
    | SyncEmailsPayload
    | SyncCasenotesPayload
    | SyncReferenceDataPayload
    | SyncAllPayload
    | PushConstituentPayload
    | PushCasePayload
    | PushEmailPayload
    | PushCasenotePayload
    | TriageProcessEmailPayload
    | TriageSubmitDecisionPayload
    | TriageBatchPrefetchPayload
    | ScheduledPollLegacyPayload
    | ScheduledSyncOfficePayload
    | ScheduledCleanupPayload
    | MaintenanceReconcilePayload
    | MaintenanceHealthCheckPayload
)

JOB_PAYLOADS: dict[JobName, type[BaseJobPayload]] = {
    JobName.SYNC_CONSTITUENTS: SyncConstituentsPayload,
    JobName.SYNC_CASES: SyncCasesPayload,
    JobName.SYNC_EMAILS: SyncEmailsPayload,
    JobName.SYNC_CASENOTES: SyncCasenotesPayload,
    JobName.SYNC_REFERENCE_DATA: SyncReferenceDataPayload,
    JobName.SYNC_ALL: SyncAllPayload,
    JobName.PUSH_CONSTITUENT: PushConstituentPayload,
    JobName.PUSH_CASE: PushCasePayload,
    JobName.PUSH_EMAIL: PushEmailPayload,
    JobName.PUSH_CASENOTE: PushCasenotePayload,
    JobName.TRIAGE_PROCESS_EMAIL: TriageProcessEmailPayload,
    JobName.TRIAGE_SUBMIT_DECISION: TriageSubmitDecisionPayload,
    JobName.TRIAGE_BATCH_PREFETCH: TriageBatchPrefetchPayload,
    JobName.SCHEDULED_POLL_LEGACY: ScheduledPollLegacyPayload,
    JobName.SCHEDULED_SYNC_OFFICE: ScheduledSyncOfficePayload,
    JobName.SCHEDULED_CLEANUP: ScheduledCleanupPayload,
    JobName.MAINTENANCE_RECONCILE: MaintenanceReconcilePayload,
    JobName.MAINTENANCE_HEALTH_CHECK: MaintenanceHealthCheckPayload,
}


def parse_job_payload(name: JobName | str, data: dict[str, Any]) -> BaseJobPayload:
    """Validate stored job data against the payload model for ``name``."""
    job_name = JobName(name)
    model = JOB_PAYLOADS.get(job_name)
    if model is None:
        raise ValueError(f"No payload model registered for job: {job_name.value}")
    return model.model_validate(data)


# =============================================================================
# Results (stored as job output)
# =============================================================================


class RecordError(BaseModel):
    external_id: int | None
    error: str


class SyncJobResult(BaseModel):
    success: bool
    entity_type: str
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    cursor: str | None = None
    has_more: bool = False
    skipped: bool = False
    cancelled: bool = False
    errors: list[RecordError] = Field(default_factory=list)
    duration_ms: int = 0


class PushJobResult(BaseModel):
    success: bool
    entity_type: str
    internal_id: str
    external_id: int | None = None
    operation: str
    skipped: bool = False
    duration_ms: int = 0


class ScheduledJobResult(BaseModel):
    success: bool
    job_type: str
    items_processed: int = 0
    details: dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0
