"""Triage context, suggestion and cache schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from casework.db.enums import MatchType, TriageAction, TriageStatus, Urgency


# =============================================================================
# Pipeline results
# =============================================================================


class ConstituentMatch(BaseModel):
    """Constituent matched for an inbound email."""

    id: str | None = None  # shadow store id, None when only known upstream
    external_id: int | None = None  # None for local rows not yet pushed
    name: str
    confidence: float = Field(ge=0, le=1)
    match_type: MatchType


class CaseMatch(BaseModel):
    id: str
    external_id: int | None = None
    summary: str


class SuggestedReference(BaseModel):
    id: int
    name: str
    confidence: float = Field(default=0, ge=0, le=1)


class RoutingSuggestion(BaseModel):
    """Routing suggestion cached for the triage UI."""

    action: TriageAction
    confidence: float = Field(ge=0, le=1)
    reasoning: str = ""
    urgency: Urgency = Urgency.MEDIUM
    case_id: str | None = None
    suggested_case_type: SuggestedReference | None = None
    suggested_category: SuggestedReference | None = None
    summary: str | None = None
    source: Literal["llm", "rules"] = "rules"


class TriageCacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    email_id: str
    office_id: str
    status: TriageStatus = TriageStatus.CACHED
    matched_constituent: ConstituentMatch | None = None
    matched_cases: list[CaseMatch] = Field(default_factory=list)
    suggestion: RoutingSuggestion | None = None
    processed_at: datetime


class TriageJobResult(BaseModel):
    success: bool
    email_id: str
    status: TriageStatus
    matched_constituent: ConstituentMatch | None = None
    matched_case: CaseMatch | None = None
    suggestion: RoutingSuggestion | None = None
    duration_ms: int = 0


class TriageDecisionResult(BaseModel):
    success: bool
    email_id: str
    action: str
    constituent_external_id: int | None = None
    case_external_id: int | None = None
    marked_actioned: bool = False


# =============================================================================
# LLM context
# =============================================================================


class EmailContent(BaseModel):
    subject: str
    body: str
    sender_email: str
    sender_name: str | None = None
    received_at: str


class ReferenceItem(BaseModel):
    id: int
    name: str
    email: str | None = None


class ConstituentContext(BaseModel):
    id: str | None = None
    external_id: int
    full_name: str
    title: str | None = None
    is_organisation: bool = False
    previous_case_count: int = 0
    last_contact_date: str | None = None


class CaseContext(BaseModel):
    id: str
    external_id: int | None = None
    summary: str | None = None
    case_type_name: str | None = None
    category_name: str | None = None
    status_name: str | None = None
    last_activity_at: str | None = None


class OfficeReferenceData(BaseModel):
    case_types: list[ReferenceItem] = Field(default_factory=list)
    category_types: list[ReferenceItem] = Field(default_factory=list)
    status_types: list[ReferenceItem] = Field(default_factory=list)
    caseworkers: list[ReferenceItem] = Field(default_factory=list)


class TriageContext(BaseModel):
    """Everything the LLM sees about one email."""

    email: EmailContent
    matched_constituent: ConstituentContext | None = None
    constituent_match_confidence: float | None = None
    existing_cases: list[CaseContext] = Field(default_factory=list)
    reference_data: OfficeReferenceData = Field(default_factory=OfficeReferenceData)


class TriageSuggestion(BaseModel):
    """Structured LLM reply. Parsed leniently; unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    email_type: Literal["casework", "policy", "campaign", "spam", "personal"] = "casework"
    classification_confidence: float = Field(default=0, ge=0, le=1)
    classification_reasoning: str | None = None

    recommended_action: Literal["create_case", "add_to_case", "assign_campaign", "ignore"]
    action_confidence: float = Field(ge=0, le=1)
    action_reasoning: str | None = None

    suggested_existing_case_id: str | None = None
    suggested_case_type: SuggestedReference | None = None
    suggested_category: SuggestedReference | None = None
    suggested_priority: Literal["low", "medium", "high", "urgent"] = "medium"
    suggested_summary: str | None = None
