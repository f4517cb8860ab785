"""Triage service - match, suggest and cache routing for inbound emails.

Per email: ``received -> matched -> suggested -> cached``, then a caseworker
decision moves it to ``decided`` or ``ignored`` and drops the cache entry.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from sqlalchemy.orm import Session

from casework.core.identifiers import ExternalId, OfficeId
from casework.core.structured_logging import build_log_context
from casework.db.enums import JobName, MatchType, TriageAction, TriageStatus, Urgency
from casework.db.models import Case, Constituent, Email
from casework.jobs.client import JobSender
from casework.jobs.utils import elapsed_ms, mask_email
from casework.schemas.jobs import (
    TriageBatchPrefetchPayload,
    TriageDecision,
    TriageProcessEmailPayload,
    TriageSubmitDecisionPayload,
)
from casework.schemas.triage import (
    CaseContext,
    CaseMatch,
    ConstituentContext,
    ConstituentMatch,
    EmailContent,
    OfficeReferenceData,
    ReferenceItem,
    RoutingSuggestion,
    TriageCacheEntry,
    TriageContext,
    TriageDecisionResult,
    TriageJobResult,
    TriageSuggestion,
)
from casework.services import case_service, constituent_service, email_service, triage_rules
from casework.services.legacy_api import LegacyApiClient
from casework.services.llm_analysis_service import LLMAnalysisService
from casework.services.push_service import DependencyNotPushedError
from casework.services.triage_cache import TriageCache
from casework.utils.datetime_parsing import utcnow
from casework.utils.normalization import normalize_email, strip_html

logger = logging.getLogger(__name__)

FUZZY_MATCH_CONFIDENCE = 0.7

_LLM_ACTIONS = {
    "create_case": TriageAction.CREATE_NEW,
    "add_to_case": TriageAction.ADD_TO_CASE,
    "assign_campaign": TriageAction.ASSIGN_CAMPAIGN,
    "ignore": TriageAction.IGNORE,
}

_LLM_URGENCY = {
    "low": Urgency.LOW,
    "medium": Urgency.MEDIUM,
    "high": Urgency.HIGH,
    "urgent": Urgency.HIGH,
}


def _active_items(records: list[dict[str, Any]], with_email: bool = False) -> list[ReferenceItem]:
    items: list[ReferenceItem] = []
    for record in records or []:
        if not record.get("isActive", True):
            continue
        external_id = ExternalId.parse(record.get("id"))
        if external_id is None:
            continue
        items.append(
            ReferenceItem(
                id=external_id.value,
                name=record.get("name") or "",
                email=record.get("email") if with_email else None,
            )
        )
    return items


def suggestion_from_llm(llm: TriageSuggestion, cases: list[CaseMatch]) -> RoutingSuggestion:
    """Map the LLM reply onto the routing suggestion shown to caseworkers."""
    action = _LLM_ACTIONS.get(llm.recommended_action, TriageAction.CREATE_NEW)
    case_id = None
    if action == TriageAction.ADD_TO_CASE and llm.suggested_existing_case_id:
        wanted = str(llm.suggested_existing_case_id)
        for case in cases:
            if wanted in (case.id, str(case.external_id)):
                case_id = case.id
                break
    return RoutingSuggestion(
        action=action,
        confidence=llm.action_confidence,
        reasoning=llm.action_reasoning or llm.classification_reasoning or "",
        urgency=_LLM_URGENCY.get(llm.suggested_priority, Urgency.MEDIUM),
        case_id=case_id,
        suggested_case_type=llm.suggested_case_type,
        suggested_category=llm.suggested_category,
        summary=llm.suggested_summary,
        source="llm",
    )


class TriageService:
    def __init__(
        self,
        db: Session,
        legacy_api: LegacyApiClient,
        jobs: JobSender,
        cache: TriageCache,
        llm_service: LLMAnalysisService | None = None,
        *,
        email_contact_type_id: int = 1,
    ):
        self.db = db
        self.legacy_api = legacy_api
        self.jobs = jobs
        self.cache = cache
        self.llm_service = llm_service
        self.email_contact_type_id = email_contact_type_id

    # -------------------------------------------------------------------------
    # Process one email
    # -------------------------------------------------------------------------

    def _load_email(self, office: OfficeId, email_id: str, external_id: int | None) -> Email | None:
        email = email_service.get_email(self.db, office, email_id)
        if email is None and external_id is not None:
            email = email_service.find_by_external_id(self.db, office, ExternalId.create(external_id))
        return email

    async def match_constituent(
        self, office: OfficeId, from_address: str | None
    ) -> tuple[ConstituentMatch | None, Constituent | None]:
        """
        Exact match on a stored contact address, else the legacy fuzzy matcher's top result.

        The legacy ranking is trusted as-is. The shadow row is returned when one
        exists so open cases can be looked up locally.
        """
        if not normalize_email(from_address):
            return None, None

        constituent = constituent_service.find_by_email(self.db, office, from_address)
        if constituent is not None:
            return (
                ConstituentMatch(
                    id=str(constituent.id),
                    external_id=constituent.external_id,
                    name=constituent.full_name,
                    confidence=1.0,
                    match_type=MatchType.EXACT,
                ),
                constituent,
            )

        candidates = await self.legacy_api.find_constituent_matches(office, email=from_address)
        if not candidates:
            return None, None
        best = candidates[0]
        external_id = ExternalId.parse(best.get("id"))
        if external_id is None:
            return None, None
        constituent = constituent_service.find_by_external_id(self.db, office, external_id)
        name = f"{best.get('firstName') or ''} {best.get('lastName') or ''}".strip()
        return (
            ConstituentMatch(
                id=str(constituent.id) if constituent else None,
                external_id=external_id.value,
                name=name or (constituent.full_name if constituent else ""),
                confidence=min(1.0, float(best.get("confidence", FUZZY_MATCH_CONFIDENCE))),
                match_type=MatchType.FUZZY,
            ),
            constituent,
        )

    def open_cases(self, office: OfficeId, constituent: Constituent | None) -> list[Case]:
        if constituent is None:
            return []
        return case_service.list_open_cases_for_constituent(self.db, office, constituent.id)

    async def load_reference_data(self, office: OfficeId) -> OfficeReferenceData:
        """Active reference data for the prompt. Any load failure degrades to empty lists."""
        try:
            case_types = await self.legacy_api.get_case_types(office)
            category_types = await self.legacy_api.get_category_types(office)
            status_types = await self.legacy_api.get_status_types(office)
            caseworkers = await self.legacy_api.get_caseworkers(office)
        except Exception as exc:
            logger.warning(
                "Reference data unavailable for triage context: %s",
                type(exc).__name__,
                extra=build_log_context(office_id=office),
            )
            return OfficeReferenceData()
        return OfficeReferenceData(
            case_types=_active_items(case_types),
            category_types=_active_items(category_types),
            status_types=_active_items(status_types),
            caseworkers=_active_items(caseworkers, with_email=True),
        )

    async def build_context(
        self,
        office: OfficeId,
        email: Email | None,
        subject: str,
        body: str,
        from_address: str,
        match: ConstituentMatch | None,
        constituent: Constituent | None,
        case_rows: list[Case],
    ) -> TriageContext:
        reference_data = await self.load_reference_data(office)
        names = {
            "case_type": {item.id: item.name for item in reference_data.case_types},
            "category": {item.id: item.name for item in reference_data.category_types},
            "status": {item.id: item.name for item in reference_data.status_types},
        }
        case_contexts = [
            CaseContext(
                id=str(row.id),
                external_id=row.external_id,
                summary=row.summary,
                case_type_name=names["case_type"].get(row.case_type_id),
                category_name=names["category"].get(row.category_type_id),
                status_name=names["status"].get(row.status_id),
                last_activity_at=row.last_activity_at.isoformat() if row.last_activity_at else None,
            )
            for row in case_rows
        ]

        constituent_context = None
        if match is not None and match.external_id is not None:
            constituent_context = ConstituentContext(
                id=match.id,
                external_id=match.external_id,
                full_name=match.name,
                title=constituent.title if constituent else None,
                is_organisation=bool(constituent and constituent.organisation_type),
                previous_case_count=len(case_rows),
                last_contact_date=(
                    constituent.last_synced_at.isoformat() if constituent and constituent.last_synced_at else None
                ),
            )

        received_at = email.received_at if email is not None and email.received_at else utcnow()
        return TriageContext(
            email=EmailContent(
                subject=subject,
                body=body,
                sender_email=from_address,
                received_at=received_at.isoformat(),
            ),
            matched_constituent=constituent_context,
            constituent_match_confidence=match.confidence if match else None,
            existing_cases=case_contexts,
            reference_data=reference_data,
        )

    async def suggest(
        self,
        office: OfficeId,
        email: Email | None,
        subject: str,
        body: str,
        from_address: str,
        match: ConstituentMatch | None,
        constituent: Constituent | None,
        case_rows: list[Case],
        cases: list[CaseMatch],
    ) -> RoutingSuggestion:
        """LLM suggestion when available, rule-based otherwise or on any LLM failure."""
        if self.llm_service is not None:
            try:
                context = await self.build_context(
                    office, email, subject, body, from_address, match, constituent, case_rows
                )
                reply = await self.llm_service.analyze_email(context)
                return triage_rules.apply_urgency(suggestion_from_llm(reply, cases), subject, body)
            except Exception as exc:
                logger.warning(
                    "LLM analysis failed (%s); using rule-based suggestion",
                    type(exc).__name__,
                    extra=build_log_context(office_id=office),
                )
        return triage_rules.suggest(match, cases, subject, body)

    async def process_email(self, payload: TriageProcessEmailPayload) -> TriageJobResult:
        started = time.monotonic()
        office = payload.office
        context = build_log_context(office_id=office, correlation_id=payload.correlation_id)

        email = self._load_email(office, payload.email_id, payload.email_external_id)
        from_address = payload.from_address or (email.from_address if email else None)
        if email is None and not from_address:
            raise ValueError(f"Email {payload.email_id} not found in shadow store")
        subject = payload.subject or (email.subject if email else None) or ""
        body = strip_html(email.html_body if email else None)
        logger.info("Triaging email %s from %s", payload.email_id, mask_email(from_address), extra=context)

        match, constituent = await self.match_constituent(office, from_address)
        case_rows = self.open_cases(office, constituent)
        cases = [
            CaseMatch(id=str(row.id), external_id=row.external_id, summary=row.summary or "No summary")
            for row in case_rows
        ]

        suggestion = await self.suggest(
            office, email, subject, body, from_address or "", match, constituent, case_rows, cases
        )
        # Reads key by shadow id; polled emails arrive keyed by external id.
        cache_key = str(email.id) if email is not None else payload.email_id

        self.cache.set(
            TriageCacheEntry(
                email_id=cache_key,
                office_id=office.value,
                status=TriageStatus.CACHED,
                matched_constituent=match,
                matched_cases=cases,
                suggestion=suggestion,
                processed_at=utcnow(),
            )
        )

        result = TriageJobResult(
            success=True,
            email_id=cache_key,
            status=TriageStatus.CACHED,
            matched_constituent=match,
            matched_case=cases[0] if cases else None,
            suggestion=suggestion,
            duration_ms=elapsed_ms(started),
        )
        logger.info(
            "Triaged email %s: matched=%s cases=%s action=%s source=%s",
            payload.email_id,
            match is not None,
            len(cases),
            suggestion.action.value,
            suggestion.source,
            extra=context,
        )
        return result

    # -------------------------------------------------------------------------
    # Prefetch
    # -------------------------------------------------------------------------

    async def prefetch(self, payload: TriageBatchPrefetchPayload) -> dict[str, Any]:
        """Submit process-email jobs for the first ``prefetch_ahead`` uncached emails."""
        office = payload.office
        window = payload.email_ids[: payload.prefetch_ahead]
        jobs: list[tuple[JobName, TriageProcessEmailPayload, None]] = []
        for email_id in window:
            if self.cache.get(office, email_id) is not None:
                continue
            email = email_service.get_email(self.db, office, email_id)
            if email is None:
                logger.info(
                    "Prefetch skipped unknown email %s",
                    email_id,
                    extra=build_log_context(office_id=office, correlation_id=payload.correlation_id),
                )
                continue
            jobs.append(
                (
                    JobName.TRIAGE_PROCESS_EMAIL,
                    TriageProcessEmailPayload(
                        office_id=office.value,
                        correlation_id=payload.correlation_id,
                        email_id=str(email.id),
                        email_external_id=email.external_id,
                        from_address=email.from_address,
                        subject=email.subject,
                    ),
                    None,
                )
            )

        job_ids = await self.jobs.send_batch(jobs) if jobs else []
        logger.info(
            "Prefetch checked %s emails, submitted %s",
            len(window),
            len(jobs),
            extra=build_log_context(office_id=office, correlation_id=payload.correlation_id),
        )
        return {"checked": len(window), "submitted": len(jobs), "job_ids": job_ids}

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    async def _mark_actioned(self, office: OfficeId, email_external_id: ExternalId) -> None:
        await self.legacy_api.mark_email_actioned(office, email_external_id)
        email = email_service.find_by_external_id(self.db, office, email_external_id)
        if email is not None:
            email_service.mark_actioned(self.db, email)

    async def _resolve_or_create_constituent(
        self, office: OfficeId, decision: TriageDecision, sender: str | None
    ) -> tuple[ExternalId, Constituent | None]:
        if decision.new_constituent is not None:
            new = decision.new_constituent
            address = new.email or sender
            # A redelivered decision finds the constituent created by the first attempt.
            existing = constituent_service.find_by_email(self.db, office, address) if address else None
            if existing is not None and existing.external_id is not None:
                return ExternalId.create(existing.external_id), existing

            response = await self.legacy_api.create_constituent(
                office,
                {key: value for key, value in {
                    "firstName": new.first_name,
                    "lastName": new.last_name,
                    "title": new.title,
                }.items() if value is not None},
            )
            external_id = ExternalId.parse(response.get("id"))
            if external_id is None:
                raise ValueError("Legacy API response did not include a constituent id")
            constituent = constituent_service.create_local(
                self.db, office, external_id, first_name=new.first_name, last_name=new.last_name, title=new.title
            )
            if address:
                await self.legacy_api.add_contact_detail(
                    office,
                    external_id,
                    {"contactTypeID": self.email_contact_type_id, "value": address, "source": "email_triage"},
                )
                constituent_service.add_email_contact(self.db, constituent, address)
            return external_id, constituent

        if decision.constituent_id:
            constituent = constituent_service.get_constituent(self.db, office, decision.constituent_id)
            if constituent is None or constituent.external_id is None:
                raise DependencyNotPushedError("constituent", decision.constituent_id)
            return ExternalId.create(constituent.external_id), constituent

        raise ValueError("No constituent available for case creation")

    async def submit_decision(self, payload: TriageSubmitDecisionPayload) -> TriageDecisionResult:
        office = payload.office
        decision = payload.decision
        email_external_id = ExternalId.create(payload.email_external_id)
        context = build_log_context(office_id=office, correlation_id=payload.correlation_id)
        result = TriageDecisionResult(success=True, email_id=payload.email_id, action=decision.action)

        if decision.action == TriageAction.CREATE_NEW.value:
            email = email_service.find_by_external_id(self.db, office, email_external_id)
            constituent_external_id, constituent = await self._resolve_or_create_constituent(
                office, decision, email.from_address if email else None
            )
            result.constituent_external_id = constituent_external_id.value
            if decision.new_case is not None:
                new_case = decision.new_case
                body = {
                    "constituentID": constituent_external_id.value,
                    "caseTypeID": new_case.case_type_id,
                    "statusID": new_case.status_id,
                    "categoryTypeID": new_case.category_type_id,
                    "contactTypeID": self.email_contact_type_id,
                    "assignedToID": new_case.assigned_to_id,
                    "summary": new_case.summary,
                }
                response = await self.legacy_api.create_case(
                    office, {key: value for key, value in body.items() if value is not None}
                )
                case_external_id = ExternalId.parse(response.get("id"))
                if case_external_id is not None:
                    result.case_external_id = case_external_id.value
                    case_service.create_local(
                        self.db,
                        office,
                        case_external_id,
                        constituent_id=constituent.id if constituent else None,
                        constituent_external_id=constituent_external_id.value,
                        case_type_id=new_case.case_type_id,
                        status_id=new_case.status_id,
                        category_type_id=new_case.category_type_id,
                        assigned_to_id=new_case.assigned_to_id,
                        summary=new_case.summary,
                    )

        elif decision.action == TriageAction.ADD_TO_CASE.value:
            if not decision.case_id:
                raise ValueError("case_id is required for add_to_case")
            case = case_service.get_case(self.db, office, decision.case_id)
            if case is None or case.external_id is None:
                raise DependencyNotPushedError("case", decision.case_id)
            case_external_id = ExternalId.create(case.external_id)
            await self.legacy_api.link_email_to_case(office, email_external_id, case_external_id)
            email = email_service.find_by_external_id(self.db, office, email_external_id)
            if email is not None:
                email_service.link_to_case(self.db, email, case)
            case_service.touch_activity(self.db, case)
            result.case_external_id = case_external_id.value

        if decision.mark_actioned:
            await self._mark_actioned(office, email_external_id)
            result.marked_actioned = True

        self.cache.delete(office, payload.email_id)
        final_status = TriageStatus.IGNORED if decision.action == TriageAction.IGNORE.value else TriageStatus.DECIDED
        logger.info(
            "Email %s %s (%s, actioned=%s)",
            payload.email_id,
            final_status.value,
            decision.action,
            result.marked_actioned,
            extra=context,
        )
        return result
