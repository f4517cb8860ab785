import uuid

import pytest

from casework.core.identifiers import ExternalId
from casework.db.enums import JobName, MatchType, TriageAction, TriageStatus, Urgency
from casework.db.models import Email, ReferenceDataItem
from casework.schemas.jobs import (
    NewCaseData,
    NewConstituentData,
    TriageBatchPrefetchPayload,
    TriageDecision,
    TriageProcessEmailPayload,
    TriageSubmitDecisionPayload,
)
from casework.schemas.triage import CaseMatch, ConstituentMatch, TriageCacheEntry, TriageSuggestion
from casework.services import case_service, constituent_service, triage_rules
from casework.services.push_service import DependencyNotPushedError
from casework.services.triage_cache import TriageCache
from casework.services.triage_service import TriageService
from casework.utils.datetime_parsing import utcnow
from casework.utils.normalization import significant_words


# =============================================================================
# Rule-based suggestions
# =============================================================================


def _match() -> ConstituentMatch:
    return ConstituentMatch(
        id=str(uuid.uuid4()), external_id=1, name="Sam Jones", confidence=1.0, match_type=MatchType.EXACT
    )


def test_rules_without_constituent_suggest_new_case():
    suggestion = triage_rules.suggest(None, [], "Planning query")
    assert suggestion.action == TriageAction.CREATE_NEW
    assert suggestion.confidence == 0.8
    assert suggestion.source == "rules"


def test_rules_match_related_open_case():
    cases = [
        CaseMatch(id="a", summary="Council tax arrears"),
        CaseMatch(id="b", summary="Broken streetlight outside school"),
    ]
    suggestion = triage_rules.suggest(_match(), cases, "Streetlight still broken")
    assert suggestion.action == TriageAction.ADD_TO_CASE
    assert suggestion.confidence == 0.9
    assert suggestion.case_id == "b"

    punctuated = triage_rules.suggest(
        _match(), [CaseMatch(id="c", summary="Housing benefit claim")], "Housing, benefit?"
    )
    assert punctuated.action == TriageAction.ADD_TO_CASE
    assert punctuated.confidence == 0.9
    assert punctuated.case_id == "c"


def test_significant_words_ignore_punctuation():
    assert significant_words("Council tax, arrears!") == {"council", "arrears"}


def test_rules_unrelated_open_case_has_lower_confidence():
    cases = [CaseMatch(id="a", summary="Council tax arrears")]
    suggestion = triage_rules.suggest(_match(), cases, "Bin collection missed")
    assert suggestion.action == TriageAction.ADD_TO_CASE
    assert suggestion.confidence == 0.6
    assert suggestion.case_id is None


def test_rules_known_constituent_without_cases():
    suggestion = triage_rules.suggest(_match(), [], "Bin collection missed")
    assert suggestion.action == TriageAction.CREATE_NEW
    assert suggestion.confidence == 0.85


@pytest.mark.parametrize(
    "subject,body",
    [
        ("URGENT: eviction notice", ""),
        ("Housing", "Please help asap, the bailiffs are coming"),
    ],
)
def test_rules_raise_urgency_on_keywords(subject, body):
    suggestion = triage_rules.suggest(None, [], subject, body)
    assert suggestion.urgency == Urgency.HIGH


def test_rules_default_urgency_is_medium():
    assert triage_rules.suggest(None, [], "Thank you").urgency == Urgency.MEDIUM


# =============================================================================
# Cache
# =============================================================================


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _entry(email_id: str, office_id: str = "00000000-0000-0000-0000-000000000001") -> TriageCacheEntry:
    return TriageCacheEntry(email_id=email_id, office_id=office_id, processed_at=utcnow())


def test_cache_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TriageCache(ttl_seconds=60, max_entries=10, clock=clock)
    entry = _entry("e1")
    cache.set(entry)

    clock.now += 59
    assert cache.get(entry.office_id, "e1") == entry
    clock.now += 2
    assert cache.get(entry.office_id, "e1") is None
    assert len(cache) == 0


def test_cache_evicts_oldest_insertion_when_full():
    cache = TriageCache(ttl_seconds=60, max_entries=2)
    first, second, third = _entry("e1"), _entry("e2"), _entry("e3")
    cache.set(first)
    cache.set(second)
    # Reads do not refresh position.
    assert cache.get(first.office_id, "e1") is not None
    cache.set(third)

    assert cache.get(first.office_id, "e1") is None
    assert cache.get(first.office_id, "e2") is not None
    assert cache.get(first.office_id, "e3") is not None


def test_cache_reinsert_counts_as_new_insertion():
    cache = TriageCache(ttl_seconds=60, max_entries=2)
    cache.set(_entry("e1"))
    cache.set(_entry("e2"))
    cache.set(_entry("e1"))
    cache.set(_entry("e3"))

    office_id = _entry("x").office_id
    assert cache.get(office_id, "e1") is not None
    assert cache.get(office_id, "e2") is None


def test_cache_is_scoped_by_office():
    cache = TriageCache()
    cache.set(_entry("e1", office_id="00000000-0000-0000-0000-00000000000a"))
    assert cache.get("00000000-0000-0000-0000-00000000000b", "e1") is None


def test_cache_purge_and_delete():
    clock = FakeClock()
    cache = TriageCache(ttl_seconds=10, max_entries=10, clock=clock)
    cache.set(_entry("e1"))
    clock.now += 5
    cache.set(_entry("e2"))
    clock.now += 6

    assert cache.purge_expired() == 1
    assert cache.delete(_entry("x").office_id, "e2") is True
    assert cache.delete(_entry("x").office_id, "e2") is False


def test_cache_requires_capacity():
    with pytest.raises(ValueError):
        TriageCache(max_entries=0)


# =============================================================================
# Triage service
# =============================================================================


class FakeLLM:
    def __init__(self, reply: TriageSuggestion | None = None, error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.contexts = []

    async def analyze_email(self, context):
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        return self.reply


def _service(db, legacy_api, job_store, triage_cache, llm=None) -> TriageService:
    return TriageService(db, legacy_api, job_store, triage_cache, llm)


def _email(db, office, **fields) -> Email:
    email = Email(office_id=office.uuid, **fields)
    db.add(email)
    db.commit()
    return email


def _known_constituent(db, office, address="resident@example.org", external_id=10):
    constituent = constituent_service.create_local(
        db, office, ExternalId.create(external_id), first_name="Sam", last_name="Jones"
    )
    constituent_service.add_email_contact(db, constituent, address)
    return constituent


@pytest.mark.asyncio
async def test_process_email_exact_match_with_related_case(db, office, legacy_api, job_store, triage_cache):
    constituent = _known_constituent(db, office)
    case = case_service.create_local(
        db,
        office,
        ExternalId.create(300),
        constituent_id=constituent.id,
        summary="Broken streetlight on Elm Road",
    )
    email = _email(
        db,
        office,
        external_id=700,
        from_address="Resident@Example.org",
        subject="Streetlight on Elm Road still broken",
        html_body="<p>It has been <b>weeks</b></p>",
    )

    result = await _service(db, legacy_api, job_store, triage_cache).process_email(
        TriageProcessEmailPayload(office_id=office.value, email_id=str(email.id))
    )

    assert result.status == TriageStatus.CACHED
    assert result.matched_constituent.match_type == MatchType.EXACT
    assert result.matched_constituent.confidence == 1.0
    assert result.matched_case.id == str(case.id)
    assert result.suggestion.action == TriageAction.ADD_TO_CASE
    assert result.suggestion.case_id == str(case.id)
    assert legacy_api.calls_to("find_constituent_matches") == []

    cached = triage_cache.get(office, str(email.id))
    assert cached.status == TriageStatus.CACHED
    assert cached.suggestion == result.suggestion


@pytest.mark.asyncio
async def test_polled_email_is_cached_under_shadow_id(db, office, legacy_api, job_store, triage_cache):
    email = _email(db, office, external_id=700, from_address="nobody@example.org", subject="Pothole")

    result = await _service(db, legacy_api, job_store, triage_cache).process_email(
        TriageProcessEmailPayload(office_id=office.value, email_id="700", email_external_id=700)
    )

    assert result.email_id == str(email.id)
    assert triage_cache.get(office, str(email.id)) is not None
    assert triage_cache.get(office, "700") is None


@pytest.mark.asyncio
async def test_closed_cases_are_not_offered(db, office, legacy_api, job_store, triage_cache):
    constituent = _known_constituent(db, office)
    db.add(
        ReferenceDataItem(office_id=office.uuid, kind="statusTypes", external_id=9, name="Closed", is_closed=True)
    )
    db.commit()
    case_service.create_local(db, office, constituent_id=constituent.id, summary="Old issue", status_id=9)
    email = _email(db, office, from_address="resident@example.org", subject="New issue")

    result = await _service(db, legacy_api, job_store, triage_cache).process_email(
        TriageProcessEmailPayload(office_id=office.value, email_id=str(email.id))
    )

    assert result.matched_case is None
    assert result.suggestion.action == TriageAction.CREATE_NEW
    assert result.suggestion.confidence == 0.85


@pytest.mark.asyncio
async def test_fuzzy_match_uses_top_legacy_candidate(db, office, legacy_api, job_store, triage_cache):
    legacy_api.constituent_matches = [
        {"id": 55, "firstName": "Sam", "lastName": "Jones", "confidence": 1.4},
        {"id": 56, "firstName": "Samantha", "lastName": "Jones", "confidence": 0.9},
    ]

    result = await _service(db, legacy_api, job_store, triage_cache).process_email(
        TriageProcessEmailPayload(
            office_id=office.value, email_id="4711", email_external_id=4711, from_address="sam@example.org"
        )
    )

    match = result.matched_constituent
    assert match.match_type == MatchType.FUZZY
    assert match.external_id == 55
    assert match.id is None
    assert match.confidence == 1.0
    assert match.name == "Sam Jones"


@pytest.mark.asyncio
async def test_unknown_sender_suggests_new_constituent(db, office, legacy_api, job_store, triage_cache):
    result = await _service(db, legacy_api, job_store, triage_cache).process_email(
        TriageProcessEmailPayload(office_id=office.value, email_id="1", from_address="nobody@example.org")
    )

    assert result.matched_constituent is None
    assert result.suggestion.action == TriageAction.CREATE_NEW
    assert result.suggestion.confidence == 0.8


@pytest.mark.asyncio
async def test_email_without_row_or_sender_is_rejected(db, office, legacy_api, job_store, triage_cache):
    with pytest.raises(ValueError):
        await _service(db, legacy_api, job_store, triage_cache).process_email(
            TriageProcessEmailPayload(office_id=office.value, email_id=str(uuid.uuid4()))
        )


@pytest.mark.asyncio
async def test_llm_suggestion_is_mapped(db, office, legacy_api, job_store, triage_cache):
    constituent = _known_constituent(db, office)
    case = case_service.create_local(
        db, office, ExternalId.create(300), constituent_id=constituent.id, summary="Parking", case_type_id=1
    )
    legacy_api.reference["caseTypes"] = [
        {"id": 1, "name": "Transport"},
        {"id": 2, "name": "Retired", "isActive": False},
    ]
    llm = FakeLLM(
        TriageSuggestion(
            recommended_action="add_to_case",
            action_confidence=0.75,
            action_reasoning="Continues the parking case",
            suggested_existing_case_id="300",
            suggested_priority="urgent",
        )
    )
    email = _email(db, office, from_address="resident@example.org", subject="Parking permit")

    result = await _service(db, legacy_api, job_store, triage_cache, llm).process_email(
        TriageProcessEmailPayload(office_id=office.value, email_id=str(email.id))
    )

    suggestion = result.suggestion
    assert suggestion.source == "llm"
    assert suggestion.action == TriageAction.ADD_TO_CASE
    assert suggestion.case_id == str(case.id)
    assert suggestion.urgency == Urgency.HIGH
    assert suggestion.confidence == 0.75

    [context] = llm.contexts
    assert [item.name for item in context.reference_data.case_types] == ["Transport"]
    assert context.existing_cases[0].case_type_name == "Transport"
    assert context.matched_constituent.external_id == 10


@pytest.mark.asyncio
async def test_llm_failure_falls_back_to_rules(db, office, legacy_api, job_store, triage_cache):
    llm = FakeLLM(error=RuntimeError("model overloaded"))

    result = await _service(db, legacy_api, job_store, triage_cache, llm).process_email(
        TriageProcessEmailPayload(office_id=office.value, email_id="1", from_address="nobody@example.org")
    )

    assert result.suggestion.source == "rules"
    assert result.suggestion.action == TriageAction.CREATE_NEW


@pytest.mark.asyncio
async def test_reference_data_failure_degrades_to_empty(db, office, legacy_api, job_store, triage_cache):
    legacy_api.failures["get_category_types"] = ConnectionError("down")

    reference = await _service(db, legacy_api, job_store, triage_cache).load_reference_data(office)

    assert reference.case_types == []
    assert reference.caseworkers == []


@pytest.mark.asyncio
async def test_prefetch_submits_only_uncached_known_emails(db, office, legacy_api, job_store, triage_cache):
    cached = _email(db, office, external_id=1, from_address="a@example.org")
    fresh = _email(db, office, external_id=2, from_address="b@example.org", subject="Hello")
    beyond = _email(db, office, external_id=3, from_address="c@example.org")
    triage_cache.set(TriageCacheEntry(email_id=str(cached.id), office_id=office.value, processed_at=utcnow()))

    outcome = await _service(db, legacy_api, job_store, triage_cache).prefetch(
        TriageBatchPrefetchPayload(
            office_id=office.value,
            email_ids=[str(cached.id), str(uuid.uuid4()), str(fresh.id), str(beyond.id)],
            prefetch_ahead=3,
        )
    )

    assert outcome["checked"] == 3
    assert outcome["submitted"] == 1
    [job] = job_store.sent
    assert job.name == JobName.TRIAGE_PROCESS_EMAIL
    assert job.payload.email_id == str(fresh.id)
    assert job.payload.email_external_id == 2
    assert job.payload.subject == "Hello"


def _decision_payload(office, decision: TriageDecision, email_id="e-1", email_external_id=700):
    return TriageSubmitDecisionPayload(
        office_id=office.value, email_id=email_id, email_external_id=email_external_id, decision=decision
    )


@pytest.mark.asyncio
async def test_create_new_decision_creates_constituent_and_case(db, office, legacy_api, job_store, triage_cache):
    _email(db, office, external_id=700, from_address="new.person@example.org")
    triage_cache.set(TriageCacheEntry(email_id="e-1", office_id=office.value, processed_at=utcnow()))
    decision = TriageDecision(
        action="create_case",
        new_constituent=NewConstituentData(first_name="New", last_name="Person"),
        new_case=NewCaseData(case_type_id=4, summary="Housing repair"),
        mark_actioned=True,
    )

    result = await _service(db, legacy_api, job_store, triage_cache).submit_decision(
        _decision_payload(office, decision)
    )

    assert decision.action == "create_new"
    assert [name for name, _ in legacy_api.calls] == [
        "create_constituent",
        "add_contact_detail",
        "create_case",
        "mark_email_actioned",
    ]
    [contact] = legacy_api.calls_to("add_contact_detail")
    assert contact["data"] == {"contactTypeID": 1, "value": "new.person@example.org", "source": "email_triage"}
    [case_call] = legacy_api.calls_to("create_case")
    assert case_call["data"]["constituentID"] == result.constituent_external_id
    assert case_call["data"]["contactTypeID"] == 1

    assert result.marked_actioned is True
    assert result.case_external_id is not None
    constituent = constituent_service.find_by_email(db, office, "new.person@example.org")
    assert constituent.external_id == result.constituent_external_id
    assert case_service.find_by_external_id(db, office, ExternalId.create(result.case_external_id)) is not None
    assert triage_cache.get(office, "e-1") is None


@pytest.mark.asyncio
async def test_redelivered_create_decision_reuses_constituent(db, office, legacy_api, job_store, triage_cache):
    _email(db, office, external_id=700, from_address="new.person@example.org")
    decision = TriageDecision(
        action="create_new", new_constituent=NewConstituentData(first_name="New", last_name="Person")
    )
    service = _service(db, legacy_api, job_store, triage_cache)

    first = await service.submit_decision(_decision_payload(office, decision))
    second = await service.submit_decision(_decision_payload(office, decision))

    assert len(legacy_api.calls_to("create_constituent")) == 1
    assert first.constituent_external_id == second.constituent_external_id


@pytest.mark.asyncio
async def test_add_to_case_decision_links_email(db, office, legacy_api, job_store, triage_cache):
    case = case_service.create_local(db, office, ExternalId.create(300), summary="Parking")
    email = _email(db, office, external_id=700, from_address="resident@example.org")

    result = await _service(db, legacy_api, job_store, triage_cache).submit_decision(
        _decision_payload(office, TriageDecision(action="add_to_case", case_id=str(case.id)))
    )

    assert legacy_api.calls_to("link_email_to_case") == [{"email_id": 700, "case_id": 300}]
    assert email.case_id == case.id
    assert result.case_external_id == 300
    assert result.marked_actioned is False


@pytest.mark.asyncio
async def test_add_to_unpushed_case_is_rejected(db, office, legacy_api, job_store, triage_cache):
    case = case_service.create_local(db, office, summary="Not yet pushed")

    with pytest.raises(DependencyNotPushedError):
        await _service(db, legacy_api, job_store, triage_cache).submit_decision(
            _decision_payload(office, TriageDecision(action="add_to_case", case_id=str(case.id)))
        )

    assert legacy_api.calls_to("link_email_to_case") == []


@pytest.mark.asyncio
async def test_ignore_decision_clears_cache(db, office, legacy_api, job_store, triage_cache):
    triage_cache.set(TriageCacheEntry(email_id="e-1", office_id=office.value, processed_at=utcnow()))

    result = await _service(db, legacy_api, job_store, triage_cache).submit_decision(
        _decision_payload(office, TriageDecision(action="ignore"))
    )

    assert result.action == "ignore"
    assert legacy_api.calls == []
    assert triage_cache.get(office, "e-1") is None
