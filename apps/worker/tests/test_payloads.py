import uuid

import pytest
from pydantic import ValidationError

from casework.core.identifiers import ExternalId, OfficeId
from casework.db.enums import JobName, SyncMode
from casework.schemas.jobs import (
    JOB_PAYLOADS,
    PushCasenotePayload,
    SyncCasesPayload,
    TriageSubmitDecisionPayload,
    parse_job_payload,
)


def test_every_job_has_a_payload_model():
    assert set(JOB_PAYLOADS) == set(JobName)


def test_parse_round_trips_stored_job_data():
    office_id = str(uuid.uuid4())
    stored = SyncCasesPayload(office_id=office_id, mode=SyncMode.FULL, cursor="3").to_job_data()

    payload = parse_job_payload("sync:cases", stored)

    assert isinstance(payload, SyncCasesPayload)
    assert payload.page == 3
    assert payload.is_continuation is True
    assert "modified_since" not in stored


def test_office_id_is_normalized_and_validated():
    raw = str(uuid.uuid4()).upper()
    payload = parse_job_payload(JobName.SYNC_ALL, {"office_id": raw})

    assert payload.office_id == raw.lower()
    assert payload.office == OfficeId.create(raw)

    with pytest.raises(ValidationError):
        parse_job_payload(JobName.SYNC_ALL, {"office_id": "office-1"})


def test_create_case_decision_is_create_new():
    payload = TriageSubmitDecisionPayload(
        office_id=str(uuid.uuid4()),
        email_id="e-1",
        email_external_id=12,
        decision={"action": "create_case"},
    )

    assert payload.decision.action == "create_new"


def test_negative_external_ids_are_rejected():
    with pytest.raises(ValidationError):
        PushCasenotePayload(
            office_id=str(uuid.uuid4()), casenote_id="n-1", casenote_external_id=-1, operation="delete"
        )


def test_unknown_job_name():
    with pytest.raises(ValueError):
        parse_job_payload("sync:everything", {"office_id": str(uuid.uuid4())})


def test_external_id_parsing():
    assert ExternalId.parse("42") == ExternalId.create(42)
    assert ExternalId.parse("") is None
    with pytest.raises(ValueError):
        ExternalId.create(True)
    with pytest.raises(ValueError):
        ExternalId.parse("forty")
