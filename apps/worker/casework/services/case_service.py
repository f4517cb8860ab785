"""Case service - shadow-store access for cases and case notes."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from casework.core.identifiers import ExternalId, OfficeId
from casework.db.models import Case, CaseNote, Constituent
from casework.services import reference_data_service, shadow_common
from casework.services.shadow_common import apply_fields
from casework.utils.datetime_parsing import utcnow


def get_case(db: Session, office: OfficeId, case_id: uuid.UUID | str) -> Case | None:
    return db.scalar(
        select(Case).where(Case.id == uuid.UUID(str(case_id)), Case.office_id == office.uuid)
    )


def find_by_external_id(db: Session, office: OfficeId, external_id: ExternalId) -> Case | None:
    return shadow_common.find_by_external_id(db, Case, office, external_id)


def upsert_from_legacy(
    db: Session,
    office: OfficeId,
    external_id: ExternalId,
    fields: dict[str, Any],
    synced_at: datetime | None = None,
) -> tuple[Case, bool]:
    """Create or partially update a case, linking its constituent when known locally."""
    synced_at = synced_at or utcnow()
    case = find_by_external_id(db, office, external_id)
    created = case is None
    if case is None:
        case = Case(office_id=office.uuid, external_id=external_id.value)
        db.add(case)
    apply_fields(case, fields, synced_at)

    constituent_external_id = fields.get("constituent_external_id")
    if constituent_external_id is not None:
        constituent = shadow_common.find_by_external_id(
            db, Constituent, office, ExternalId.create(constituent_external_id)
        )
        if constituent is not None:
            case.constituent_id = constituent.id
    db.commit()
    return case, created


def list_open_cases_for_constituent(
    db: Session, office: OfficeId, constituent_id: uuid.UUID
) -> list[Case]:
    """
    Open cases for a constituent, most recent activity first.

    A case is open unless its status is a status type flagged closed. Ties on
    activity are broken by id for a stable order.
    """
    closed_ids = reference_data_service.closed_status_ids(db, office)
    stmt = select(Case).where(Case.office_id == office.uuid, Case.constituent_id == constituent_id)
    if closed_ids:
        stmt = stmt.where(or_(Case.status_id.is_(None), Case.status_id.not_in(closed_ids)))
    stmt = stmt.order_by(Case.last_activity_at.desc().nulls_last(), Case.id)
    return list(db.scalars(stmt))


def create_local(db: Session, office: OfficeId, external_id: ExternalId | None = None, **fields: Any) -> Case:
    case = Case(
        office_id=office.uuid,
        external_id=external_id.value if external_id else None,
        last_activity_at=fields.pop("last_activity_at", None) or utcnow(),
        **fields,
    )
    db.add(case)
    db.commit()
    return case


def set_external_id(db: Session, case: Case, external_id: ExternalId) -> Case:
    case.external_id = external_id.value
    case.last_synced_at = utcnow()
    db.commit()
    return case


def touch_activity(db: Session, case: Case) -> None:
    case.last_activity_at = utcnow()
    db.commit()


# =============================================================================
# Case notes
# =============================================================================


def get_casenote(db: Session, office: OfficeId, casenote_id: uuid.UUID | str) -> CaseNote | None:
    return db.scalar(
        select(CaseNote).where(
            CaseNote.id == uuid.UUID(str(casenote_id)), CaseNote.office_id == office.uuid
        )
    )


def upsert_casenote_from_legacy(
    db: Session,
    office: OfficeId,
    external_id: ExternalId,
    fields: dict[str, Any],
    synced_at: datetime | None = None,
) -> tuple[CaseNote, bool]:
    synced_at = synced_at or utcnow()
    note = shadow_common.find_by_external_id(db, CaseNote, office, external_id)
    created = note is None
    if note is None:
        note = CaseNote(office_id=office.uuid, external_id=external_id.value)
        db.add(note)
    apply_fields(note, fields, synced_at)

    case_external_id = fields.get("case_external_id")
    if case_external_id is not None:
        case = find_by_external_id(db, office, ExternalId.create(case_external_id))
        if case is not None:
            note.case_id = case.id
    db.commit()
    return note, created


def set_casenote_external_id(db: Session, note: CaseNote, external_id: ExternalId) -> CaseNote:
    note.external_id = external_id.value
    note.last_synced_at = utcnow()
    db.commit()
    return note


def delete_casenote(db: Session, note: CaseNote) -> None:
    db.delete(note)
    db.commit()
