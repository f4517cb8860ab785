"""Email service - shadow-store access for inbox and outbound emails."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from casework.core.identifiers import ExternalId, OfficeId
from casework.db.models import Case, Email
from casework.services import shadow_common
from casework.services.shadow_common import apply_fields
from casework.utils.datetime_parsing import utcnow


def get_email(db: Session, office: OfficeId, email_id: uuid.UUID | str) -> Email | None:
    try:
        parsed = uuid.UUID(str(email_id))
    except ValueError:
        return None
    return db.scalar(select(Email).where(Email.id == parsed, Email.office_id == office.uuid))


def find_by_external_id(db: Session, office: OfficeId, external_id: ExternalId) -> Email | None:
    return shadow_common.find_by_external_id(db, Email, office, external_id)


def upsert_from_legacy(
    db: Session,
    office: OfficeId,
    external_id: ExternalId,
    fields: dict[str, Any],
    synced_at: datetime | None = None,
) -> tuple[Email, bool]:
    synced_at = synced_at or utcnow()
    email = find_by_external_id(db, office, external_id)
    created = email is None
    if email is None:
        email = Email(office_id=office.uuid, external_id=external_id.value)
        db.add(email)
    apply_fields(email, fields, synced_at)

    case_external_id = fields.get("case_external_id")
    if case_external_id is not None:
        case = shadow_common.find_by_external_id(db, Case, office, ExternalId.create(case_external_id))
        if case is not None:
            email.case_id = case.id
    db.commit()
    return email, created


def existing_external_ids(db: Session, office: OfficeId, external_ids: Iterable[int]) -> set[int]:
    ids = list(external_ids)
    if not ids:
        return set()
    return set(
        db.scalars(
            select(Email.external_id).where(Email.office_id == office.uuid, Email.external_id.in_(ids))
        )
    )


def mark_actioned(db: Session, email: Email) -> Email:
    email.actioned = True
    db.commit()
    return email


def link_to_case(db: Session, email: Email, case: Case) -> Email:
    email.case_id = case.id
    email.case_external_id = case.external_id
    db.commit()
    return email


def set_external_id(db: Session, email: Email, external_id: ExternalId) -> Email:
    email.external_id = external_id.value
    email.last_synced_at = utcnow()
    db.commit()
    return email
