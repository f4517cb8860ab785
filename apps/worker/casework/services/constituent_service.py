"""Constituent service - shadow-store access for constituents and contacts."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from casework.core.identifiers import ExternalId, OfficeId
from casework.db.models import Constituent, ConstituentContact
from casework.services import shadow_common
from casework.services.shadow_common import apply_fields
from casework.utils.datetime_parsing import utcnow
from casework.utils.normalization import normalize_email


def get_constituent(db: Session, office: OfficeId, constituent_id: uuid.UUID | str) -> Constituent | None:
    return db.scalar(
        select(Constituent).where(
            Constituent.id == uuid.UUID(str(constituent_id)),
            Constituent.office_id == office.uuid,
        )
    )


def find_by_external_id(db: Session, office: OfficeId, external_id: ExternalId) -> Constituent | None:
    return shadow_common.find_by_external_id(db, Constituent, office, external_id)


def find_by_email(db: Session, office: OfficeId, email: str | None) -> Constituent | None:
    """Exact, case-insensitive match on a stored contact address."""
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.scalar(
        select(Constituent)
        .join(ConstituentContact, ConstituentContact.constituent_id == Constituent.id)
        .where(
            Constituent.office_id == office.uuid,
            ConstituentContact.office_id == office.uuid,
            ConstituentContact.normalized_value == normalized,
        )
        .order_by(Constituent.created_at, Constituent.id)
        .limit(1)
    )


def _sync_contacts(constituent: Constituent, contacts: list[dict[str, Any]]) -> None:
    existing = {c.external_id: c for c in constituent.contacts if c.external_id is not None}
    kept: list[ConstituentContact] = []
    for data in contacts:
        row = existing.get(data["external_id"]) if data["external_id"] is not None else None
        if row is None:
            row = ConstituentContact(office_id=constituent.office_id, **data)
        else:
            apply_fields(row, data)
        kept.append(row)
    constituent.contacts = kept


def upsert_from_legacy(
    db: Session,
    office: OfficeId,
    external_id: ExternalId,
    fields: dict[str, Any],
    contacts: list[dict[str, Any]] | None = None,
    synced_at: datetime | None = None,
) -> tuple[Constituent, bool]:
    """
    Create or partially update a constituent by legacy id.

    Returns ``(row, created)``. ``contacts=None`` leaves contacts untouched.
    """
    synced_at = synced_at or utcnow()
    constituent = find_by_external_id(db, office, external_id)
    created = constituent is None
    if constituent is None:
        constituent = Constituent(office_id=office.uuid, external_id=external_id.value)
        db.add(constituent)
    apply_fields(constituent, fields, synced_at)
    if contacts is not None:
        _sync_contacts(constituent, contacts)
    db.commit()
    return constituent, created


def add_email_contact(db: Session, constituent: Constituent, email: str, external_id: int | None = None) -> ConstituentContact:
    contact = ConstituentContact(
        office_id=constituent.office_id,
        constituent_id=constituent.id,
        external_id=external_id,
        contact_type="email",
        value=email,
        normalized_value=normalize_email(email),
    )
    db.add(contact)
    db.commit()
    return contact


def create_local(db: Session, office: OfficeId, external_id: ExternalId | None = None, **fields: Any) -> Constituent:
    constituent = Constituent(
        office_id=office.uuid,
        external_id=external_id.value if external_id else None,
        **fields,
    )
    db.add(constituent)
    db.commit()
    return constituent


def set_external_id(db: Session, constituent: Constituent, external_id: ExternalId) -> Constituent:
    constituent.external_id = external_id.value
    constituent.last_synced_at = utcnow()
    db.commit()
    return constituent
