"""Reference data service - lookup tables synced from the legacy system."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from casework.core.identifiers import ExternalId, OfficeId
from casework.db.enums import ReferenceDataKind
from casework.db.models import ReferenceDataItem
from casework.services.legacy_adapters import reference_item_fields
from casework.utils.datetime_parsing import utcnow


def upsert_items(
    db: Session,
    office: OfficeId,
    kind: ReferenceDataKind,
    records: list[dict[str, Any]],
    synced_at: datetime | None = None,
) -> int:
    """Upsert every record of one kind by external id. Returns the number written."""
    synced_at = synced_at or utcnow()
    existing = {
        item.external_id: item
        for item in db.scalars(
            select(ReferenceDataItem).where(
                ReferenceDataItem.office_id == office.uuid,
                ReferenceDataItem.kind == kind.value,
            )
        )
    }
    written = 0
    for record in records:
        external_id = ExternalId.parse(record.get("id"))
        if external_id is None:
            continue
        fields = reference_item_fields(kind.value, record)
        item = existing.get(external_id.value)
        if item is None:
            item = ReferenceDataItem(office_id=office.uuid, kind=kind.value, external_id=external_id.value)
            db.add(item)
            existing[external_id.value] = item
        for name, value in fields.items():
            setattr(item, name, value)
        item.last_synced_at = synced_at
        written += 1
    db.commit()
    return written


def list_items(
    db: Session, office: OfficeId, kind: ReferenceDataKind, *, active_only: bool = False
) -> list[ReferenceDataItem]:
    stmt = select(ReferenceDataItem).where(
        ReferenceDataItem.office_id == office.uuid, ReferenceDataItem.kind == kind.value
    )
    if active_only:
        stmt = stmt.where(ReferenceDataItem.is_active.is_(True))
    return list(db.scalars(stmt.order_by(ReferenceDataItem.name)))


def closed_status_ids(db: Session, office: OfficeId) -> set[int]:
    return set(
        db.scalars(
            select(ReferenceDataItem.external_id).where(
                ReferenceDataItem.office_id == office.uuid,
                ReferenceDataItem.kind == ReferenceDataKind.STATUS_TYPES.value,
                ReferenceDataItem.is_closed.is_(True),
            )
        )
    )


def delete_not_synced_since(db: Session, office: OfficeId, cutoff: datetime) -> int:
    """Remove rows the legacy system has not returned since ``cutoff``."""
    result = db.execute(
        delete(ReferenceDataItem).where(
            ReferenceDataItem.office_id == office.uuid,
            ReferenceDataItem.last_synced_at < cutoff,
        ).execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0
