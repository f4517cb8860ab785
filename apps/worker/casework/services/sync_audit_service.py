"""Append-only audit trail for pushes to the legacy system."""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from casework.core.identifiers import ExternalId, OfficeId
from casework.db.models import SyncAuditLog


def record(
    db: Session,
    office: OfficeId,
    *,
    entity_type: str,
    operation: str,
    internal_id: uuid.UUID | str | None = None,
    external_id: ExternalId | None = None,
    old_data: dict[str, Any] | None = None,
    new_data: dict[str, Any] | None = None,
    error_message: str | None = None,
) -> SyncAuditLog:
    entry = SyncAuditLog(
        office_id=office.uuid,
        entity_type=entity_type,
        operation=operation,
        internal_id=uuid.UUID(str(internal_id)) if internal_id else None,
        external_id=external_id.value if external_id else None,
        old_data=old_data,
        new_data=new_data,
        error_message=error_message[:2000] if error_message else None,
    )
    db.add(entry)
    db.commit()
    return entry


def list_entries(
    db: Session, office: OfficeId, entity_type: str | None = None, internal_id: uuid.UUID | None = None
) -> list[SyncAuditLog]:
    stmt = select(SyncAuditLog).where(SyncAuditLog.office_id == office.uuid)
    if entity_type is not None:
        stmt = stmt.where(SyncAuditLog.entity_type == entity_type)
    if internal_id is not None:
        stmt = stmt.where(SyncAuditLog.internal_id == internal_id)
    return list(db.scalars(stmt.order_by(SyncAuditLog.created_at, SyncAuditLog.id)))
