"""Queries shared by the shadow-store services.

Shadow models all carry ``office_id`` and a nullable ``external_id``; these
helpers keep every lookup office-scoped.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from casework.core.identifiers import ExternalId, OfficeId

ModelT = TypeVar("ModelT")


def find_by_external_id(
    db: Session, model: type[ModelT], office: OfficeId, external_id: ExternalId
) -> ModelT | None:
    return db.scalar(
        select(model).where(
            model.office_id == office.uuid,  # type: ignore[attr-defined]
            model.external_id == external_id.value,  # type: ignore[attr-defined]
        )
    )


def apply_fields(row: Any, fields: dict[str, Any], synced_at: datetime | None = None) -> None:
    """Set only the fields present in ``fields``."""
    for name, value in fields.items():
        setattr(row, name, value)
    if synced_at is not None:
        row.last_synced_at = synced_at


def list_external_ids(db: Session, model: type, office: OfficeId) -> set[int]:
    return set(
        db.scalars(
            select(model.external_id).where(
                model.office_id == office.uuid, model.external_id.is_not(None)
            )
        )
    )


def delete_by_external_ids(
    db: Session, model: type, office: OfficeId, external_ids: Iterable[int]
) -> int:
    ids = list(external_ids)
    if not ids:
        return 0
    result = db.execute(
        delete(model)
        .where(model.office_id == office.uuid, model.external_id.in_(ids))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0


def count_missing_external_id(db: Session, model: type, office: OfficeId) -> int:
    return db.scalar(
        select(func.count())
        .select_from(model)
        .where(model.office_id == office.uuid, model.external_id.is_(None))
    ) or 0
