"""Sync status service - progress, cancellation and poll watermarks."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from casework.core.identifiers import OfficeId
from casework.db.models import SyncStatus
from casework.utils.datetime_parsing import to_utc, utcnow

POLL_PREFIX = "poll_"


def get_status(db: Session, office: OfficeId, entity_type: str) -> SyncStatus | None:
    return db.scalar(
        select(SyncStatus).where(
            SyncStatus.office_id == office.uuid, SyncStatus.entity_type == entity_type
        )
    )


def get_or_create(db: Session, office: OfficeId, entity_type: str) -> SyncStatus:
    status = get_status(db, office, entity_type)
    if status is None:
        status = SyncStatus(office_id=office.uuid, entity_type=entity_type)
        db.add(status)
        db.commit()
    return status


def list_statuses(db: Session, office: OfficeId) -> list[SyncStatus]:
    return list(
        db.scalars(
            select(SyncStatus)
            .where(SyncStatus.office_id == office.uuid)
            .order_by(SyncStatus.entity_type)
        )
    )


def is_active(status: SyncStatus, stale_after: timedelta) -> bool:
    """Running and touched within ``stale_after``. Older runs are treated as crashed."""
    if not status.is_running:
        return False
    last_activity = to_utc(status.updated_at or status.last_sync_started_at)
    return last_activity is not None and utcnow() - last_activity < stale_after


def begin(db: Session, status: SyncStatus) -> SyncStatus:
    now = utcnow()
    status.is_running = True
    status.last_sync_started_at = now
    status.last_sync_error = None
    status.last_sync_cursor = None
    status.records_synced = 0
    status.records_failed = 0
    status.cancel_requested = False
    status.cancelled = False
    status.updated_at = now
    db.commit()
    return status


def resume(db: Session, status: SyncStatus) -> SyncStatus:
    """Mark a run live again before a continuation page (e.g. a retried page after ``fail``)."""
    status.is_running = True
    status.last_sync_error = None
    status.updated_at = utcnow()
    db.commit()
    return status


def checkpoint(
    db: Session, status: SyncStatus, *, synced: int, failed: int, cursor: str | None
) -> SyncStatus:
    """Add one page's counts to the running totals and store the cursor."""
    status.records_synced = (status.records_synced or 0) + synced
    status.records_failed = (status.records_failed or 0) + failed
    status.last_sync_cursor = cursor
    status.updated_at = utcnow()
    db.commit()
    return status


def complete(
    db: Session,
    status: SyncStatus,
    *,
    watermark: datetime | None = None,
    cancelled: bool = False,
) -> SyncStatus:
    now = utcnow()
    completed_at = now
    if watermark is not None and to_utc(watermark) > now:
        completed_at = to_utc(watermark)
    status.is_running = False
    status.last_sync_completed_at = completed_at
    status.last_sync_success = (status.records_failed or 0) == 0
    status.cancelled = cancelled
    status.cancel_requested = False
    status.updated_at = now
    db.commit()
    return status


def fail(db: Session, status: SyncStatus, error: str) -> SyncStatus:
    status.is_running = False
    status.last_sync_success = False
    status.last_sync_error = error[:2000]
    status.updated_at = utcnow()
    db.commit()
    return status


def request_cancel(db: Session, office: OfficeId, entity_type: str) -> bool:
    """Flag a running sync for cancellation. Returns False when nothing is running."""
    status = get_status(db, office, entity_type)
    if status is None or not status.is_running:
        return False
    status.cancel_requested = True
    db.commit()
    return True


def is_cancel_requested(db: Session, office: OfficeId, entity_type: str) -> bool:
    status = get_status(db, office, entity_type)
    if status is None:
        return False
    # Another session may have set the flag since this row was loaded.
    db.refresh(status)
    return bool(status.cancel_requested)


def get_poll_time(db: Session, office: OfficeId, poll_type: str) -> datetime | None:
    status = get_status(db, office, f"{POLL_PREFIX}{poll_type}")
    return to_utc(status.last_sync_completed_at) if status else None


def set_poll_time(db: Session, office: OfficeId, poll_type: str, polled_at: datetime) -> None:
    status = get_or_create(db, office, f"{POLL_PREFIX}{poll_type}")
    status.last_sync_completed_at = polled_at
    status.last_sync_success = True
    status.updated_at = utcnow()
    db.commit()


def delete_stale(db: Session, office: OfficeId, cutoff: datetime) -> int:
    """Delete idle status rows not updated since ``cutoff``."""
    result = db.execute(
        delete(SyncStatus).where(
            SyncStatus.office_id == office.uuid,
            SyncStatus.updated_at < cutoff,
            SyncStatus.is_running.is_(False),
        ).execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0
