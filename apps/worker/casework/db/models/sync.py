"""Sync status and push audit tables."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from casework.db.base import Base
from casework.db.types import JSONType
from casework.utils.datetime_parsing import utcnow


class SyncStatus(Base):
    """
    Progress of the latest sync run per (office, entity type).

    Poll watermarks share this table under ``poll_<type>`` entity types.
    """

    __tablename__ = "sync_status"
    __table_args__ = (UniqueConstraint("office_id", "entity_type", name="uq_sync_status_entity"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    last_sync_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_sync_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_sync_success: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_cursor: Mapped[str | None] = mapped_column(String(255), nullable=True)

    records_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_running: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class SyncAuditLog(Base):
    """Append-only record of every push attempt."""

    __tablename__ = "sync_audit_log"
    __table_args__ = (
        Index("idx_sync_audit_office_created", "office_id", "created_at"),
        Index("idx_sync_audit_entity", "office_id", "entity_type", "internal_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    operation: Mapped[str] = mapped_column(String(30), nullable=False)
    external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    internal_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    old_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    new_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
