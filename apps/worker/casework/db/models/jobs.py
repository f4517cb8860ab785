"""Durable job queue tables."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from casework.db.base import Base
from casework.db.enums import JobState
from casework.db.types import JSONType
from casework.utils.datetime_parsing import utcnow

_LIVE_STATES_SQL = "state IN ('created', 'active')"


class Job(Base):
    """
    Background job leased by worker tasks.

    A job is created in ``created``, moves to ``active`` when a worker leases
    it and ends in one of the terminal states. Failed attempts with budget left
    go back to ``created`` with a later ``start_after``.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_fetch", "name", "state", "start_after"),
        Index("idx_jobs_office", "office_id", "created_at"),
        Index(
            "uq_jobs_live_singleton",
            "name",
            "singleton_key",
            unique=True,
            postgresql_where=text(f"singleton_key IS NOT NULL AND {_LIVE_STATES_SQL}"),
            sqlite_where=text(f"singleton_key IS NOT NULL AND {_LIVE_STATES_SQL}"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    office_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    output: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobState.CREATED.value
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Retry policy snapshot taken at submission time
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_backoff: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expire_in_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=900)
    dead_letter: Mapped[str | None] = mapped_column(String(100), nullable=True)

    singleton_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    start_after: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)


class JobQueue(Base):
    """Provisioned queue names. Sending to a missing queue is a configuration fault."""

    __tablename__ = "job_queues"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)


class JobSchedule(Base):
    """Recurring cron submission, one row per (queue, key)."""

    __tablename__ = "job_schedules"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True, default="")
    cron: Mapped[str] = mapped_column(String(100), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    options: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    next_run_at: Mapped[datetime] = mapped_column(nullable=False)
    last_run_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)
