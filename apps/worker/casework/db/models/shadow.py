"""Shadow store: local mirror of the legacy case-management records.

Every row is office-scoped. ``external_id`` is the legacy key and stays null
for rows created locally until a push writes it back.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from casework.db.base import Base
from casework.db.types import JSONType
from casework.utils.datetime_parsing import utcnow


class Constituent(Base):
    __tablename__ = "constituents"
    __table_args__ = (
        UniqueConstraint("office_id", "external_id", name="uq_constituents_external"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str | None] = mapped_column(String(50), nullable=True)
    organisation_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    geocode_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    geocode_lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    contacts: Mapped[list["ConstituentContact"]] = relationship(
        back_populates="constituent", cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class ConstituentContact(Base):
    """Contact detail (email, phone, address) attached to a constituent."""

    __tablename__ = "constituent_contacts"
    __table_args__ = (
        UniqueConstraint("office_id", "external_id", name="uq_constituent_contacts_external"),
        Index("idx_constituent_contacts_value", "office_id", "normalized_value"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    constituent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("constituents.id", ondelete="CASCADE"), nullable=False
    )
    external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    contact_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    value: Mapped[str] = mapped_column(String(500), nullable=False)
    # Lower-cased email used for exact sender matching
    normalized_value: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    constituent: Mapped[Constituent] = relationship(back_populates="contacts")


class Case(Base):
    __tablename__ = "cases"
    __table_args__ = (
        UniqueConstraint("office_id", "external_id", name="uq_cases_external"),
        Index("idx_cases_constituent", "office_id", "constituent_id", "last_activity_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    constituent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("constituents.id", ondelete="SET NULL"), nullable=True
    )
    constituent_external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    case_type_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category_type_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    contact_type_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assigned_to_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    review_date: Mapped[datetime | None] = mapped_column(nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class Email(Base):
    __tablename__ = "emails"
    __table_args__ = (
        UniqueConstraint("office_id", "external_id", name="uq_emails_external"),
        Index("idx_emails_inbox", "office_id", "type", "actioned"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    case_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("cases.id", ondelete="SET NULL"), nullable=True
    )
    case_external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    constituent_external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    html_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    to_addresses: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    cc_addresses: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    bcc_addresses: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    actioned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    assigned_to_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    received_at: Mapped[datetime | None] = mapped_column(nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class CaseNote(Base):
    __tablename__ = "case_notes"
    __table_args__ = (UniqueConstraint("office_id", "external_id", name="uq_case_notes_external"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    case_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("cases.id", ondelete="CASCADE"), nullable=True
    )
    case_external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    note_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    noted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class ReferenceDataItem(Base):
    """
    Lookup row synced from the legacy system.

    ``kind`` is one of case types, status types, category types, contact
    types or caseworkers. Status types carry ``is_closed`` so open cases can
    be computed locally.
    """

    __tablename__ = "reference_data"
    __table_args__ = (
        UniqueConstraint("office_id", "kind", "external_id", name="uq_reference_data_external"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    external_id: Mapped[int] = mapped_column(Integer, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    attributes: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
