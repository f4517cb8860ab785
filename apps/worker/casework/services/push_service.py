"""Push service - write shadow-store mutations back to the legacy system.

Every attempt is audited, success or failure. Failures are re-raised so the
job store applies the push retry policy and, once exhausted, dead-letters the
job.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Awaitable, Callable

from sqlalchemy.orm import Session

from casework.core.identifiers import ExternalId, OfficeId
from casework.core.structured_logging import build_log_context
from casework.db.enums import PushEntityType
from casework.schemas.jobs import (
    PushCasenotePayload,
    PushCasePayload,
    PushConstituentPayload,
    PushEmailPayload,
    PushJobResult,
)
from casework.services import (
    case_service,
    constituent_service,
    email_service,
    sync_audit_service,
)
from casework.services.legacy_adapters import (
    case_payload,
    casenote_payload,
    constituent_payload,
    email_payload,
)
from casework.services.legacy_api import LegacyApiClient
from casework.utils.datetime_parsing import utcnow

logger = logging.getLogger(__name__)

CREATE_SKIPPED = "create_skipped"
SEND_SKIPPED = "send_skipped"


class PushError(Exception):
    """Base class for push preconditions that fail before any legacy call."""


class DependencyNotPushedError(PushError):
    """A referenced entity has no external id yet, so the legacy system cannot link it."""

    def __init__(self, entity_type: str, entity_id: object):
        super().__init__(f"{entity_type.capitalize()} {entity_id} has not been pushed (no external id)")
        self.entity_type = entity_type
        self.entity_id = str(entity_id)


class PushValidationError(PushError, ValueError):
    """Push data the legacy system would reject."""


class PushTargetNotFoundError(PushError, LookupError):
    def __init__(self, entity_type: str, entity_id: object):
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = str(entity_id)


def _legacy_id(response: dict[str, Any] | None) -> ExternalId:
    external_id = ExternalId.parse((response or {}).get("id"))
    if external_id is None:
        raise ValueError("Legacy API response did not include an id")
    return external_id


# (external id written or touched, operation recorded in the audit log)
_PushStep = Callable[[], Awaitable[tuple[ExternalId | None, str]]]


class PushService:
    def __init__(self, db: Session, legacy_api: LegacyApiClient):
        self.db = db
        self.legacy_api = legacy_api

    async def _audited(
        self,
        office: OfficeId,
        entity_type: PushEntityType,
        internal_id: str,
        operation: str,
        new_data: dict[str, Any],
        step: _PushStep,
        correlation_id: str | None = None,
    ) -> PushJobResult:
        started = time.monotonic()
        context = build_log_context(
            office_id=office, correlation_id=correlation_id, entity_type=entity_type.value
        )
        try:
            external_id, recorded_operation = await step()
        except Exception as exc:
            self.db.rollback()
            sync_audit_service.record(
                self.db,
                office,
                entity_type=entity_type.value,
                operation=operation,
                internal_id=internal_id,
                new_data=new_data,
                error_message=f"{type(exc).__name__}: {exc}",
            )
            logger.error(
                "Push %s %s failed: %s", operation, entity_type.value, type(exc).__name__, extra=context
            )
            raise

        sync_audit_service.record(
            self.db,
            office,
            entity_type=entity_type.value,
            operation=recorded_operation,
            internal_id=internal_id,
            external_id=external_id,
            new_data=new_data,
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Push %s %s %s (external=%s) in %sms",
            recorded_operation,
            entity_type.value,
            internal_id,
            external_id,
            duration_ms,
            extra=context,
        )
        return PushJobResult(
            success=True,
            entity_type=entity_type.value,
            internal_id=internal_id,
            external_id=external_id.value if external_id else None,
            operation=recorded_operation,
            skipped=recorded_operation in (CREATE_SKIPPED, SEND_SKIPPED),
            duration_ms=duration_ms,
        )

    # -------------------------------------------------------------------------
    # Constituents
    # -------------------------------------------------------------------------

    async def push_constituent(self, payload: PushConstituentPayload) -> PushJobResult:
        office = payload.office

        async def step() -> tuple[ExternalId | None, str]:
            constituent = constituent_service.get_constituent(self.db, office, payload.constituent_id)
            if constituent is None:
                raise PushTargetNotFoundError("constituent", payload.constituent_id)
            body = constituent_payload(payload.data)

            if payload.operation == "create":
                if constituent.external_id is not None:
                    return ExternalId.create(constituent.external_id), CREATE_SKIPPED
                response = await self.legacy_api.create_constituent(office, body)
                external_id = _legacy_id(response)
                constituent_service.set_external_id(self.db, constituent, external_id)
                return external_id, "create"

            if constituent.external_id is None:
                raise DependencyNotPushedError("constituent", payload.constituent_id)
            external_id = ExternalId.create(constituent.external_id)
            await self.legacy_api.update_constituent(office, external_id, body)
            return external_id, "update"

        return await self._audited(
            office,
            PushEntityType.CONSTITUENT,
            payload.constituent_id,
            payload.operation,
            payload.data.model_dump(exclude_none=True),
            step,
            payload.correlation_id,
        )

    # -------------------------------------------------------------------------
    # Cases
    # -------------------------------------------------------------------------

    def _constituent_external_id(self, office: OfficeId, constituent_id: uuid.UUID | str | None) -> ExternalId:
        if constituent_id is None:
            raise DependencyNotPushedError("constituent", "(none)")
        constituent = constituent_service.get_constituent(self.db, office, constituent_id)
        if constituent is None or constituent.external_id is None:
            raise DependencyNotPushedError("constituent", constituent_id)
        return ExternalId.create(constituent.external_id)

    async def push_case(self, payload: PushCasePayload) -> PushJobResult:
        office = payload.office

        async def step() -> tuple[ExternalId | None, str]:
            case = case_service.get_case(self.db, office, payload.case_id)
            if case is None:
                raise PushTargetNotFoundError("case", payload.case_id)
            if payload.operation == "create" and case.external_id is not None:
                return ExternalId.create(case.external_id), CREATE_SKIPPED

            # Dependency check happens before any legacy call.
            constituent_external_id = self._constituent_external_id(
                office, payload.data.constituent_id or case.constituent_id
            )
            body = case_payload(payload.data, constituent_external_id)

            if payload.operation == "create":
                response = await self.legacy_api.create_case(office, body)
                external_id = _legacy_id(response)
                case_service.set_external_id(self.db, case, external_id)
                return external_id, "create"

            if case.external_id is None:
                raise DependencyNotPushedError("case", payload.case_id)
            external_id = ExternalId.create(case.external_id)
            await self.legacy_api.update_case(office, external_id, body)
            return external_id, "update"

        return await self._audited(
            office,
            PushEntityType.CASE,
            payload.case_id,
            payload.operation,
            payload.data.model_dump(exclude_none=True),
            step,
            payload.correlation_id,
        )

    # -------------------------------------------------------------------------
    # Emails
    # -------------------------------------------------------------------------

    async def push_email(self, payload: PushEmailPayload) -> PushJobResult:
        office = payload.office
        data = payload.data

        async def step() -> tuple[ExternalId | None, str]:
            email = email_service.get_email(self.db, office, payload.email_id)
            if email is None:
                raise PushTargetNotFoundError("email", payload.email_id)

            if payload.operation == "update":
                if email.external_id is None:
                    raise DependencyNotPushedError("email", payload.email_id)
                external_id = ExternalId.create(email.external_id)
                if data.actioned:
                    await self.legacy_api.mark_email_actioned(office, external_id)
                    email_service.mark_actioned(self.db, email)
                return external_id, "update"

            if not data.subject:
                raise PushValidationError("Email must have a subject")

            if payload.operation == "create":
                if email.external_id is not None:
                    return ExternalId.create(email.external_id), CREATE_SKIPPED
                response = await self.legacy_api.create_draft_email(office, email_payload(data))
                external_id = _legacy_id(response)
                email_service.set_external_id(self.db, email, external_id)
                return external_id, "create"

            # send
            if not data.to:
                raise PushValidationError("Email must have at least one recipient")
            if email.sent_at is not None and email.external_id is not None:
                return ExternalId.create(email.external_id), SEND_SKIPPED
            if email.external_id is None:
                response = await self.legacy_api.create_draft_email(office, email_payload(data))
                # Written back before sending so a redelivery reuses this draft.
                email_service.set_external_id(self.db, email, _legacy_id(response))
            external_id = ExternalId.create(email.external_id)
            await self.legacy_api.send_draft_email(office, external_id)
            email.sent_at = utcnow()
            self.db.commit()
            return external_id, "send"

        return await self._audited(
            office,
            PushEntityType.EMAIL,
            payload.email_id,
            payload.operation,
            data.model_dump(exclude_none=True),
            step,
            payload.correlation_id,
        )

    # -------------------------------------------------------------------------
    # Case notes
    # -------------------------------------------------------------------------

    async def push_casenote(self, payload: PushCasenotePayload) -> PushJobResult:
        office = payload.office

        async def step() -> tuple[ExternalId | None, str]:
            note = case_service.get_casenote(self.db, office, payload.casenote_id)
            note_external_id = payload.casenote_external_id
            if note is not None and note.external_id is not None:
                note_external_id = note.external_id

            if payload.operation == "create":
                if note is None:
                    raise PushTargetNotFoundError("casenote", payload.casenote_id)
                if note.external_id is not None:
                    return ExternalId.create(note.external_id), CREATE_SKIPPED
                case_external_id = payload.case_external_id
                if case_external_id is None and note.case_id is not None:
                    case = case_service.get_case(self.db, office, note.case_id)
                    case_external_id = case.external_id if case else None
                if case_external_id is None:
                    raise DependencyNotPushedError("case", note.case_id or "(none)")
                response = await self.legacy_api.create_casenote(
                    office, ExternalId.create(case_external_id), casenote_payload(payload.data)
                )
                external_id = _legacy_id(response)
                case_service.set_casenote_external_id(self.db, note, external_id)
                return external_id, "create"

            if note_external_id is None:
                raise DependencyNotPushedError("casenote", payload.casenote_id)
            external_id = ExternalId.create(note_external_id)
            if payload.operation == "update":
                await self.legacy_api.update_casenote(office, external_id, casenote_payload(payload.data))
                return external_id, "update"

            await self.legacy_api.delete_casenote(office, external_id)
            if note is not None:
                case_service.delete_casenote(self.db, note)
            return external_id, "delete"

        return await self._audited(
            office,
            PushEntityType.CASENOTE,
            payload.casenote_id,
            payload.operation,
            payload.data.model_dump(exclude_none=True),
            step,
            payload.correlation_id,
        )
