"""Sync service - pull legacy records into the shadow store one page per job.

A sync run is a chain of jobs. The first page fixes the watermark and marks
the run as started; each page upserts its records, checkpoints the running
totals and, if the page was full, submits the next page as a fresh job. Runs
are cancelled cooperatively between pages.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy.orm import Session

from casework.core.identifiers import ExternalId, OfficeId
from casework.core.structured_logging import build_log_context
from casework.db.enums import JobName, ReferenceDataKind, SyncEntityType, SyncMode
from casework.jobs.client import JobSender
from casework.jobs.utils import elapsed_ms
from casework.schemas.jobs import (
    RecordError,
    SyncAllPayload,
    SyncCasesPayload,
    SyncConstituentsPayload,
    SyncEmailsPayload,
    SyncJobResult,
    SyncPagePayload,
    SyncReferenceDataPayload,
)
from casework.services import (
    case_service,
    constituent_service,
    email_service,
    reference_data_service,
    sync_status_service,
)
from casework.services.legacy_adapters import (
    case_fields,
    casenote_fields,
    constituent_contacts,
    constituent_fields,
    email_fields,
    external_id_of,
)
from casework.services.legacy_api import LegacyApiClient
from casework.utils.datetime_parsing import to_utc, utcnow

logger = logging.getLogger(__name__)

PAGED_JOBS: dict[SyncEntityType, JobName] = {
    SyncEntityType.CONSTITUENTS: JobName.SYNC_CONSTITUENTS,
    SyncEntityType.CASES: JobName.SYNC_CASES,
    SyncEntityType.EMAILS: JobName.SYNC_EMAILS,
    SyncEntityType.CASENOTES: JobName.SYNC_CASENOTES,
}

ALL_REFERENCE_KINDS: tuple[ReferenceDataKind, ...] = tuple(ReferenceDataKind)


@dataclass
class PageOutcome:
    created: int = 0
    updated: int = 0
    errors: list[RecordError] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.created + self.updated

    @property
    def failed(self) -> int:
        return len(self.errors)


def _raw_id(record: Any) -> int | None:
    try:
        parsed = ExternalId.parse(record.get("id"))
    except (AttributeError, ValueError):
        return None
    return parsed.value if parsed else None


class SyncService:
    """Legacy -> shadow store synchronisation for one office at a time."""

    def __init__(
        self,
        db: Session,
        legacy_api: LegacyApiClient,
        jobs: JobSender,
        *,
        batch_size: int = 100,
        stale_after_minutes: int = 30,
        default_lookback_hours: int = 24,
    ):
        self.db = db
        self.legacy_api = legacy_api
        self.jobs = jobs
        self.batch_size = batch_size
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.default_lookback = timedelta(hours=default_lookback_hours)

    # -------------------------------------------------------------------------
    # Paged entities
    # -------------------------------------------------------------------------

    def resolve_watermark(
        self, office: OfficeId, entity_type: SyncEntityType, request: SyncPagePayload
    ) -> datetime | None:
        """Lower bound for "modified since" filters. Full syncs have none."""
        if request.mode == SyncMode.FULL:
            return None
        if request.modified_since is not None:
            return request.modified_since
        status = sync_status_service.get_status(self.db, office, entity_type.value)
        if status is not None and status.last_sync_completed_at is not None:
            return to_utc(status.last_sync_completed_at)
        return utcnow() - self.default_lookback

    async def execute_page(
        self, office: OfficeId, entity_type: SyncEntityType, request: SyncPagePayload
    ) -> SyncJobResult:
        """
        Process exactly one page of a sync run.

        Returns a ``SyncJobResult`` describing this page. ``skipped`` is set
        when another run for the same entity is still live, ``cancelled``
        when the run stopped on a cancellation request.
        """
        started = time.monotonic()
        context = build_log_context(
            office_id=office, correlation_id=request.correlation_id, entity_type=entity_type.value
        )
        status = sync_status_service.get_or_create(self.db, office, entity_type.value)

        if not request.is_continuation:
            if sync_status_service.is_active(status, self.stale_after):
                logger.info("Sync %s already running for office; skipping", entity_type.value, extra=context)
                return SyncJobResult(success=True, entity_type=entity_type.value, skipped=True)
            watermark = self.resolve_watermark(office, entity_type, request)
            sync_status_service.begin(self.db, status)
            logger.info(
                "Starting %s sync of %s (since=%s)",
                request.mode.value,
                entity_type.value,
                watermark.isoformat() if watermark else "-",
                extra=context,
            )
        else:
            watermark = request.watermark
            if sync_status_service.is_cancel_requested(self.db, office, entity_type.value):
                sync_status_service.complete(self.db, status, watermark=watermark, cancelled=True)
                logger.info("Sync %s cancelled before page %s", entity_type.value, request.page, extra=context)
                return SyncJobResult(
                    success=True,
                    entity_type=entity_type.value,
                    records_processed=0,
                    cancelled=True,
                    duration_ms=elapsed_ms(started),
                )
            sync_status_service.resume(self.db, status)

        page = request.page
        batch_size = request.batch_size or self.batch_size
        try:
            records = await self._fetch_page(office, entity_type, request, page, batch_size, watermark)
        except Exception as exc:
            sync_status_service.fail(self.db, status, f"{type(exc).__name__}: {exc}")
            logger.error(
                "Sync %s failed on page %s: %s", entity_type.value, page, type(exc).__name__, extra=context
            )
            raise

        outcome = self._apply_page(office, entity_type, records)
        has_more = len(records) >= batch_size
        next_cursor = str(page + 1) if has_more else None
        sync_status_service.checkpoint(
            self.db, status, synced=outcome.processed, failed=outcome.failed, cursor=next_cursor
        )

        result = SyncJobResult(
            success=outcome.failed == 0,
            entity_type=entity_type.value,
            records_processed=outcome.processed,
            records_created=outcome.created,
            records_updated=outcome.updated,
            records_failed=outcome.failed,
            cursor=next_cursor,
            has_more=has_more,
            errors=outcome.errors,
        )

        if has_more and sync_status_service.is_cancel_requested(self.db, office, entity_type.value):
            sync_status_service.complete(self.db, status, watermark=watermark, cancelled=True)
            result.has_more = False
            result.cancelled = True
            result.success = True
            logger.info(
                "Sync %s cancelled after page %s (%s records so far)",
                entity_type.value,
                page,
                status.records_synced,
                extra=context,
            )
        elif has_more:
            continuation = request.model_copy(update={"cursor": next_cursor, "watermark": watermark})
            await self.jobs.send(PAGED_JOBS[entity_type], continuation)
        else:
            sync_status_service.complete(self.db, status, watermark=watermark)
            logger.info(
                "Sync %s complete: %s synced, %s failed",
                entity_type.value,
                status.records_synced,
                status.records_failed,
                extra=context,
            )

        result.duration_ms = elapsed_ms(started)
        return result

    async def _fetch_page(
        self,
        office: OfficeId,
        entity_type: SyncEntityType,
        request: SyncPagePayload,
        page: int,
        batch_size: int,
        watermark: datetime | None,
    ) -> list[dict[str, Any]]:
        if entity_type == SyncEntityType.CONSTITUENTS:
            response = await self.legacy_api.search_constituents(
                office, page=page, limit=batch_size, modified_after=watermark
            )
        elif entity_type == SyncEntityType.CASES:
            response = await self.legacy_api.search_cases(
                office,
                page=page,
                limit=batch_size,
                modified_from=watermark,
                modified_to=utcnow() if watermark else None,
            )
        elif entity_type == SyncEntityType.EMAILS:
            email_type = getattr(request, "email_type", None)
            response = await self.legacy_api.search_inbox(
                office,
                page=page,
                limit=batch_size,
                actioned=getattr(request, "actioned_only", None),
                email_type=email_type.value if email_type else None,
                date_from=watermark,
            )
        elif entity_type == SyncEntityType.CASENOTES:
            case_external_id = getattr(request, "case_external_id", None)
            response = await self.legacy_api.search_casenotes(
                office,
                page=page,
                limit=batch_size,
                case_id=ExternalId.create(case_external_id) if case_external_id is not None else None,
                modified_after=watermark,
            )
        else:
            raise ValueError(f"Entity type {entity_type.value} is not paged")
        return list((response or {}).get("results") or [])

    def _apply_page(
        self, office: OfficeId, entity_type: SyncEntityType, records: list[dict[str, Any]]
    ) -> PageOutcome:
        outcome = PageOutcome()
        synced_at = utcnow()
        for record in records:
            try:
                created = self._upsert_record(office, entity_type, record, synced_at)
            except Exception as exc:
                # One bad record never aborts the page.
                self.db.rollback()
                outcome.errors.append(RecordError(external_id=_raw_id(record), error=str(exc) or type(exc).__name__))
                continue
            if created:
                outcome.created += 1
            else:
                outcome.updated += 1
        return outcome

    def _upsert_record(
        self, office: OfficeId, entity_type: SyncEntityType, record: dict[str, Any], synced_at: datetime
    ) -> bool:
        external_id = external_id_of(record)
        if entity_type == SyncEntityType.CONSTITUENTS:
            _, created = constituent_service.upsert_from_legacy(
                self.db,
                office,
                external_id,
                constituent_fields(record),
                contacts=constituent_contacts(record),
                synced_at=synced_at,
            )
        elif entity_type == SyncEntityType.CASES:
            _, created = case_service.upsert_from_legacy(
                self.db, office, external_id, case_fields(record), synced_at=synced_at
            )
        elif entity_type == SyncEntityType.EMAILS:
            _, created = email_service.upsert_from_legacy(
                self.db, office, external_id, email_fields(record), synced_at=synced_at
            )
        else:
            _, created = case_service.upsert_casenote_from_legacy(
                self.db, office, external_id, casenote_fields(record), synced_at=synced_at
            )
        return created

    # -------------------------------------------------------------------------
    # Reference data
    # -------------------------------------------------------------------------

    def _reference_loaders(self) -> dict[ReferenceDataKind, Callable[[OfficeId], Awaitable[list[dict[str, Any]]]]]:
        return {
            ReferenceDataKind.CASE_TYPES: self.legacy_api.get_case_types,
            ReferenceDataKind.STATUS_TYPES: self.legacy_api.get_status_types,
            ReferenceDataKind.CATEGORY_TYPES: self.legacy_api.get_category_types,
            ReferenceDataKind.CONTACT_TYPES: self.legacy_api.get_contact_types,
            ReferenceDataKind.CASEWORKERS: self.legacy_api.get_caseworkers,
        }

    async def sync_reference_data(
        self, office: OfficeId, kinds: list[ReferenceDataKind] | None = None
    ) -> SyncJobResult:
        """
        Upsert every requested reference-data kind.

        A failing kind is recorded and the others continue. The run raises only
        when every requested kind failed.
        """
        started = time.monotonic()
        entity_type = SyncEntityType.REFERENCE_DATA.value
        context = build_log_context(office_id=office, entity_type=entity_type)
        requested = list(kinds or ALL_REFERENCE_KINDS)
        status = sync_status_service.get_or_create(self.db, office, entity_type)
        sync_status_service.begin(self.db, status)

        loaders = self._reference_loaders()
        written = 0
        errors: list[RecordError] = []
        for kind in requested:
            try:
                records = await loaders[kind](office)
                count = reference_data_service.upsert_items(self.db, office, kind, list(records or []))
            except Exception as exc:
                self.db.rollback()
                errors.append(RecordError(external_id=None, error=f"{kind.value}: {type(exc).__name__}: {exc}"))
                logger.warning("Reference data %s failed: %s", kind.value, type(exc).__name__, extra=context)
                continue
            written += count
            logger.info("Synced %s %s", count, kind.value, extra=context)

        sync_status_service.checkpoint(self.db, status, synced=written, failed=len(errors), cursor=None)
        if requested and len(errors) == len(requested):
            message = "; ".join(error.error for error in errors)
            sync_status_service.fail(self.db, status, message)
            raise RuntimeError(f"Reference data sync failed for every kind: {message}")

        sync_status_service.complete(self.db, status)
        return SyncJobResult(
            success=not errors,
            entity_type=entity_type,
            records_processed=written,
            records_updated=written,
            records_failed=len(errors),
            errors=errors,
            duration_ms=elapsed_ms(started),
        )

    # -------------------------------------------------------------------------
    # Fan-out
    # -------------------------------------------------------------------------

    async def fan_out_sync_all(self, payload: SyncAllPayload) -> dict[str, str | None]:
        """Submit reference data first, then constituents, cases and emails."""
        common: dict[str, Any] = {
            "office_id": payload.office_id,
            "correlation_id": payload.correlation_id,
            "initiated_by": payload.initiated_by,
        }
        children: list[tuple[JobName, Any]] = []
        if payload.include_reference_data:
            children.append((JobName.SYNC_REFERENCE_DATA, SyncReferenceDataPayload(**common)))
        children.extend(
            [
                (JobName.SYNC_CONSTITUENTS, SyncConstituentsPayload(mode=payload.mode, **common)),
                (JobName.SYNC_CASES, SyncCasesPayload(mode=payload.mode, **common)),
                (JobName.SYNC_EMAILS, SyncEmailsPayload(mode=payload.mode, **common)),
            ]
        )
        submitted: dict[str, str | None] = {}
        for name, child in children:
            submitted[name.value] = await self.jobs.send(name, child)
        logger.info(
            "Scheduled %s child sync jobs",
            len(children),
            extra=build_log_context(office_id=payload.office_id, correlation_id=payload.correlation_id),
        )
        return submitted

