"""Maintenance service - reconciliation with the legacy system and health checks."""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy.orm import Session

from casework.core.identifiers import OfficeId
from casework.core.structured_logging import build_log_context
from casework.db.enums import HealthCheckType, JobName
from casework.db.models import Case, CaseNote, Constituent, Email
from casework.jobs.utils import elapsed_ms
from casework.schemas.jobs import (
    MaintenanceHealthCheckPayload,
    MaintenanceReconcilePayload,
    ScheduledJobResult,
)
from casework.services import shadow_common, sync_status_service
from casework.services.legacy_api import LegacyApiClient, LegacySearchResult

logger = logging.getLogger(__name__)

_RECONCILED_MODELS: dict[str, type] = {
    "constituents": Constituent,
    "cases": Case,
    "emails": Email,
}

_INTEGRITY_MODELS: dict[str, type] = {
    "constituents": Constituent,
    "cases": Case,
    "emails": Email,
    "casenotes": CaseNote,
}


class MaintenanceService:
    def __init__(
        self,
        db: Session,
        legacy_api: LegacyApiClient,
        *,
        page_size: int = 100,
        stale_after_minutes: int = 30,
    ):
        self.db = db
        self.legacy_api = legacy_api
        self.page_size = page_size
        self.stale_after = timedelta(minutes=stale_after_minutes)

    # -------------------------------------------------------------------------
    # Reconcile
    # -------------------------------------------------------------------------

    def _search(self, office: OfficeId, entity_type: str) -> Callable[[int], Awaitable[LegacySearchResult]]:
        searches: dict[str, Callable[[int], Awaitable[LegacySearchResult]]] = {
            "constituents": lambda page: self.legacy_api.search_constituents(
                office, page=page, limit=self.page_size
            ),
            "cases": lambda page: self.legacy_api.search_cases(office, page=page, limit=self.page_size),
            "emails": lambda page: self.legacy_api.search_inbox(office, page=page, limit=self.page_size),
        }
        return searches[entity_type]

    async def upstream_ids(self, office: OfficeId, entity_type: str) -> set[int]:
        """Every id the legacy system currently returns for ``entity_type``."""
        search = self._search(office, entity_type)
        ids: set[int] = set()
        page = 1
        while True:
            records = (await search(page)).get("results") or []
            for record in records:
                raw = str(record.get("id", ""))
                if raw.isdigit():
                    ids.add(int(raw))
            if len(records) < self.page_size:
                return ids
            page += 1

    async def reconcile(self, payload: MaintenanceReconcilePayload) -> ScheduledJobResult:
        """Delete local rows whose external id no longer exists upstream (unless dry run)."""
        started = time.monotonic()
        office = payload.office
        model = _RECONCILED_MODELS[payload.entity_type]

        upstream = await self.upstream_ids(office, payload.entity_type)
        local = shadow_common.list_external_ids(self.db, model, office)
        orphaned = sorted(local - upstream)
        deleted = 0
        if orphaned and not payload.dry_run:
            deleted = shadow_common.delete_by_external_ids(self.db, model, office, orphaned)

        logger.info(
            "Reconciled %s: %s local, %s upstream, %s orphaned, %s deleted%s",
            payload.entity_type,
            len(local),
            len(upstream),
            len(orphaned),
            deleted,
            " (dry run)" if payload.dry_run else "",
            extra=build_log_context(
                office_id=office, correlation_id=payload.correlation_id, entity_type=payload.entity_type
            ),
        )
        return ScheduledJobResult(
            success=True,
            job_type=JobName.MAINTENANCE_RECONCILE.value,
            items_processed=deleted,
            details={
                "entity_type": payload.entity_type,
                "dry_run": payload.dry_run,
                "local": len(local),
                "upstream": len(upstream),
                "orphaned": orphaned,
            },
            duration_ms=elapsed_ms(started),
        )

    # -------------------------------------------------------------------------
    # Health checks
    # -------------------------------------------------------------------------

    async def _check_api_connectivity(self, office: OfficeId) -> dict[str, Any]:
        started = time.monotonic()
        try:
            await self.legacy_api.get_status_types(office)
        except Exception as exc:
            logger.warning(
                "Legacy API health check failed: %s",
                type(exc).__name__,
                extra=build_log_context(office_id=office),
            )
            return {"healthy": False, "error": f"{type(exc).__name__}: {exc}", "latency_ms": elapsed_ms(started)}
        return {"healthy": True, "latency_ms": elapsed_ms(started)}

    def _check_sync_status(self, office: OfficeId) -> dict[str, Any]:
        stale: list[str] = []
        failed: list[str] = []
        for status in sync_status_service.list_statuses(self.db, office):
            if status.entity_type.startswith(sync_status_service.POLL_PREFIX):
                continue
            if status.is_running and not sync_status_service.is_active(status, self.stale_after):
                stale.append(status.entity_type)
            if status.last_sync_success is False:
                failed.append(status.entity_type)
        return {"healthy": not stale and not failed, "stale": stale, "failed": failed}

    def _check_data_integrity(self, office: OfficeId) -> dict[str, Any]:
        missing = {
            name: shadow_common.count_missing_external_id(self.db, model, office)
            for name, model in _INTEGRITY_MODELS.items()
        }
        return {"healthy": not any(missing.values()), "missing_external_id": missing}

    async def health_check(self, payload: MaintenanceHealthCheckPayload) -> ScheduledJobResult:
        started = time.monotonic()
        office = payload.office
        if payload.check_type == HealthCheckType.API_CONNECTIVITY:
            report = await self._check_api_connectivity(office)
        elif payload.check_type == HealthCheckType.SYNC_STATUS:
            report = self._check_sync_status(office)
        else:
            report = self._check_data_integrity(office)

        log = logger.info if report["healthy"] else logger.warning
        log(
            "Health check %s: healthy=%s",
            payload.check_type.value,
            report["healthy"],
            extra=build_log_context(office_id=office, correlation_id=payload.correlation_id),
        )
        return ScheduledJobResult(
            success=True,
            job_type=JobName.MAINTENANCE_HEALTH_CHECK.value,
            items_processed=1,
            details={"check_type": payload.check_type.value, **report},
            duration_ms=elapsed_ms(started),
        )
