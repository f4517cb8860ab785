"""Structured logging helpers (PHI-safe)."""

from typing import Any


def build_log_context(
    *,
    office_id: object | None = None,
    job_id: object | None = None,
    job_name: str | None = None,
    correlation_id: str | None = None,
    entity_type: str | None = None,
    attempt: int | None = None,
) -> dict[str, Any]:
    """Return a PHI-safe log context dict for use as ``extra=``."""
    context: dict[str, Any] = {}
    if office_id:
        context["office_id"] = str(office_id)
    if job_id:
        context["job_id"] = str(job_id)
    if job_name:
        context["job_name"] = job_name
    if correlation_id:
        context["correlation_id"] = correlation_id
    if entity_type:
        context["entity_type"] = entity_type
    if attempt is not None:
        context["attempt"] = attempt
    return context
