"""Contract for the legacy case-management API.

The transport is provided by the host application. The pipeline only sees
this protocol and the typed failures below. Payloads are the legacy JSON
shapes as plain dicts; ``legacy_adapters`` maps them onto the shadow store.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from casework.core.identifiers import ExternalId, OfficeId

LegacyRecord = dict[str, Any]
LegacySearchResult = dict[str, Any]  # {"results": [...]}; totals are not trusted


class LegacyApiError(Exception):
    """Failure reported by the legacy API adapter."""

    transient = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.transient


class LegacyAuthError(LegacyApiError):
    """401 that persisted after a fresh authentication attempt."""

    def __init__(self, message: str = "Legacy API authentication failed"):
        super().__init__(message, status_code=401)


class LegacyNotFoundError(LegacyApiError):
    def __init__(self, message: str = "Legacy record not found"):
        super().__init__(message, status_code=404)


class LegacyRateLimitError(LegacyApiError):
    transient = True

    def __init__(self, message: str = "Legacy API rate limit exceeded", retry_after: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class LegacyServerError(LegacyApiError):
    transient = True

    def __init__(self, message: str = "Legacy API server error", status_code: int = 500):
        super().__init__(message, status_code=status_code)


class LegacyTimeoutError(LegacyApiError):
    transient = True

    def __init__(self, message: str = "Legacy API request timed out"):
        super().__init__(message)


def error_for_status(
    status_code: int, message: str, retry_after: float | None = None
) -> LegacyApiError:
    """Map an HTTP status from the legacy API onto the typed failure."""
    if status_code == 401:
        return LegacyAuthError(message)
    if status_code == 404:
        return LegacyNotFoundError(message)
    if status_code == 429:
        return LegacyRateLimitError(message, retry_after=retry_after)
    if status_code >= 500:
        return LegacyServerError(message, status_code=status_code)
    return LegacyApiError(message, status_code=status_code)


class LegacyApiClient(Protocol):
    """Async operations the pipeline needs from the legacy system."""

    # Search (page-based, no trusted total)
    async def search_constituents(
        self,
        office: OfficeId,
        *,
        page: int,
        limit: int,
        modified_after: datetime | None = None,
    ) -> LegacySearchResult: ...

    async def search_cases(
        self,
        office: OfficeId,
        *,
        page: int,
        limit: int,
        modified_from: datetime | None = None,
        modified_to: datetime | None = None,
    ) -> LegacySearchResult: ...

    async def search_inbox(
        self,
        office: OfficeId,
        *,
        page: int,
        limit: int,
        actioned: bool | None = None,
        email_type: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> LegacySearchResult: ...

    async def search_casenotes(
        self,
        office: OfficeId,
        *,
        page: int,
        limit: int,
        case_id: ExternalId | None = None,
        modified_after: datetime | None = None,
    ) -> LegacySearchResult: ...

    # Constituents
    async def get_constituent(
        self, office: OfficeId, constituent_id: ExternalId
    ) -> LegacyRecord | None: ...

    async def create_constituent(self, office: OfficeId, data: dict[str, Any]) -> LegacyRecord: ...

    async def update_constituent(
        self, office: OfficeId, constituent_id: ExternalId, data: dict[str, Any]
    ) -> LegacyRecord: ...

    async def add_contact_detail(
        self, office: OfficeId, constituent_id: ExternalId, data: dict[str, Any]
    ) -> LegacyRecord: ...

    async def find_constituent_matches(
        self, office: OfficeId, *, email: str, name: str | None = None
    ) -> list[LegacyRecord]: ...

    # Cases
    async def create_case(self, office: OfficeId, data: dict[str, Any]) -> LegacyRecord: ...

    async def update_case(
        self, office: OfficeId, case_id: ExternalId, data: dict[str, Any]
    ) -> LegacyRecord: ...

    # Emails
    async def create_draft_email(self, office: OfficeId, data: dict[str, Any]) -> LegacyRecord: ...

    async def send_draft_email(self, office: OfficeId, email_id: ExternalId) -> None: ...

    async def mark_email_actioned(self, office: OfficeId, email_id: ExternalId) -> None: ...

    async def link_email_to_case(
        self, office: OfficeId, email_id: ExternalId, case_id: ExternalId
    ) -> LegacyRecord: ...

    # Case notes
    async def create_casenote(
        self, office: OfficeId, case_id: ExternalId, data: dict[str, Any]
    ) -> LegacyRecord: ...

    async def update_casenote(
        self, office: OfficeId, casenote_id: ExternalId, data: dict[str, Any]
    ) -> LegacyRecord: ...

    async def delete_casenote(self, office: OfficeId, casenote_id: ExternalId) -> None: ...

    # Reference data
    async def get_case_types(self, office: OfficeId) -> list[LegacyRecord]: ...

    async def get_status_types(self, office: OfficeId) -> list[LegacyRecord]: ...

    async def get_category_types(self, office: OfficeId) -> list[LegacyRecord]: ...

    async def get_contact_types(self, office: OfficeId) -> list[LegacyRecord]: ...

    async def get_caseworkers(self, office: OfficeId) -> list[LegacyRecord]: ...
