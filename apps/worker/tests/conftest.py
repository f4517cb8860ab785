"""
Test configuration and fixtures.

Provides:
- In-memory SQLite engine (StaticPool) with every table created per test
- Database session and session factory bound to that engine
- FakeLegacyApi: in-memory legacy API double that records calls
- RecordingJobStore: captures job submissions without a queue
"""

from __future__ import annotations

import itertools
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from casework.core.config import Settings
from casework.core.identifiers import ExternalId, OfficeId
from casework.db.base import Base
from casework.db.enums import JobName
from casework.db.session import build_session_factory
from casework.jobs.dependencies import WorkerDependencies
from casework.services.triage_cache import TriageCache


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def office() -> OfficeId:
    return OfficeId.create(uuid.uuid4())


@pytest.fixture
def settings() -> Settings:
    return Settings(DATABASE_URL="sqlite://", LLM_API_KEY="", _env_file=None)


# =============================================================================
# Legacy API double
# =============================================================================


class FakeLegacyApi:
    """
    In-memory legacy API.

    Search results are served from the ``constituents``, ``cases``,
    ``emails`` and ``casenotes`` lists, paged by ``page``/``limit``. Filters are
    recorded in ``calls`` but not applied. Setting ``failures[method]`` makes
    that method raise.
    """

    def __init__(self):
        self.constituents: list[dict[str, Any]] = []
        self.cases: list[dict[str, Any]] = []
        self.emails: list[dict[str, Any]] = []
        self.casenotes: list[dict[str, Any]] = []
        self.reference: dict[str, list[dict[str, Any]]] = {
            "caseTypes": [],
            "statusTypes": [],
            "categoryTypes": [],
            "contactTypes": [],
            "caseworkers": [],
        }
        self.constituent_matches: list[dict[str, Any]] = []
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.before_search: Callable[[str, int], None] | None = None
        self._ids = itertools.count(5000)

    def _record(self, method: str, **kwargs: Any) -> None:
        self.calls.append((method, kwargs))
        if method in self.failures:
            raise self.failures[method]

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def _page(self, method: str, records: list[dict[str, Any]], page: int, limit: int) -> dict[str, Any]:
        if self.before_search is not None:
            self.before_search(method, page)
        start = (page - 1) * limit
        return {"results": records[start : start + limit]}

    # Search
    async def search_constituents(self, office, *, page, limit, modified_after=None):
        self._record("search_constituents", page=page, limit=limit, modified_after=modified_after)
        return self._page("search_constituents", self.constituents, page, limit)

    async def search_cases(self, office, *, page, limit, modified_from=None, modified_to=None):
        self._record("search_cases", page=page, limit=limit, modified_from=modified_from, modified_to=modified_to)
        return self._page("search_cases", self.cases, page, limit)

    async def search_inbox(
        self, office, *, page, limit, actioned=None, email_type=None, date_from=None, date_to=None
    ):
        self._record(
            "search_inbox",
            page=page,
            limit=limit,
            actioned=actioned,
            email_type=email_type,
            date_from=date_from,
        )
        return self._page("search_inbox", self.emails, page, limit)

    async def search_casenotes(self, office, *, page, limit, case_id=None, modified_after=None):
        self._record("search_casenotes", page=page, limit=limit, case_id=case_id, modified_after=modified_after)
        return self._page("search_casenotes", self.casenotes, page, limit)

    # Constituents
    async def get_constituent(self, office, constituent_id: ExternalId):
        self._record("get_constituent", constituent_id=constituent_id.value)
        return next((c for c in self.constituents if c["id"] == constituent_id.value), None)

    async def create_constituent(self, office, data):
        self._record("create_constituent", data=data)
        return {"id": next(self._ids), **data}

    async def update_constituent(self, office, constituent_id, data):
        self._record("update_constituent", constituent_id=constituent_id.value, data=data)
        return {"id": constituent_id.value, **data}

    async def add_contact_detail(self, office, constituent_id, data):
        self._record("add_contact_detail", constituent_id=constituent_id.value, data=data)
        return {"id": next(self._ids), **data}

    async def find_constituent_matches(self, office, *, email, name=None):
        self._record("find_constituent_matches", email=email)
        return list(self.constituent_matches)

    # Cases
    async def create_case(self, office, data):
        self._record("create_case", data=data)
        return {"id": next(self._ids), **data}

    async def update_case(self, office, case_id, data):
        self._record("update_case", case_id=case_id.value, data=data)
        return {"id": case_id.value, **data}

    # Emails
    async def create_draft_email(self, office, data):
        self._record("create_draft_email", data=data)
        return {"id": next(self._ids), **data}

    async def send_draft_email(self, office, email_id):
        self._record("send_draft_email", email_id=email_id.value)

    async def mark_email_actioned(self, office, email_id):
        self._record("mark_email_actioned", email_id=email_id.value)

    async def link_email_to_case(self, office, email_id, case_id):
        self._record("link_email_to_case", email_id=email_id.value, case_id=case_id.value)
        return {"id": next(self._ids)}

    # Case notes
    async def create_casenote(self, office, case_id, data):
        self._record("create_casenote", case_id=case_id.value, data=data)
        return {"id": next(self._ids), **data}

    async def update_casenote(self, office, casenote_id, data):
        self._record("update_casenote", casenote_id=casenote_id.value, data=data)
        return {"id": casenote_id.value, **data}

    async def delete_casenote(self, office, casenote_id):
        self._record("delete_casenote", casenote_id=casenote_id.value)

    # Reference data
    async def get_case_types(self, office):
        self._record("get_case_types")
        return self.reference["caseTypes"]

    async def get_status_types(self, office):
        self._record("get_status_types")
        return self.reference["statusTypes"]

    async def get_category_types(self, office):
        self._record("get_category_types")
        return self.reference["categoryTypes"]

    async def get_contact_types(self, office):
        self._record("get_contact_types")
        return self.reference["contactTypes"]

    async def get_caseworkers(self, office):
        self._record("get_caseworkers")
        return self.reference["caseworkers"]


@pytest.fixture
def legacy_api() -> FakeLegacyApi:
    return FakeLegacyApi()


# =============================================================================
# Job store double
# =============================================================================


@dataclass
class SentJob:
    name: JobName
    payload: Any
    options: Any = None
    singleton: bool = False
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))


class RecordingJobStore:
    """Captures submissions in order. ``taken_singletons`` simulates held keys."""

    def __init__(self):
        self.sent: list[SentJob] = []
        self.taken_singletons: set[str] = set()

    async def send(self, name, payload, options=None):
        job = SentJob(name=JobName(name), payload=payload, options=options)
        self.sent.append(job)
        return job.job_id

    async def send_batch(self, jobs):
        return [await self.send(name, payload, options) for name, payload, options in jobs]

    async def send_singleton(self, name, payload, options=None):
        if JobName(name).value in self.taken_singletons:
            return None
        job = SentJob(name=JobName(name), payload=payload, options=options, singleton=True)
        self.sent.append(job)
        return job.job_id

    def named(self, name: JobName) -> list[SentJob]:
        return [job for job in self.sent if job.name == name]


@pytest.fixture
def job_store() -> RecordingJobStore:
    return RecordingJobStore()


@pytest.fixture
def triage_cache() -> TriageCache:
    return TriageCache(ttl_seconds=3600, max_entries=100)


@pytest.fixture
def deps(settings, legacy_api, job_store, triage_cache) -> WorkerDependencies:
    return WorkerDependencies(
        settings=settings,
        legacy_api=legacy_api,
        jobs=job_store,
        cache=triage_cache,
    )


@pytest.fixture
def make_job():
    """Build a minimal stand-in for a leased ``Job`` row."""

    def _make(name: JobName, payload: dict[str, Any]):
        return type(
            "Job",
            (),
            {
                "id": uuid.uuid4(),
                "name": name.value,
                "payload": payload,
                "attempts": 1,
            },
        )()

    return _make
