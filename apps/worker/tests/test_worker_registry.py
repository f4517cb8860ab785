import sys
import types

import pytest

from casework import worker as worker_module
from casework.core.config import ConfigurationError, Settings
from casework.db.enums import JobName
from casework.jobs import registry as registry_module
from casework.jobs.registry import JOB_HANDLERS, resolve_job_handler


def test_every_job_name_has_a_handler():
    assert set(JOB_HANDLERS) == {name.value for name in JobName}
    for name in JobName:
        assert callable(resolve_job_handler(name.value))


def test_resolve_job_handler_unknown_type():
    with pytest.raises(ValueError, match="Unknown job type: sync:nothing"):
        resolve_job_handler("sync:nothing")


@pytest.mark.asyncio
async def test_bound_handler_opens_session_and_passes_deps(monkeypatch, session_factory, deps, make_job):
    seen = {}

    async def fake_handler(db, job, handler_deps):
        seen["db"] = db
        seen["job"] = job
        seen["deps"] = handler_deps
        return {"ok": True}

    monkeypatch.setattr(worker_module, "resolve_job_handler", lambda name: fake_handler)

    run = worker_module.bind_handler(JobName.SYNC_CASES, session_factory, deps)
    job = make_job(JobName.SYNC_CASES, {"office_id": "x"})
    result = await run(job)

    assert result == {"ok": True}
    assert seen["job"] is job
    assert seen["deps"] is deps
    assert seen["db"] is not None


def test_register_workers_covers_every_queue(session_factory, deps):
    registered = {}

    class RecordingClient:
        def work(self, name, handler, concurrency=1):
            registered[name] = concurrency

    worker_module.register_workers(RecordingClient(), session_factory, deps)

    assert set(registered) == set(JobName)
    assert registered[JobName.PUSH_CASENOTE] == 2
    assert registered[JobName.TRIAGE_PROCESS_EMAIL] == deps.settings.TRIAGE_CONCURRENCY
    assert registered[JobName.SCHEDULED_POLL_LEGACY] == 1


def test_registry_lookup_is_patchable(monkeypatch):
    async def fake_handler(db, job, deps):
        return None

    monkeypatch.setitem(registry_module.JOB_HANDLERS, JobName.SYNC_ALL.value, fake_handler)
    assert resolve_job_handler(JobName.SYNC_ALL.value) is fake_handler


def test_load_legacy_api_requires_factory():
    settings = Settings(DATABASE_URL="sqlite://", LEGACY_API_FACTORY="", _env_file=None)
    with pytest.raises(ConfigurationError):
        worker_module.load_legacy_api(settings)


def test_load_legacy_api_rejects_malformed_path():
    settings = Settings(DATABASE_URL="sqlite://", LEGACY_API_FACTORY="no_colon_here", _env_file=None)
    with pytest.raises(ConfigurationError):
        worker_module.load_legacy_api(settings)


def test_load_legacy_api_reports_missing_module():
    settings = Settings(
        DATABASE_URL="sqlite://", LEGACY_API_FACTORY="casework_missing.module:build", _env_file=None
    )
    with pytest.raises(ConfigurationError, match="Cannot load legacy API factory"):
        worker_module.load_legacy_api(settings)


def test_load_legacy_api_calls_factory_with_settings(monkeypatch):
    sentinel = object()
    module = types.ModuleType("casework_test_legacy")
    module.build = lambda settings: (sentinel, settings)
    monkeypatch.setitem(sys.modules, "casework_test_legacy", module)

    settings = Settings(
        DATABASE_URL="sqlite://", LEGACY_API_FACTORY="casework_test_legacy:build", _env_file=None
    )
    client, received = worker_module.load_legacy_api(settings)

    assert client is sentinel
    assert received is settings
