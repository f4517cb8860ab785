import pytest

from casework.db.enums import JobName
from casework.jobs.registry import resolve_job_handler
from casework.services import constituent_service


@pytest.mark.asyncio
async def test_sync_all_handler_fans_out(db, office, deps, job_store, make_job):
    job = make_job(JobName.SYNC_ALL, {"office_id": office.value, "mode": "full"})

    result = await resolve_job_handler(job.name)(db, job, deps)

    assert list(result["jobs"]) == [
        JobName.SYNC_REFERENCE_DATA.value,
        JobName.SYNC_CONSTITUENTS.value,
        JobName.SYNC_CASES.value,
        JobName.SYNC_EMAILS.value,
    ]
    assert len(job_store.sent) == 4


@pytest.mark.asyncio
async def test_sync_page_handler_uses_configured_batch_size(db, office, deps, legacy_api, make_job):
    legacy_api.cases = [{"id": value} for value in range(1, 4)]
    job = make_job(JobName.SYNC_CASES, {"office_id": office.value, "mode": "full"})

    result = await resolve_job_handler(job.name)(db, job, deps)

    assert result.records_processed == 3
    [call] = legacy_api.calls_to("search_cases")
    assert call["limit"] == deps.settings.SYNC_BATCH_SIZE


@pytest.mark.asyncio
async def test_push_handler_validates_stored_payload(db, office, deps, legacy_api, make_job):
    constituent = constituent_service.create_local(db, office, first_name="Ada", last_name="Lovelace")
    job = make_job(
        JobName.PUSH_CONSTITUENT,
        {
            "office_id": office.value,
            "constituent_id": str(constituent.id),
            "operation": "create",
            "data": {"first_name": "Ada", "last_name": "Lovelace"},
        },
    )

    result = await resolve_job_handler(job.name)(db, job, deps)

    assert result.success is True
    assert result.external_id == constituent.external_id
    assert len(legacy_api.calls_to("create_constituent")) == 1


@pytest.mark.asyncio
async def test_push_handler_rejects_bad_payload(db, deps, make_job):
    job = make_job(JobName.PUSH_CONSTITUENT, {"office_id": "not-an-office", "operation": "create"})

    with pytest.raises(ValueError):
        await resolve_job_handler(job.name)(db, job, deps)


@pytest.mark.asyncio
async def test_health_check_handler(db, office, deps, make_job):
    job = make_job(
        JobName.MAINTENANCE_HEALTH_CHECK, {"office_id": office.value, "check_type": "data_integrity"}
    )

    result = await resolve_job_handler(job.name)(db, job, deps)

    assert result.details["healthy"] is True
