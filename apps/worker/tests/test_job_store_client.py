import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest

from casework.db.enums import DeadLetterQueue, JobName, JobState
from casework.db.models import Job, JobSchedule
from casework.jobs.client import JobStoreClient, JobStoreNotStartedError, QueueNotProvisionedError
from casework.jobs.policies import JobOptions
from casework.schemas.jobs import PushConstituentPayload
from casework.utils.datetime_parsing import to_utc, utcnow


@asynccontextmanager
async def started_client(session_factory, poll_interval_seconds: float = 60):
    client = JobStoreClient(session_factory, poll_interval_seconds=poll_interval_seconds)
    await client.start()
    try:
        yield client
    finally:
        await client.stop()


def _push_payload(office) -> PushConstituentPayload:
    return PushConstituentPayload(
        office_id=office.value, constituent_id=str(uuid.uuid4()), operation="create"
    )


@pytest.mark.asyncio
async def test_send_requires_start(session_factory, office):
    client = JobStoreClient(session_factory)
    with pytest.raises(JobStoreNotStartedError):
        await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office))


@pytest.mark.asyncio
async def test_send_snapshots_registered_policy(session_factory, office):
    async with started_client(session_factory) as client:
        job_id = await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office))
        job = await client.get_job(job_id)

    assert job.state == JobState.CREATED.value
    assert job.retry_limit == 5
    assert job.retry_delay_seconds == 30
    assert job.retry_backoff is True
    assert job.dead_letter == DeadLetterQueue.PUSH.value
    assert job.office_id == office.uuid
    assert job.payload["type"] == "push:constituent"


@pytest.mark.asyncio
async def test_send_to_unprovisioned_queue_raises(session_factory, office):
    async with started_client(session_factory) as client:
        with pytest.raises(QueueNotProvisionedError):
            await client.send("not-a-queue", {"office_id": office.value})


@pytest.mark.asyncio
async def test_send_singleton_returns_none_when_key_is_held(session_factory, office):
    payload = {"office_id": office.value, "type": "sync:all"}
    async with started_client(session_factory) as client:
        first = await client.send_singleton(JobName.SYNC_ALL, payload)
        second = await client.send_singleton(JobName.SYNC_ALL, payload)
        job = await client.get_job(first)

    assert first is not None
    assert second is None
    assert job.singleton_key == f"{office.value}:sync:all"


@pytest.mark.asyncio
async def test_singleton_keys_are_scoped_per_office(session_factory, office):
    other_office = {"office_id": str(uuid.uuid4())}
    async with started_client(session_factory) as client:
        first = await client.send_singleton(JobName.SYNC_ALL, {"office_id": office.value})
        second = await client.send_singleton(JobName.SYNC_ALL, other_office)

    assert first is not None
    assert second is not None


@pytest.mark.asyncio
async def test_fetch_leases_by_priority_and_counts_attempts(session_factory, office):
    async with started_client(session_factory) as client:
        low = await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office))
        high = await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office), JobOptions(priority=10))

        leased = await client.fetch(JobName.PUSH_CONSTITUENT)
        remaining = await client.get_queue_size(JobName.PUSH_CONSTITUENT)

    assert [str(job.id) for job in leased] == [high]
    assert leased[0].state == JobState.ACTIVE.value
    assert leased[0].attempts == 1
    assert remaining == 1
    assert low != high


@pytest.mark.asyncio
async def test_failed_attempt_is_retried_with_exponential_backoff(session_factory, office):
    async with started_client(session_factory) as client:
        job_id = await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office))

        await client.fetch(JobName.PUSH_CONSTITUENT)
        before = utcnow()
        first = await client.fail(job_id, RuntimeError("upstream down"))

        # Make the retry due immediately, then fail it again.
        with session_factory() as db:
            db.get(Job, uuid.UUID(job_id)).start_after = utcnow() - timedelta(seconds=1)
            db.commit()
        await client.fetch(JobName.PUSH_CONSTITUENT)
        before_second = utcnow()
        second = await client.fail(job_id, RuntimeError("still down"))

    assert first.state == JobState.CREATED.value
    assert first.last_error == "RuntimeError: upstream down"
    first_delay = (to_utc(first.start_after) - before).total_seconds()
    assert 29 <= first_delay <= 31

    assert second.state == JobState.CREATED.value
    assert second.attempts == 2
    second_delay = (to_utc(second.start_after) - before_second).total_seconds()
    assert 59 <= second_delay <= 61


@pytest.mark.asyncio
async def test_exhausted_job_is_dead_lettered(session_factory, office):
    payload = _push_payload(office)
    async with started_client(session_factory) as client:
        job_id = await client.send(JobName.PUSH_CONSTITUENT, payload, JobOptions(retry_limit=0))
        await client.fetch(JobName.PUSH_CONSTITUENT)
        settled = await client.fail(job_id, "LegacyServerError: 503")
        dead = await client.fetch(DeadLetterQueue.PUSH.value)

    assert settled.state == JobState.FAILED.value
    assert len(dead) == 1
    assert dead[0].payload["original_job_id"] == job_id
    assert dead[0].payload["original_name"] == JobName.PUSH_CONSTITUENT.value
    assert dead[0].payload["payload"]["constituent_id"] == payload.constituent_id
    assert dead[0].payload["error"] == "LegacyServerError: 503"


@pytest.mark.asyncio
async def test_execute_stores_handler_output(session_factory, office):
    async def handler(job):
        return {"seen": job.payload["office_id"]}

    async with started_client(session_factory) as client:
        await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office))
        [job] = await client.fetch(JobName.PUSH_CONSTITUENT)
        settled = await client.execute(job, handler)

    assert settled.state == JobState.COMPLETED.value
    assert settled.output == {"seen": office.value}


@pytest.mark.asyncio
async def test_execute_applies_retry_policy_when_handler_raises(session_factory, office):
    async def handler(job):
        raise ValueError("bad payload")

    async with started_client(session_factory) as client:
        await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office))
        [job] = await client.fetch(JobName.PUSH_CONSTITUENT)
        settled = await client.execute(job, handler)

    assert settled.state == JobState.CREATED.value
    assert settled.last_error == "ValueError: bad payload"


@pytest.mark.asyncio
async def test_recover_expired_lease_retries_or_expires(session_factory, office):
    async with started_client(session_factory) as client:
        retried_id = await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office))
        expired_id = await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office), JobOptions(retry_limit=0))
        await client.fetch(JobName.PUSH_CONSTITUENT, batch_size=2)

        with session_factory() as db:
            for job_id in (retried_id, expired_id):
                db.get(Job, uuid.UUID(job_id)).started_at = utcnow() - timedelta(hours=1)
            db.commit()

        recovered = await client.recover_expired()
        retried = await client.get_job(retried_id)
        expired = await client.get_job(expired_id)

    assert recovered == 2
    assert retried.state == JobState.CREATED.value
    assert expired.state == JobState.EXPIRED.value


@pytest.mark.asyncio
async def test_cancel_and_resume(session_factory, office):
    async with started_client(session_factory) as client:
        job_id = await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office))
        assert await client.cancel(job_id) is True
        assert (await client.get_job(job_id)).state == JobState.CANCELLED.value
        assert await client.cancel(job_id) is False

        assert await client.resume(job_id) is True
        assert (await client.get_job(job_id)).state == JobState.CREATED.value


@pytest.mark.asyncio
async def test_purge_queue_removes_only_created_jobs(session_factory, office):
    async with started_client(session_factory) as client:
        await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office))
        await client.send(JobName.PUSH_CONSTITUENT, _push_payload(office))
        [active] = await client.fetch(JobName.PUSH_CONSTITUENT)

        removed = await client.purge_queue(JobName.PUSH_CONSTITUENT)
        still_there = await client.get_job(active.id)

    assert removed == 1
    assert still_there.state == JobState.ACTIVE.value


@pytest.mark.asyncio
async def test_due_schedule_fires_once_while_previous_run_is_live(session_factory, office):
    payload = {"office_id": office.value, "type": "scheduled:poll-legacy", "poll_type": "all"}
    async with started_client(session_factory) as client:
        schedule = await client.schedule(
            JobName.SCHEDULED_POLL_LEGACY, "*/5 * * * *", payload, timezone="Europe/London", key=office.value
        )
        assert to_utc(schedule.next_run_at) > utcnow()

        def make_due():
            with session_factory() as db:
                row = db.get(JobSchedule, (JobName.SCHEDULED_POLL_LEGACY.value, office.value))
                row.next_run_at = utcnow() - timedelta(seconds=1)
                db.commit()

        make_due()
        first = await client.fire_due_schedules()
        make_due()
        second = await client.fire_due_schedules()
        job = await client.get_job(first[0])

    assert len(first) == 1 and first[0] is not None
    assert second == [None]
    assert job.singleton_key == f"{office.value}:scheduled:poll-legacy"


@pytest.mark.asyncio
async def test_invalid_cron_is_rejected(session_factory, office):
    async with started_client(session_factory) as client:
        with pytest.raises(ValueError):
            await client.schedule(JobName.SCHEDULED_CLEANUP, "not a cron", {"office_id": office.value})


@pytest.mark.asyncio
async def test_registered_worker_processes_submitted_job(session_factory, office):
    seen: list[str] = []

    async def handler(job):
        seen.append(job.payload["check_type"])
        return {"ok": True}

    client = JobStoreClient(session_factory, poll_interval_seconds=0.01)
    client.work(JobName.MAINTENANCE_HEALTH_CHECK, handler)
    await client.start()
    try:
        job_id = await client.send(
            JobName.MAINTENANCE_HEALTH_CHECK, {"office_id": office.value, "check_type": "sync_status"}
        )
        job = None
        for _ in range(300):
            job = await client.get_job(job_id)
            if job.state == JobState.COMPLETED.value:
                break
            await asyncio.sleep(0.01)
    finally:
        await client.stop()

    assert job.state == JobState.COMPLETED.value
    assert job.output == {"ok": True}
    assert seen == ["sync_status"]
    assert client.is_running() is False


def test_work_rejects_duplicate_registration(session_factory):
    async def handler(job):
        return None

    client = JobStoreClient(session_factory)
    client.work(JobName.SYNC_CASES, handler)
    with pytest.raises(ValueError):
        client.work(JobName.SYNC_CASES, handler)


@pytest.mark.asyncio
async def test_create_queue_provisions_custom_queue(session_factory, office):
    async with started_client(session_factory) as client:
        await client.create_queue("reports:weekly")
        job_id = await client.send("reports:weekly", {"office_id": office.value})

        assert job_id is not None
        assert await client.get_queue_size("reports:weekly") == 1
