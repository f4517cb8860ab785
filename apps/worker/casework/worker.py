"""
Background worker for the casework job pipeline.

Usage:
    python -m casework.worker

Registers a handler for every job queue, sets up recurring schedules for the
offices in WORKER_OFFICE_IDS and processes jobs until interrupted.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import signal

from casework.core.config import ConfigurationError, Settings, load_settings
from casework.core.identifiers import OfficeId
from casework.core.structured_logging import build_log_context
from casework.db.base import Base
from casework.db.enums import JobName
from casework.db.session import build_engine, build_session_factory
from casework.jobs.client import JobStoreClient
from casework.jobs.dependencies import WorkerDependencies
from casework.jobs.policies import default_concurrency
from casework.jobs.registry import resolve_job_handler
from casework.services.legacy_api import LegacyApiClient
from casework.services.llm_analysis_service import build_llm_service
from casework.services.queue_service import QueueService
from casework.services.triage_cache import TriageCache

logger = logging.getLogger(__name__)


def load_legacy_api(settings: Settings) -> LegacyApiClient:
    """Instantiate the host-supplied legacy API client from LEGACY_API_FACTORY."""
    target = settings.LEGACY_API_FACTORY.strip()
    if not target:
        raise ConfigurationError("LEGACY_API_FACTORY is not set; the worker needs a legacy API client")
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"LEGACY_API_FACTORY must look like 'package.module:factory', got {target!r}")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"Cannot load legacy API factory {target!r}: {exc}") from exc
    return factory(settings)


def bind_handler(name: JobName, session_factory, deps: WorkerDependencies):
    """Adapt a registry handler to the job store's one-argument handler signature."""
    handler = resolve_job_handler(name.value)

    async def run(job):
        with session_factory() as db:
            return await handler(db, job, deps)

    return run


def register_workers(client: JobStoreClient, session_factory, deps: WorkerDependencies) -> None:
    concurrency = deps.settings.concurrency_by_family
    for name in JobName:
        client.work(name, bind_handler(name, session_factory, deps), default_concurrency(name, concurrency))


async def worker_loop(settings: Settings) -> None:
    engine = build_engine(settings.DATABASE_URL)
    if settings.DB_CREATE_TABLES:
        Base.metadata.create_all(engine)
    session_factory = build_session_factory(engine)

    client = JobStoreClient(
        session_factory,
        poll_interval_seconds=settings.QUEUE_POLL_INTERVAL_SECONDS,
        maintenance_interval_seconds=settings.QUEUE_MAINTENANCE_INTERVAL_SECONDS,
        delete_after_days=settings.QUEUE_DELETE_AFTER_DAYS,
    )
    cache = TriageCache(settings.TRIAGE_CACHE_TTL_SECONDS, settings.TRIAGE_CACHE_MAX_ENTRIES)
    deps = WorkerDependencies(
        settings=settings,
        legacy_api=load_legacy_api(settings),
        jobs=client,
        cache=cache,
        llm_service=build_llm_service(settings),
    )
    register_workers(client, session_factory, deps)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops.
            pass

    await client.start()
    queues = QueueService(client, session_factory, cache, prefetch_ahead=settings.TRIAGE_PREFETCH_AHEAD)
    for raw_office in settings.office_ids_list:
        office = OfficeId.create(raw_office)
        await queues.setup_office_schedules(
            office,
            poll_cron=settings.POLL_CRON,
            full_sync_cron=settings.FULL_SYNC_CRON,
            cleanup_cron=settings.CLEANUP_CRON or None,
            cleanup_older_than_days=settings.CLEANUP_OLDER_THAN_DAYS,
            timezone=settings.SCHEDULE_TIMEZONE,
        )

    logger.info(
        "Worker started (env=%s, queues=%s, llm=%s, offices=%s)",
        settings.ENV,
        len(JobName),
        "on" if deps.llm_service else "off",
        len(settings.office_ids_list),
    )
    try:
        await stop_event.wait()
    finally:
        logger.info("Stopping worker; waiting for in-flight jobs")
        await client.stop()
        engine.dispose()


def main() -> None:
    """Entry point for the worker."""
    settings = load_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        asyncio.run(worker_loop(settings))
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception("Worker crashed", extra=build_log_context(job_name="worker"))
        raise


if __name__ == "__main__":
    main()
