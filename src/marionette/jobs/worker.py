"""arq worker - periodic queue maintenance.

Run with: arq marionette.jobs.worker.WorkerSettings

The job queue itself lives in PostgreSQL; Redis only drives the cron
schedule for maintenance tasks.
"""

from datetime import timedelta
from typing import Any

import structlog
from arq.connections import RedisSettings
from arq.cron import cron

from marionette.config import settings
from marionette.services import build_services

log = structlog.get_logger()


def get_redis_settings() -> RedisSettings:
    """Get Redis connection settings."""
    return RedisSettings(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password,
        database=settings.redis_jobs_db,
    )


async def expire_overdue_jobs(ctx: dict[str, Any]) -> dict[str, Any]:
    """Fail queued/processing jobs whose expires_at has passed."""
    services = ctx["services"]
    expired = await services.queue.expire_overdue()
    if expired:
        log.info("expiry_sweep_completed", expired=expired)
    return {"expired": expired}


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup: build services and sweep once immediately."""
    from marionette.main import configure_logging

    configure_logging()
    ctx["services"] = build_services()
    expired = await ctx["services"].queue.expire_overdue()
    log.info("worker_started", expired_on_startup=expired)


async def shutdown(ctx: dict[str, Any]) -> None:
    from marionette.db import dispose_engine

    await dispose_engine()
    log.info("worker_stopped")


def _sweep_minutes() -> set[int]:
    step = settings.expiry_sweep_minutes
    return set(range(0, 60, step))


class WorkerSettings:
    """arq worker settings."""

    redis_settings = get_redis_settings()

    functions = [expire_overdue_jobs]

    cron_jobs = [
        cron(expire_overdue_jobs, minute=_sweep_minutes(), run_at_startup=False),
    ]

    on_startup = startup
    on_shutdown = shutdown

    max_jobs = 4
    job_timeout = timedelta(minutes=5)
