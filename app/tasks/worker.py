"""
ARQ worker configuration and job definitions.

Run worker with: uv run arq app.tasks.worker.WorkerSettings

Email jobs enqueued by the API (send_verification_email_job,
send_password_reset_email_job, send_welcome_email_job) are consumed by the
mail worker, not registered here.
"""

from typing import Any

from arq import cron
from arq.connections import RedisSettings

from app.config import settings
from app.tasks.maintenance_jobs import cleanup_expired_tokens_job


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup - initialize any shared resources."""
    from app.core.logging import configure_logging, get_logger

    configure_logging()
    logger = get_logger(__name__)
    logger.info("arq_worker_starting", redis_url=settings.ARQ_REDIS_URL)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown - cleanup resources."""
    from app.core.logging import get_logger

    logger = get_logger(__name__)
    logger.info("arq_worker_shutdown")


class WorkerSettings:
    """ARQ worker configuration."""

    # Redis connection from settings
    redis_settings = RedisSettings.from_dsn(settings.ARQ_REDIS_URL)

    # Worker behavior
    max_jobs = 10
    job_timeout = 300  # 5 minutes max per job
    keep_result = settings.ARQ_KEEP_RESULT
    max_tries = settings.ARQ_MAX_TRIES

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown

    functions = [cleanup_expired_tokens_job]

    # Hourly, staggered off the hour
    cron_jobs = [
        cron(cleanup_expired_tokens_job, minute={17}, run_at_startup=False),
    ]
