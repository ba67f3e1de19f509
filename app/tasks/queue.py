"""
Queue client for enqueuing arq jobs from API endpoints.

Job arguments can carry one-time tokens, so only argument names are logged.
"""

from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from app.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

# Global pool instance (created on first use)
_pool: ArqRedis | None = None


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(settings.ARQ_REDIS_URL)


async def get_queue() -> ArqRedis:
    """
    Get or create arq Redis connection pool.

    Returns:
        ArqRedis pool instance
    """
    global _pool
    if _pool is None:
        _pool = await create_pool(get_redis_settings())
        logger.info("arq_pool_created")
    return _pool


async def enqueue_job(
    function_name: str,
    *args: Any,
    _job_id: str | None = None,
    _defer_by: float | None = None,
    **kwargs: Any,
) -> str | None:
    """
    Enqueue a job to arq worker.

    Args:
        function_name: Name of registered arq function
        *args: Positional arguments for the function
        _job_id: Optional custom job ID
        _defer_by: Optional delay in seconds before job runs
        **kwargs: Keyword arguments for the function

    Returns:
        Job ID if enqueued, None if arq rejected it (duplicate job ID)

    Raises:
        Connection errors from Redis; callers decide whether they are fatal.

    Example:
        await enqueue_job("send_welcome_email_job", email="alice@example.com", username="alice")
    """
    pool = await get_queue()
    job = await pool.enqueue_job(
        function_name,
        *args,
        _job_id=_job_id,
        _defer_by=_defer_by,
        **kwargs,
    )

    if job is None:
        logger.warning("job_enqueue_rejected", function=function_name, job_id=_job_id)
        return None

    logger.debug("job_enqueued", function=function_name, job_id=job.job_id, arg_names=sorted(kwargs))
    return job.job_id


async def close_queue() -> None:
    """Close arq Redis connection pool (call on shutdown)."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("arq_pool_closed")
