"""Hand staging sync runs from the API to the ARQ worker.

The router claims the run in the database first, then calls
`enqueue_staging_sync_job` with the claimed run id; the worker executes it as
a continuation of that run.

USAGE:
    from codsync.workers.arq_enqueue import enqueue_staging_sync_job

    await enqueue_staging_sync_job(user_id, run_id)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from codsync.deps import get_settings

logger = logging.getLogger(__name__)

QUEUE_NAME = "arq:queue"
JOB_NAME = "process_staging_sync_job"

_pool: Optional[ArqRedis] = None


def get_redis_settings(redis_url: Optional[str] = None) -> RedisSettings:
    """RedisSettings from REDIS_URL (redis://, rediss:// for TLS, /db suffix)."""
    redis_settings = RedisSettings.from_dsn(redis_url or get_settings().REDIS_URL)
    if redis_settings.ssl:
        # Managed Redis (Upstash and friends) presents certificates we cannot verify
        redis_settings.ssl_cert_reqs = "none"
    redis_settings.conn_timeout = 30
    redis_settings.conn_retries = 5
    logger.debug(
        "[ARQ] Redis target %s:%s db=%s ssl=%s",
        redis_settings.host, redis_settings.port, redis_settings.database, redis_settings.ssl,
    )
    return redis_settings


async def get_arq_pool() -> ArqRedis:
    global _pool
    if _pool is None:
        _pool = await create_pool(get_redis_settings(), default_queue_name=QUEUE_NAME)
        logger.info("[ARQ] Redis pool ready")
    return _pool


async def close_arq_pool() -> None:
    """Close the shared pool (API shutdown); the next enqueue reconnects."""
    global _pool
    if _pool is None:
        return
    pool, _pool = _pool, None
    await pool.close()
    logger.info("[ARQ] Redis pool closed")


def staging_sync_job_id(user_id: str | UUID, run_id: str) -> str:
    """One ARQ job per claimed run: re-enqueueing the same run is a no-op."""
    return f"staging-sync:{user_id}:{run_id}"


async def enqueue_staging_sync_job(user_id: str | UUID, run_id: str) -> Dict[str, Any]:
    pool = await get_arq_pool()
    job = await pool.enqueue_job(
        JOB_NAME,
        str(user_id),
        run_id,
        _job_id=staging_sync_job_id(user_id, run_id),
        _queue_name=QUEUE_NAME,
    )

    if job is None:
        logger.info("[ARQ] Run %s of user %s is already queued", run_id, user_id)
        return {"job_id": staging_sync_job_id(user_id, run_id), "status": "duplicate"}

    logger.info("[ARQ] Enqueued run %s of user %s as job %s", run_id, user_id, job.job_id)
    return {"job_id": job.job_id, "status": "enqueued"}
