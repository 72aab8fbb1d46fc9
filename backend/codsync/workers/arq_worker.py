"""ARQ async worker - staging reconciliation jobs.

WHAT:
    Processes staging sync jobs enqueued by the API and runs the periodic
    sweep and session cleanup via ARQ cron.

WHY:
    - Runs are long (minutes for large staging backlogs); HTTP requests must
      not hold them
    - ARQ provides async job processing with built-in cron scheduling
    - Clean separation: worker handles orchestration, service handles logic

ARCHITECTURE:
    ┌─────────────────┐      delegates to      ┌───────────────────────┐
    │  arq_worker.py  │───────────────────────▶│ staging_sync_service  │
    │  (jobs + cron)  │                        │   (run orchestration) │
    └─────────────────┘                        └───────────────────────┘

USAGE:
    # Start worker
    arq codsync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m codsync.workers.start_arq_worker
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import UUID

from arq import cron

from codsync.database import SessionLocal
from codsync.deps import get_settings
from codsync.models import (
    WarehouseAccount,
    WarehouseAccountOperation,
    WarehouseAccountStatusEnum,
)
from codsync.services.exceptions import StagingSyncError, SyncAlreadyRunningError
from codsync.services.staging_sync_service import run_staging_sync
from codsync.services.sync_progress_store import purge_stale_sessions
from codsync.telemetry import capture_exception, flush_observability, init_observability
from codsync.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

# Reentrancy guard: a sweep still running when the next cron tick fires is not doubled
_sweep_running = False


# =============================================================================
# STAGING SYNC JOB
# =============================================================================

async def process_staging_sync_job(ctx: Dict, user_id: str, run_id: Optional[str] = None) -> Dict:
    """Run one user's staging reconciliation.

    A refused start (another run owns the session) is an expected outcome,
    logged and returned rather than raised so ARQ does not retry it.
    """
    logger.info("[ARQ] Starting staging sync job for user %s (run %s)", user_id, run_id)

    try:
        result = await run_staging_sync(UUID(user_id), run_id=run_id)
    except SyncAlreadyRunningError as e:
        logger.info("[ARQ] Staging sync for user %s skipped: %s", user_id, e)
        return {"success": False, "error": e.message, "run_id": e.run_id}
    except StagingSyncError as e:
        # Session already marked error and reported by the orchestrator
        logger.error("[ARQ] Staging sync for user %s failed: %s", user_id, e)
        return {"success": False, "error": e.message}
    except Exception as e:
        logger.exception("[ARQ] Staging sync job crashed for user %s: %s", user_id, e)
        capture_exception(e, extra={"operation": "process_staging_sync_job", "user_id": user_id})
        return {"success": False, "error": str(e)}

    return result.to_dict()


# =============================================================================
# SCHEDULED SWEEP
# =============================================================================

def _users_with_linked_accounts(db) -> List[UUID]:
    """Users owning at least one warehouse account linked to an operation.

    Pending accounts count too: the run itself promotes linked ones to active.
    """
    rows = (
        db.query(WarehouseAccount.user_id)
        .join(WarehouseAccountOperation, WarehouseAccountOperation.account_id == WarehouseAccount.id)
        .filter(WarehouseAccount.status.in_([WarehouseAccountStatusEnum.active, WarehouseAccountStatusEnum.pending]))
        .distinct()
        .all()
    )
    return [row.user_id for row in rows]


async def scheduled_staging_sync(ctx: Dict) -> Dict:
    """Scheduled job: reconcile every user with linked warehouse accounts.

    WHEN:
        Every STAGING_SYNC_INTERVAL_MINUTES (default 3).

    WHY:
        Ingestion adapters keep landing rows; users should not have to press
        a button for carrier status to reach their orders.

    Users are processed one after another; a failure for one user is logged
    and the sweep moves on.
    """
    global _sweep_running
    if _sweep_running:
        logger.info("[ARQ] Previous staging sweep still running, skipping this tick")
        return {"skipped": True}

    _sweep_running = True
    summary = {"users": 0, "completed": 0, "refused": 0, "failed": 0}
    try:
        db = SessionLocal()
        try:
            user_ids = await asyncio.to_thread(_users_with_linked_accounts, db)
        finally:
            db.close()

        summary["users"] = len(user_ids)
        for user_id in user_ids:
            try:
                await run_staging_sync(user_id)
                summary["completed"] += 1
            except SyncAlreadyRunningError:
                summary["refused"] += 1
            except Exception as e:
                summary["failed"] += 1
                logger.error("[ARQ] Scheduled staging sync failed for user %s: %s", user_id, e)

        logger.info(
            "[ARQ] Staging sweep complete: users=%d, completed=%d, refused=%d, failed=%d",
            summary["users"], summary["completed"], summary["refused"], summary["failed"],
        )
        return summary

    except Exception as e:
        logger.exception("[ARQ] Staging sweep failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_staging_sync"})
        return {"error": str(e), **summary}
    finally:
        _sweep_running = False


async def scheduled_session_cleanup(ctx: Dict) -> Dict:
    """Scheduled job: purge old and crashed sync sessions (every 6 hours)."""
    settings = get_settings()
    db = SessionLocal()
    try:
        deleted = await asyncio.to_thread(
            purge_stale_sessions,
            db,
            retention_hours=settings.STAGING_SYNC_SESSION_RETENTION_HOURS,
        )
        logger.info("[ARQ] Session cleanup complete: deleted=%d", deleted)
        return {"deleted": deleted}
    except Exception as e:
        logger.exception("[ARQ] Session cleanup failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_session_cleanup"})
        return {"error": str(e)}
    finally:
        db.close()


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    import platform

    settings = get_settings()
    init_observability()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up (staging sync)")
    logger.info("=" * 60)
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Queue: %s", QUEUE_NAME)
    logger.info("[ARQ] Sweep interval: %d min", settings.STAGING_SYNC_INTERVAL_MINUTES)
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info("[ARQ] Jobs processed: %d", jobs)
    logger.info("[ARQ] Uptime: %s", uptime)
    logger.info("=" * 60)
    flush_observability()


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


def _sweep_minutes(interval: int) -> set:
    interval = max(1, min(60, interval))
    return set(range(0, 60, interval))


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    Production-ready settings:
    - max_jobs=10: Reconcile up to 10 users concurrently
    - job_timeout=1200: above STAGING_SYNC_MAX_SECONDS so the per-provider
      wall-clock cap ends a run before ARQ kills it
    - max_tries=3: Don't retry forever
    """

    functions = [
        process_staging_sync_job,
        scheduled_staging_sync,
        scheduled_session_cleanup,
    ]

    cron_jobs = [
        cron(
            scheduled_staging_sync,
            minute=_sweep_minutes(get_settings().STAGING_SYNC_INTERVAL_MINUTES),
            run_at_startup=False,
            unique=True,
        ),
        cron(scheduled_session_cleanup, hour={0, 6, 12, 18}, minute=15, unique=True),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    # Performance settings
    max_jobs = 10
    job_timeout = 1200
    keep_result = 3600
    retry_jobs = True
    max_tries = 3
    health_check_interval = 30

    queue_name = QUEUE_NAME
