"""Staging sync orchestrator - one reconciliation run for one user.

WHAT:
    Claims the user's sync session, builds the operation cache, counts the
    work up front, runs every provider reconciler concurrently and writes the
    terminal state.

WHY:
    - Clients poll progress while the run is going; the denominator must be
      known before the first row is touched
    - Providers are independent, so no provider waits on another
    - Single source of truth for run ownership: the ARQ job, the scheduled
      sweep and the HTTP trigger all come through here

ARCHITECTURE:
    ┌────────────────────────┐   acquire/finish   ┌──────────────────────┐
    │ staging_sync_service   │───────────────────▶│ sync_progress_store  │
    │  (orchestrator, async) │                    └──────────────────────┘
    └───────────┬────────────┘                              ▲
                │ asyncio.to_thread, one Session each       │ ProgressReporter
                ▼                                           │ (one write per batch)
    ┌────────────────────────┐  ┌───────────────┐           │
    │ ProviderReconciler x N │─▶│ OrderMatcher  │───────────┘
    └────────────────────────┘  └───────────────┘

USAGE:
    result = await run_staging_sync(user_id)
    run_id = await trigger_reconciliation(user_id, enqueue=enqueue_staging_sync_job)
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from codsync.database import SessionLocal
from codsync.deps import Settings, get_settings
from codsync.models import SyncPhaseEnum, SyncSession
from codsync.services import sync_progress_store as store
from codsync.services.exceptions import StagingSyncFailed, SyncAlreadyRunningError
from codsync.services.operation_resolver import AccountOperationsCache, build_account_operations_cache
from codsync.services.provider_adapters import PROVIDER_ADAPTERS, ProviderAdapter
from codsync.services.provider_reconciler import ProviderReconciler, ReconcileStats
from codsync.telemetry import capture_exception

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]
Enqueue = Callable[[UUID, str], Awaitable[object]]

# Users with a run executing in this process; a same-run continuation must not
# start a second set of reconcilers next to the first
_local_runs: set = set()
_local_runs_lock = threading.Lock()


@dataclass
class StagingSyncResult:
    user_id: UUID
    run_id: str
    success: bool
    phase: str
    total: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    continuation: bool = False
    superseded: bool = False
    duration_seconds: float = 0.0
    message: str = ""
    provider_stats: Dict[str, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "user_id": str(self.user_id),
            "run_id": self.run_id,
            "phase": self.phase,
            "total": self.total,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "continuation": self.continuation,
            "superseded": self.superseded,
            "duration_seconds": round(self.duration_seconds, 2),
            "message": self.message,
            "provider_stats": self.provider_stats,
        }


# =============================================================================
# SYNC HELPERS (run in worker threads)
# =============================================================================

def count_unprocessed(db: Session, adapter: ProviderAdapter, account_ids: Sequence[UUID]) -> int:
    if not account_ids:
        return 0
    model = adapter.model
    return (
        db.query(func.count(model.id))
        .filter(model.processed_to_orders.is_(False), model.account_id.in_(account_ids))
        .scalar()
        or 0
    )


def _with_session(session_factory: SessionFactory, fn, *args, **kwargs):
    db = session_factory()
    try:
        return fn(db, *args, **kwargs)
    finally:
        db.close()


def _reconcile_provider(
    session_factory: SessionFactory,
    adapter: ProviderAdapter,
    cache: AccountOperationsCache,
    reporter: store.ProgressReporter,
    settings: Settings,
) -> ReconcileStats:
    def report(stats: ReconcileStats) -> bool:
        return reporter.report(adapter.key, stats.processed, stats.updated, stats.skipped, stats.errors)

    db = session_factory()
    try:
        reconciler = ProviderReconciler(
            adapter,
            db,
            cache,
            batch_size=settings.STAGING_SYNC_BATCH_SIZE,
            max_batches=settings.STAGING_SYNC_MAX_BATCHES,
            max_records=settings.STAGING_SYNC_MAX_RECORDS,
            max_seconds=settings.STAGING_SYNC_MAX_SECONDS,
            value_tolerance=settings.STAGING_SYNC_NAME_VALUE_TOLERANCE,
            progress_callback=report,
        )
        stats = reconciler.run()
        # Final counts even when the last batch was empty
        report(stats)
        return stats
    finally:
        db.close()


# =============================================================================
# RUN
# =============================================================================

async def run_staging_sync(
    user_id: UUID,
    run_id: Optional[str] = None,
    session_factory: SessionFactory = SessionLocal,
    settings: Optional[Settings] = None,
    adapters: Sequence[ProviderAdapter] = PROVIDER_ADAPTERS,
) -> StagingSyncResult:
    """Run one full reconciliation for a user.

    Args:
        user_id: Tenant whose staging rows are reconciled
        run_id: Id of an already claimed run (continuation); None starts a new run
        session_factory: Session source; every provider thread opens its own

    Raises:
        SyncAlreadyRunningError: another run owns the user's session
        StagingSyncFailed: systemic failure; the session is left in phase error
    """
    settings = settings or get_settings()

    with _local_runs_lock:
        if user_id in _local_runs:
            raise SyncAlreadyRunningError(str(user_id), run_id)
        _local_runs.add(user_id)

    try:
        return await _run(user_id, run_id, session_factory, settings, adapters)
    finally:
        with _local_runs_lock:
            _local_runs.discard(user_id)


async def _run(
    user_id: UUID,
    requested_run_id: Optional[str],
    session_factory: SessionFactory,
    settings: Settings,
    adapters: Sequence[ProviderAdapter],
) -> StagingSyncResult:
    started = time.monotonic()

    session, continuation = await asyncio.to_thread(
        _with_session,
        session_factory,
        store.acquire_run,
        user_id,
        requested_run_id,
        stale_minutes=settings.STAGING_SYNC_STALE_RUN_MINUTES,
    )
    run_id = session.run_id
    carried = session.processed_records if continuation else 0

    logger.info(
        "[STAGING_SYNC] Run %s for user %s started (continuation=%s, carried=%d)",
        run_id, user_id, continuation, carried,
    )

    # ---- Preparing: cache + up-front count (systemic failures abort the run)
    try:
        cache = await asyncio.to_thread(_with_session, session_factory, build_account_operations_cache, user_id)
        active = [a for a in adapters if cache.account_ids(a.key)]

        counts = await asyncio.gather(*[
            asyncio.to_thread(_with_session, session_factory, count_unprocessed, a, cache.account_ids(a.key))
            for a in active
        ])
        total = carried + sum(counts)

        owned = await asyncio.to_thread(
            _with_session,
            session_factory,
            store.update_progress,
            user_id,
            run_id,
            phase=SyncPhaseEnum.syncing,
            processed=carried,
            total=total,
            message=f"Reconciling {sum(counts)} staging row(s) across {len(active)} provider(s)",
        )
    except Exception as e:
        await _fail(session_factory, user_id, run_id, f"Preparation failed: {e}", e)
        raise StagingSyncFailed(f"Staging sync preparation failed: {e}", str(user_id), run_id) from e

    if not owned:
        return _superseded_result(user_id, run_id, continuation, started)

    logger.info(
        "[STAGING_SYNC] Run %s: %d row(s) to reconcile, providers=%s",
        run_id, total - carried, [a.key for a in active],
    )

    # ---- Syncing: all providers concurrently, each serial over its own rows
    reporter = store.ProgressReporter(
        session_factory=session_factory,
        user_id=user_id,
        run_id=run_id,
        total=total,
        carried_processed=carried,
    )
    outcomes = await asyncio.gather(
        *[
            asyncio.to_thread(_reconcile_provider, session_factory, adapter, cache, reporter, settings)
            for adapter in active
        ],
        return_exceptions=True,
    )

    failures: List[str] = []
    stats_by_provider: Dict[str, dict] = {}
    for adapter, outcome in zip(active, outcomes):
        if isinstance(outcome, BaseException):
            logger.error("[STAGING_SYNC] Provider %s failed in run %s: %s", adapter.key, run_id, outcome)
            capture_exception(outcome, extra={
                "operation": "staging_sync",
                "provider": adapter.key,
                "user_id": str(user_id),
                "run_id": run_id,
            })
            failures.append(f"{adapter.key}: {outcome}")
        else:
            stats_by_provider[adapter.key] = outcome.to_dict()

    totals = reporter.totals()
    if reporter.superseded:
        return _superseded_result(user_id, run_id, continuation, started, totals)

    # Progress denominator must not end below the numerator
    final_total = max(total, totals["processed"])
    counters = dict(
        updated_orders=totals["updated"],
        created_orders=0,
        skipped_records=totals["skipped"],
        error_count=totals["errors"],
        provider_stats=reporter.provider_stats(),
    )

    if failures:
        message = "Staging sync failed: " + "; ".join(failures)
        await asyncio.to_thread(
            _with_session, session_factory, store.finish_run, user_id, run_id,
            SyncPhaseEnum.error, message, processed=totals["processed"], total=final_total, **counters,
        )
        raise StagingSyncFailed(message, str(user_id), run_id)

    message = (
        f"Staging sync completed: {totals['updated']} order(s) updated, "
        f"{totals['skipped']} skipped, {totals['errors']} error(s)"
    )
    owned = await asyncio.to_thread(
        _with_session, session_factory, store.finish_run, user_id, run_id,
        SyncPhaseEnum.completed, message, processed=totals["processed"], total=final_total, **counters,
    )
    if not owned:
        return _superseded_result(user_id, run_id, continuation, started, totals)

    duration = time.monotonic() - started
    logger.info("[STAGING_SYNC] Run %s for user %s completed in %.1fs: %s", run_id, user_id, duration, message)

    return StagingSyncResult(
        user_id=user_id,
        run_id=run_id,
        success=True,
        phase=SyncPhaseEnum.completed.value,
        total=final_total,
        processed=totals["processed"],
        updated=totals["updated"],
        skipped=totals["skipped"],
        errors=totals["errors"],
        continuation=continuation,
        duration_seconds=duration,
        message=message,
        provider_stats=stats_by_provider,
    )


async def _fail(session_factory: SessionFactory, user_id: UUID, run_id: str, message: str, exc: Exception) -> None:
    logger.error("[STAGING_SYNC] Run %s for user %s failed: %s", run_id, user_id, message, exc_info=exc)
    capture_exception(exc, extra={"operation": "staging_sync", "user_id": str(user_id), "run_id": run_id})
    try:
        await asyncio.to_thread(
            _with_session, session_factory, store.finish_run, user_id, run_id, SyncPhaseEnum.error, message,
        )
    except Exception as write_error:
        # The database itself may be what failed
        logger.error("[STAGING_SYNC] Could not record error state for run %s: %s", run_id, write_error)


def _superseded_result(
    user_id: UUID,
    run_id: str,
    continuation: bool,
    started: float,
    totals: Optional[Dict[str, int]] = None,
) -> StagingSyncResult:
    totals = totals or {}
    logger.warning("[STAGING_SYNC] Run %s for user %s was superseded; stopping", run_id, user_id)
    return StagingSyncResult(
        user_id=user_id,
        run_id=run_id,
        success=False,
        phase="superseded",
        processed=totals.get("processed", 0),
        updated=totals.get("updated", 0),
        skipped=totals.get("skipped", 0),
        errors=totals.get("errors", 0),
        continuation=continuation,
        superseded=True,
        duration_seconds=time.monotonic() - started,
        message="Run lost ownership of the sync session",
    )


# =============================================================================
# PUBLIC ENTRYPOINTS (router / worker)
# =============================================================================

async def trigger_reconciliation(
    user_id: UUID,
    run_id: Optional[str] = None,
    enqueue: Optional[Enqueue] = None,
    session_factory: SessionFactory = SessionLocal,
    settings: Optional[Settings] = None,
) -> str:
    """Claim the session and hand the run to the worker (or run it inline).

    Safe to call repeatedly within one pipeline: passing the run_id returned
    by the first call continues that run instead of being refused.

    Returns:
        The run id the worker will execute under

    Raises:
        SyncAlreadyRunningError: a different run owns the session
    """
    settings = settings or get_settings()
    session, _ = await asyncio.to_thread(
        _with_session,
        session_factory,
        store.acquire_run,
        user_id,
        run_id,
        stale_minutes=settings.STAGING_SYNC_STALE_RUN_MINUTES,
        message="Queued",
    )
    claimed_run_id = session.run_id

    if enqueue is None:
        await run_staging_sync(user_id, claimed_run_id, session_factory=session_factory, settings=settings)
        return claimed_run_id

    try:
        await enqueue(user_id, claimed_run_id)
    except Exception as e:
        await _fail(session_factory, user_id, claimed_run_id, f"Could not enqueue staging sync: {e}", e)
        raise StagingSyncFailed(f"Could not enqueue staging sync: {e}", str(user_id), claimed_run_id) from e

    logger.info("[STAGING_SYNC] Queued run %s for user %s", claimed_run_id, user_id)
    return claimed_run_id


def get_progress(db: Session, user_id: UUID, settings: Optional[Settings] = None) -> SyncSession:
    settings = settings or get_settings()
    return store.get_progress(db, user_id, grace_seconds=settings.STAGING_SYNC_PROGRESS_GRACE_SECONDS)


def reset_progress(db: Session, user_id: UUID) -> SyncSession:
    return store.reset_progress(db, user_id)
