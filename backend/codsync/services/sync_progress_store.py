"""Durable per-user progress of the staging reconciliation.

WHAT:
    Owns every write to `sync_sessions`. A run is acquired with a single
    conditional UPDATE (compare-and-swap on is_running / run_id), progress
    writes only land while the row still carries the writer's run_id, and
    every write bumps `version` and recomputes `percentage`.

WHY:
    - Progress is polled by other requests/processes than the one running
      the sync, so it has to live in the database
    - Two independently triggered runs for the same user must never both
      start; a check-then-set without a lock lets both through
    - A run that was superseded (stale takeover, admin reset) must not keep
      overwriting the new run's counters

STATE:
    preparing -> syncing -> completed | error
    reset_progress() and the read-side staleness reset return to preparing.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from codsync.models import SyncPhaseEnum, SyncSession, utcnow
from codsync.services.exceptions import SyncAlreadyRunningError

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 5
DEFAULT_STALE_RUN_MINUTES = 30
DEFAULT_RETENTION_HOURS = 24

_COUNTER_FIELDS = (
    "total_records",
    "processed_records",
    "updated_orders",
    "created_orders",
    "skipped_records",
    "error_count",
    "percentage",
)


def compute_percentage(processed: int, total: int, phase: SyncPhaseEnum) -> int:
    """Integer percentage; exactly 100 only once the run is completed.

    Rows landing during a run can push processed past the initial total, so
    the running value is capped at 99 and the completed write closes the gap.
    """
    if phase == SyncPhaseEnum.completed:
        return 100
    if total <= 0:
        return 0
    return max(0, min(99, (processed * 100) // total))


def _counters_reset() -> Dict:
    values = {name: 0 for name in _COUNTER_FIELDS}
    values["provider_stats"] = None
    return values


# =============================================================================
# READ / CREATE
# =============================================================================

def get_or_create_session(db: Session, user_id: UUID) -> SyncSession:
    session = db.query(SyncSession).filter(SyncSession.user_id == user_id).first()
    if session:
        return session

    session = SyncSession(
        user_id=user_id,
        is_running=False,
        phase=SyncPhaseEnum.preparing,
        version=0,
        last_updated_at=utcnow(),
    )
    db.add(session)
    try:
        db.commit()
    except IntegrityError:
        # Another request created the row first
        db.rollback()
        session = db.query(SyncSession).filter(SyncSession.user_id == user_id).one()
    return session


def get_progress(
    db: Session,
    user_id: UUID,
    now: Optional[datetime] = None,
    grace_seconds: int = DEFAULT_GRACE_SECONDS,
) -> SyncSession:
    """Return the session, clearing leftovers of a run finished before the grace window.

    This is the only side effect of a progress read: once a finished run's end
    time is older than `grace_seconds`, non-zero counters are zeroed and the
    phase goes back to preparing so a poll never shows old numbers as live.
    """
    now = now or utcnow()
    session = get_or_create_session(db, user_id)

    if session.is_running or session.end_time is None:
        return session
    if session.end_time > now - timedelta(seconds=grace_seconds):
        return session
    if not any(getattr(session, name) for name in _COUNTER_FIELDS) and session.phase == SyncPhaseEnum.preparing:
        return session

    values = _counters_reset()
    values.update(
        phase=SyncPhaseEnum.preparing,
        message=None,
        version=SyncSession.version + 1,
        last_updated_at=now,
    )
    result = db.execute(
        update(SyncSession)
        .where(
            SyncSession.id == session.id,
            SyncSession.is_running.is_(False),
            SyncSession.version == session.version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.debug("[PROGRESS] Cleared stale counters for user %s", user_id)
    db.refresh(session)
    return session


# =============================================================================
# RUN OWNERSHIP
# =============================================================================

def acquire_run(
    db: Session,
    user_id: UUID,
    run_id: Optional[str] = None,
    now: Optional[datetime] = None,
    stale_minutes: int = DEFAULT_STALE_RUN_MINUTES,
    message: str = "Preparing staging sync...",
) -> Tuple[SyncSession, bool]:
    """Claim the user's session for a run.

    Returns (session, is_continuation):
      - continuation: `run_id` is the id of the run currently flagged running;
        the session is kept as-is (counters included) and version bumps
      - new run: the session was idle, or its heartbeat is older than
        `stale_minutes`; counters are reset and a fresh run id is minted.
        A caller id that no longer owns a running session is never reused, so
        late writes from that run stay rejected

    Raises:
        SyncAlreadyRunningError: a different run owns the session
    """
    now = now or utcnow()
    session = get_or_create_session(db, user_id)

    if run_id:
        result = db.execute(
            update(SyncSession)
            .where(
                SyncSession.user_id == user_id,
                SyncSession.is_running.is_(True),
                SyncSession.run_id == run_id,
            )
            .values(
                version=SyncSession.version + 1,
                last_updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount:
            db.refresh(session)
            logger.info("[PROGRESS] Continuing run %s for user %s", run_id, user_id)
            return session, True

    new_run_id = uuid.uuid4().hex
    stale_cutoff = now - timedelta(minutes=stale_minutes)

    values = _counters_reset()
    values.update(
        is_running=True,
        phase=SyncPhaseEnum.preparing,
        run_id=new_run_id,
        message=message,
        version=SyncSession.version + 1,
        start_time=now,
        end_time=None,
        last_updated_at=now,
    )
    result = db.execute(
        update(SyncSession)
        .where(
            SyncSession.user_id == user_id,
            or_(
                SyncSession.is_running.is_(False),
                SyncSession.last_updated_at.is_(None),
                SyncSession.last_updated_at < stale_cutoff,
            ),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(session)

    if not result.rowcount:
        logger.info("[PROGRESS] Refused start for user %s: run %s is active", user_id, session.run_id)
        raise SyncAlreadyRunningError(str(user_id), session.run_id)

    logger.info("[PROGRESS] Acquired run %s for user %s", new_run_id, user_id)
    return session, False


def update_progress(
    db: Session,
    user_id: UUID,
    run_id: str,
    phase: Optional[SyncPhaseEnum] = None,
    processed: Optional[int] = None,
    total: Optional[int] = None,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
    **counters,
) -> bool:
    """Write progress for `run_id`; False when the run no longer owns the session.

    `processed` and `total` are passed together so the percentage is always
    recomputed from a consistent pair.
    """
    now = now or utcnow()
    values: Dict = dict(counters)
    values.update(version=SyncSession.version + 1, last_updated_at=now)
    if phase is not None:
        values["phase"] = phase
    if message is not None:
        values["message"] = message
    if processed is not None:
        values["processed_records"] = processed
    if total is not None:
        values["total_records"] = total
    if processed is not None and total is not None:
        values["percentage"] = compute_percentage(processed, total, phase or SyncPhaseEnum.syncing)

    result = db.execute(
        update(SyncSession)
        .where(
            SyncSession.user_id == user_id,
            SyncSession.run_id == run_id,
            SyncSession.is_running.is_(True),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if not result.rowcount:
        logger.warning("[PROGRESS] Discarded update from superseded run %s (user %s)", run_id, user_id)
        return False
    return True


def finish_run(
    db: Session,
    user_id: UUID,
    run_id: str,
    phase: SyncPhaseEnum,
    message: str,
    processed: Optional[int] = None,
    total: Optional[int] = None,
    now: Optional[datetime] = None,
    **counters,
) -> bool:
    """Write the terminal state (completed/error) and release the session."""
    now = now or utcnow()
    values: Dict = dict(counters)
    values.update(
        is_running=False,
        phase=phase,
        message=message,
        end_time=now,
        last_updated_at=now,
        version=SyncSession.version + 1,
    )
    if processed is not None:
        values["processed_records"] = processed
    if total is not None:
        values["total_records"] = total
    if phase == SyncPhaseEnum.completed:
        values["percentage"] = 100
    elif processed is not None and total is not None:
        values["percentage"] = compute_percentage(processed, total, phase)

    result = db.execute(
        update(SyncSession)
        .where(
            SyncSession.user_id == user_id,
            SyncSession.run_id == run_id,
            SyncSession.is_running.is_(True),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if not result.rowcount:
        logger.warning("[PROGRESS] Run %s no longer owns session of user %s, final state dropped", run_id, user_id)
        return False
    logger.info("[PROGRESS] Run %s for user %s finished: %s", run_id, user_id, phase.value)
    return True


def reset_progress(db: Session, user_id: UUID, now: Optional[datetime] = None) -> SyncSession:
    """Administrative reset: idle, preparing, zero counters, no run id.

    A run still executing loses ownership; its next progress write is discarded
    and its reconcilers stop after the current batch.
    """
    now = now or utcnow()
    session = get_or_create_session(db, user_id)
    values = _counters_reset()
    values.update(
        is_running=False,
        phase=SyncPhaseEnum.preparing,
        run_id=None,
        message=None,
        start_time=None,
        end_time=None,
        last_updated_at=now,
        version=SyncSession.version + 1,
    )
    db.execute(
        update(SyncSession)
        .where(SyncSession.id == session.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(session)
    logger.info("[PROGRESS] Reset session for user %s", user_id)
    return session


def purge_stale_sessions(
    db: Session,
    now: Optional[datetime] = None,
    retention_hours: int = DEFAULT_RETENTION_HOURS,
) -> int:
    """Delete sessions finished before the retention window and crashed running ones."""
    now = now or utcnow()
    cutoff = now - timedelta(hours=retention_hours)

    deleted = (
        db.query(SyncSession)
        .filter(
            or_(
                and_(SyncSession.is_running.is_(False), SyncSession.end_time.isnot(None), SyncSession.end_time < cutoff),
                and_(SyncSession.is_running.is_(True), SyncSession.last_updated_at < cutoff),
            )
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("[PROGRESS] Purged %d stale sync session(s)", deleted)
    return deleted


# =============================================================================
# IN-RUN AGGREGATION
# =============================================================================

@dataclass
class _ProviderCounts:
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "updated": self.updated, "skipped": self.skipped, "errors": self.errors}


@dataclass
class ProgressReporter:
    """Thread-safe aggregation of provider counts into one session write per batch.

    Provider reconcilers run in worker threads; each calls `report()` with its
    cumulative counts after every batch. The reporter sums all providers, adds
    what a continued run had already processed, and writes through
    `update_progress`. `report()` returns False once the run was superseded.
    """

    session_factory: Callable[[], Session]
    user_id: UUID
    run_id: str
    total: int
    carried_processed: int = 0
    _providers: Dict[str, _ProviderCounts] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)
    superseded: bool = False

    @property
    def processed(self) -> int:
        return self.carried_processed + sum(c.processed for c in self._providers.values())

    def totals(self) -> Dict[str, int]:
        with self._lock:
            return {
                "processed": self.processed,
                "updated": sum(c.updated for c in self._providers.values()),
                "skipped": sum(c.skipped for c in self._providers.values()),
                "errors": sum(c.errors for c in self._providers.values()),
            }

    def provider_stats(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {key: counts.as_dict() for key, counts in self._providers.items()}

    def report(self, provider_key: str, processed: int, updated: int, skipped: int, errors: int) -> bool:
        with self._lock:
            if self.superseded:
                return False
            counts = self._providers.setdefault(provider_key, _ProviderCounts())
            # Counts are cumulative per provider; never let them move backwards
            counts.processed = max(counts.processed, processed)
            counts.updated = max(counts.updated, updated)
            counts.skipped = max(counts.skipped, skipped)
            counts.errors = max(counts.errors, errors)

            processed_total = self.processed
            db = self.session_factory()
            try:
                owned = update_progress(
                    db,
                    self.user_id,
                    self.run_id,
                    phase=SyncPhaseEnum.syncing,
                    processed=processed_total,
                    total=self.total,
                    message=f"Reconciling staging rows ({processed_total}/{self.total})",
                    updated_orders=sum(c.updated for c in self._providers.values()),
                    skipped_records=sum(c.skipped for c in self._providers.values()),
                    error_count=sum(c.errors for c in self._providers.values()),
                    provider_stats={key: c.as_dict() for key, c in self._providers.items()},
                )
            finally:
                db.close()

            if not owned:
                self.superseded = True
            return owned
