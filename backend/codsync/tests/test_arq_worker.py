"""ARQ worker job tests (no Redis: job functions are called directly)."""

import asyncio
import uuid
from datetime import timedelta

from codsync.models import SyncPhaseEnum, SyncSession, WarehouseAccountStatusEnum, utcnow
from codsync.services import sync_progress_store as store
from codsync.services.exceptions import StagingSyncFailed, SyncAlreadyRunningError
from codsync.services.staging_sync_service import StagingSyncResult
from codsync.workers import arq_worker


def test_job_returns_result_dict(monkeypatch):
    user_id = uuid.uuid4()
    calls = []

    async def fake_run(uid, run_id=None):
        calls.append((uid, run_id))
        return StagingSyncResult(user_id=uid, run_id=run_id, success=True, phase="completed", processed=3, updated=2)

    monkeypatch.setattr(arq_worker, "run_staging_sync", fake_run)

    result = asyncio.run(arq_worker.process_staging_sync_job({}, str(user_id), "run-1"))

    assert calls == [(user_id, "run-1")]
    assert result["success"] is True
    assert result["updated"] == 2


def test_job_refusal_is_not_raised(monkeypatch):
    async def refused(uid, run_id=None):
        raise SyncAlreadyRunningError(str(uid), "other-run")

    monkeypatch.setattr(arq_worker, "run_staging_sync", refused)

    result = asyncio.run(arq_worker.process_staging_sync_job({}, str(uuid.uuid4())))

    assert result["success"] is False
    assert result["run_id"] == "other-run"


def test_job_systemic_failure_is_reported_in_result(monkeypatch):
    async def failed(uid, run_id=None):
        raise StagingSyncFailed("provider pass died", str(uid), run_id)

    monkeypatch.setattr(arq_worker, "run_staging_sync", failed)

    result = asyncio.run(arq_worker.process_staging_sync_job({}, str(uuid.uuid4()), "run-1"))

    assert result == {"success": False, "error": "provider pass died"}


def test_sweep_visits_every_linked_user_and_survives_failures(seeder, session_factory, monkeypatch):
    failing = seeder.tenant(providers=("fhb",))
    busy = seeder.tenant(providers=("elogy",))
    pending = seeder.tenant(providers=("digistore",), account_status=WarehouseAccountStatusEnum.pending)
    seeder.tenant(providers=())  # no accounts: not swept
    visited = []

    async def fake_run(uid, run_id=None):
        visited.append(uid)
        if uid == failing.user_id:
            raise StagingSyncFailed("boom", str(uid))
        if uid == busy.user_id:
            raise SyncAlreadyRunningError(str(uid), "manual-run")
        return StagingSyncResult(user_id=uid, run_id="r", success=True, phase="completed")

    monkeypatch.setattr(arq_worker, "SessionLocal", session_factory)
    monkeypatch.setattr(arq_worker, "run_staging_sync", fake_run)

    summary = asyncio.run(arq_worker.scheduled_staging_sync({}))

    assert set(visited) == {failing.user_id, busy.user_id, pending.user_id}
    assert summary == {"users": 3, "completed": 1, "refused": 1, "failed": 1}
    assert arq_worker._sweep_running is False


def test_sweep_skips_tick_while_previous_sweep_runs(monkeypatch):
    monkeypatch.setattr(arq_worker, "_sweep_running", True)

    assert asyncio.run(arq_worker.scheduled_staging_sync({})) == {"skipped": True}


def test_session_cleanup_purges_old_sessions(seeder, session_factory, monkeypatch):
    old = seeder.tenant()
    fresh = seeder.tenant()
    db = session_factory()
    try:
        long_ago = utcnow() - timedelta(days=3)
        session, _ = store.acquire_run(db, old.user_id, now=long_ago)
        store.finish_run(db, old.user_id, session.run_id, SyncPhaseEnum.completed, "done", now=long_ago)
        store.get_or_create_session(db, fresh.user_id)
    finally:
        db.close()

    monkeypatch.setattr(arq_worker, "SessionLocal", session_factory)

    assert asyncio.run(arq_worker.scheduled_session_cleanup({})) == {"deleted": 1}
    assert seeder.count(SyncSession) == 1


def test_sweep_minutes_cover_the_hour():
    assert arq_worker._sweep_minutes(3) == set(range(0, 60, 3))
    assert arq_worker._sweep_minutes(0) == set(range(60))
    assert arq_worker._sweep_minutes(90) == {0}
