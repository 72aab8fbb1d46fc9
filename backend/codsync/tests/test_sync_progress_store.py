"""Sync progress store tests

WHAT: Run ownership, conditional progress writes and the read-side reset
WHY: Progress is shared between the API, the worker and the scheduled sweep;
     a lost compare-and-swap lets two runs reconcile the same rows
"""

from datetime import datetime, timedelta

import pytest

from codsync.models import SyncPhaseEnum, SyncSession
from codsync.services import sync_progress_store as store
from codsync.services.exceptions import SyncAlreadyRunningError

T0 = datetime(2026, 3, 1, 12, 0, 0)


def _session(seeder, user_id) -> SyncSession:
    db = seeder.session_factory()
    try:
        row = db.query(SyncSession).filter(SyncSession.user_id == user_id).one()
        db.expunge(row)
        return row
    finally:
        db.close()


def test_compute_percentage_caps_until_completed():
    assert store.compute_percentage(0, 0, SyncPhaseEnum.syncing) == 0
    assert store.compute_percentage(1, 3, SyncPhaseEnum.syncing) == 33
    assert store.compute_percentage(10, 10, SyncPhaseEnum.syncing) == 99
    assert store.compute_percentage(15, 10, SyncPhaseEnum.error) == 99
    assert store.compute_percentage(0, 0, SyncPhaseEnum.completed) == 100


def test_acquire_refuses_second_run(seeder, db):
    tenant = seeder.tenant()
    session, continued = store.acquire_run(db, tenant.user_id, now=T0)

    assert continued is False
    assert session.is_running is True
    assert session.phase == SyncPhaseEnum.preparing
    run_id = session.run_id

    with pytest.raises(SyncAlreadyRunningError) as excinfo:
        store.acquire_run(db, tenant.user_id, now=T0 + timedelta(minutes=1))
    assert excinfo.value.run_id == run_id
    assert _session(seeder, tenant.user_id).run_id == run_id


def test_acquire_with_active_run_id_is_a_continuation(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id, now=T0)
    run_a = session.run_id
    store.update_progress(db, tenant.user_id, run_a, processed=4, total=10, now=T0)
    version = _session(seeder, tenant.user_id).version

    session, continued = store.acquire_run(db, tenant.user_id, run_id=run_a, now=T0 + timedelta(seconds=5))

    assert continued is True
    stored = _session(seeder, tenant.user_id)
    assert stored.run_id == run_a
    assert stored.processed_records == 4
    assert stored.percentage == 40
    assert stored.version == version + 1


def test_foreign_run_id_is_refused_while_running(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id, now=T0)
    run_a = session.run_id

    with pytest.raises(SyncAlreadyRunningError) as excinfo:
        store.acquire_run(db, tenant.user_id, run_id="run-b", now=T0 + timedelta(minutes=5))
    assert excinfo.value.run_id == run_a


def test_caller_run_id_is_not_adopted_by_a_new_run(seeder, db):
    tenant = seeder.tenant()

    session, continued = store.acquire_run(db, tenant.user_id, run_id="caller-picked", now=T0)

    assert continued is False
    assert session.run_id != "caller-picked"


def test_retrigger_after_completion_mints_a_new_run_id(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id, now=T0)
    run_a = session.run_id
    assert store.finish_run(
        db, tenant.user_id, run_a, SyncPhaseEnum.completed, "done",
        processed=5, total=5, now=T0 + timedelta(seconds=10),
    ) is True

    session, continued = store.acquire_run(db, tenant.user_id, run_id=run_a, now=T0 + timedelta(seconds=20))

    assert continued is False
    assert session.run_id != run_a
    assert store.update_progress(db, tenant.user_id, run_a, processed=1, total=5) is False
    stored = _session(seeder, tenant.user_id)
    assert stored.run_id == session.run_id
    assert stored.processed_records == 0


def test_orphaned_run_writes_are_rejected_after_reset_and_retrigger(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id, now=T0)
    orphan = session.run_id
    store.reset_progress(db, tenant.user_id)

    session, continued = store.acquire_run(db, tenant.user_id, run_id=orphan, now=T0 + timedelta(seconds=5))

    assert continued is False
    assert session.run_id != orphan
    assert store.update_progress(db, tenant.user_id, orphan, processed=3, total=3) is False
    assert store.finish_run(db, tenant.user_id, orphan, SyncPhaseEnum.completed, "late") is False
    stored = _session(seeder, tenant.user_id)
    assert stored.is_running is True
    assert stored.phase == SyncPhaseEnum.preparing


def test_stale_run_is_taken_over_and_loses_its_writes(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id, now=T0)
    crashed = session.run_id
    store.update_progress(db, tenant.user_id, crashed, processed=7, total=10, now=T0)

    session, continued = store.acquire_run(db, tenant.user_id, now=T0 + timedelta(minutes=31))

    assert continued is False
    assert session.run_id != crashed
    assert session.processed_records == 0
    assert store.update_progress(db, tenant.user_id, crashed, processed=8, total=10) is False
    assert _session(seeder, tenant.user_id).processed_records == 0


def test_update_progress_bumps_version_and_percentage(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id, now=T0)
    before = _session(seeder, tenant.user_id).version

    assert store.update_progress(
        db, tenant.user_id, session.run_id,
        phase=SyncPhaseEnum.syncing, processed=3, total=8, updated_orders=2,
    ) is True

    stored = _session(seeder, tenant.user_id)
    assert stored.version == before + 1
    assert stored.phase == SyncPhaseEnum.syncing
    assert stored.percentage == 37
    assert stored.updated_orders == 2


def test_finish_run_releases_session(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id, now=T0)

    assert store.finish_run(
        db, tenant.user_id, session.run_id, SyncPhaseEnum.completed, "done", processed=5, total=5, now=T0,
    ) is True

    stored = _session(seeder, tenant.user_id)
    assert stored.is_running is False
    assert stored.percentage == 100
    assert stored.end_time == T0
    # A second finish from the same run no longer owns the session
    assert store.finish_run(db, tenant.user_id, session.run_id, SyncPhaseEnum.error, "late") is False
    assert _session(seeder, tenant.user_id).phase == SyncPhaseEnum.completed


def test_get_progress_keeps_counters_inside_grace_window(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id, now=T0)
    store.finish_run(db, tenant.user_id, session.run_id, SyncPhaseEnum.completed, "done", processed=5, total=5, now=T0)

    progress = store.get_progress(db, tenant.user_id, now=T0 + timedelta(seconds=2), grace_seconds=5)

    assert progress.phase == SyncPhaseEnum.completed
    assert progress.percentage == 100


def test_get_progress_clears_finished_run_after_grace_window(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id, now=T0)
    store.finish_run(db, tenant.user_id, session.run_id, SyncPhaseEnum.error, "boom", processed=2, total=5, now=T0)
    version = _session(seeder, tenant.user_id).version

    progress = store.get_progress(db, tenant.user_id, now=T0 + timedelta(seconds=30), grace_seconds=5)

    assert progress.phase == SyncPhaseEnum.preparing
    assert progress.processed_records == 0
    assert progress.total_records == 0
    assert progress.percentage == 0
    assert progress.version == version + 1


def test_get_progress_creates_idle_session(seeder, db):
    tenant = seeder.tenant()

    progress = store.get_progress(db, tenant.user_id)

    assert progress.is_running is False
    assert progress.phase == SyncPhaseEnum.preparing
    assert progress.run_id is None
    assert seeder.count(SyncSession) == 1


def test_reset_progress_orphans_running_run(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id, now=T0)

    reset = store.reset_progress(db, tenant.user_id)

    assert reset.is_running is False
    assert reset.run_id is None
    assert store.update_progress(db, tenant.user_id, session.run_id, processed=1, total=1) is False
    # The next trigger starts fresh immediately
    _, continued = store.acquire_run(db, tenant.user_id)
    assert continued is False


def test_purge_stale_sessions(seeder, db):
    finished = seeder.tenant()
    crashed = seeder.tenant()
    recent = seeder.tenant()

    session, _ = store.acquire_run(db, finished.user_id, now=T0)
    store.finish_run(db, finished.user_id, session.run_id, SyncPhaseEnum.completed, "done", now=T0)
    store.acquire_run(db, crashed.user_id, now=T0)
    store.acquire_run(db, recent.user_id, now=T0 + timedelta(hours=23))

    deleted = store.purge_stale_sessions(db, now=T0 + timedelta(hours=25), retention_hours=24)

    assert deleted == 2
    assert [row.user_id for row in db.query(SyncSession).all()] == [recent.user_id]


def test_reporter_aggregates_providers_and_never_moves_backwards(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id)
    reporter = store.ProgressReporter(seeder.session_factory, tenant.user_id, session.run_id, total=20, carried_processed=2)

    assert reporter.report("fhb", processed=5, updated=3, skipped=2, errors=0) is True
    assert reporter.report("elogy", processed=4, updated=1, skipped=3, errors=1) is True
    assert reporter.report("fhb", processed=3, updated=1, skipped=1, errors=0) is True

    assert reporter.totals() == {"processed": 11, "updated": 4, "skipped": 5, "errors": 1}
    stored = _session(seeder, tenant.user_id)
    assert stored.processed_records == 11
    assert stored.percentage == 55
    assert stored.provider_stats["elogy"] == {"processed": 4, "updated": 1, "skipped": 3, "errors": 1}


def test_reporter_flags_superseded_run(seeder, db):
    tenant = seeder.tenant()
    session, _ = store.acquire_run(db, tenant.user_id)
    reporter = store.ProgressReporter(seeder.session_factory, tenant.user_id, session.run_id, total=10)
    store.reset_progress(db, tenant.user_id)

    assert reporter.report("fhb", 1, 1, 0, 0) is False
    assert reporter.superseded is True
    assert reporter.report("fhb", 2, 2, 0, 0) is False
