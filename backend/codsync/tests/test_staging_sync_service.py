"""Staging sync orchestrator tests

WHAT: Full runs through run_staging_sync / trigger_reconciliation on SQLite
WHY: Guards the run lifecycle end to end (acquire, count, concurrent
     providers, terminal write) including the refusal and failure paths
"""

import asyncio

import pytest

from codsync.deps import Settings
from codsync.models import ElogyOrder, FhbOrder, Order, SyncPhaseEnum, SyncSession
from codsync.services import staging_sync_service
from codsync.services import sync_progress_store as store
from codsync.services.exceptions import StagingSyncFailed, SyncAlreadyRunningError
from codsync.services.provider_reconciler import ProviderReconciler
from codsync.services.staging_sync_service import run_staging_sync, trigger_reconciliation


@pytest.fixture
def settings():
    return Settings(STAGING_SYNC_BATCH_SIZE=2, SENTRY_DSN=None)


def _sync(user_id, session_factory, settings, **kwargs):
    return asyncio.run(run_staging_sync(user_id, session_factory=session_factory, settings=settings, **kwargs))


def _session(seeder, user_id) -> SyncSession:
    db = seeder.session_factory()
    try:
        row = db.query(SyncSession).filter(SyncSession.user_id == user_id).one()
        db.expunge(row)
        return row
    finally:
        db.close()


def test_run_reconciles_all_providers_and_completes(seeder, session_factory, settings):
    tenant = seeder.tenant(providers=("fhb", "elogy", "european_fulfillment"))
    first = seeder.order(tenant, "#1001", email="ana@example.com")
    second = seeder.order(tenant, "#1002")
    seeder.fhb(tenant.accounts["fhb"], "1001", status="delivered")
    seeder.elogy(tenant.accounts["elogy"], None, email="ANA@example.com")
    seeder.elogy(tenant.accounts["elogy"], "1002", status="returned")
    seeder.european(tenant.accounts["european_fulfillment"], "9999")
    seeder.fhb(tenant.accounts["fhb"], "8888")

    result = _sync(tenant.user_id, session_factory, settings)

    assert result.success is True
    assert result.phase == "completed"
    assert (result.total, result.processed, result.updated, result.skipped, result.errors) == (5, 5, 3, 2, 0)
    assert result.created == 0
    assert set(result.provider_stats) == {"fhb", "elogy", "european_fulfillment"}

    session = _session(seeder, tenant.user_id)
    assert session.is_running is False
    assert session.phase == SyncPhaseEnum.completed
    assert session.percentage == 100
    assert session.processed_records == 5
    assert session.total_records == 5
    assert session.updated_orders == 3
    assert session.provider_stats["elogy"]["updated"] == 2

    assert seeder.get(Order, first).provider_data.keys() == {"fhb", "elogy"}
    assert seeder.get(Order, second).status == "returned"
    assert seeder.count(Order) == 2


def test_run_with_nothing_to_do_completes_at_100(seeder, session_factory, settings):
    tenant = seeder.tenant(providers=())

    result = _sync(tenant.user_id, session_factory, settings)

    assert result.success is True
    assert result.total == 0
    session = _session(seeder, tenant.user_id)
    assert session.phase == SyncPhaseEnum.completed
    assert session.percentage == 100


def test_run_is_refused_while_another_run_owns_the_session(seeder, session_factory, settings):
    tenant = seeder.tenant()
    row_id = seeder.fhb(tenant.accounts["fhb"], "1001")
    db = session_factory()
    try:
        other_run = store.acquire_run(db, tenant.user_id)[0].run_id
    finally:
        db.close()

    with pytest.raises(SyncAlreadyRunningError) as excinfo:
        _sync(tenant.user_id, session_factory, settings)

    assert excinfo.value.run_id == other_run
    assert seeder.get(FhbOrder, row_id).processed_to_orders is False
    assert _session(seeder, tenant.user_id).run_id == other_run


def test_tenants_with_colliding_identifiers_stay_isolated(seeder, session_factory, settings):
    tenant_a = seeder.tenant(providers=("fhb",))
    tenant_b = seeder.tenant(providers=("fhb",))
    order_a = seeder.order(tenant_a, "#1001", email="same@example.com")
    order_b = seeder.order(tenant_b, "#1001", email="same@example.com")
    seeder.fhb(tenant_a.accounts["fhb"], "1001", status="delivered", email="same@example.com")

    _sync(tenant_a.user_id, session_factory, settings)
    result_b = _sync(tenant_b.user_id, session_factory, settings)

    assert seeder.get(Order, order_a).status == "delivered"
    assert seeder.get(Order, order_b).status == "pending"
    assert seeder.get(Order, order_b).provider_data is None
    assert result_b.processed == 0


def test_preparation_failure_marks_session_error(seeder, session_factory, settings, monkeypatch):
    tenant = seeder.tenant()

    def broken_cache(db, user_id):
        raise RuntimeError("database went away")

    monkeypatch.setattr(staging_sync_service, "build_account_operations_cache", broken_cache)

    with pytest.raises(StagingSyncFailed) as excinfo:
        _sync(tenant.user_id, session_factory, settings)

    assert "database went away" in str(excinfo.value)
    session = _session(seeder, tenant.user_id)
    assert session.phase == SyncPhaseEnum.error
    assert session.is_running is False
    assert session.run_id == excinfo.value.run_id


def test_provider_failure_ends_run_in_error_but_other_providers_finish(seeder, session_factory, settings, monkeypatch):
    tenant = seeder.tenant(providers=("fhb", "elogy"))
    order_id = seeder.order(tenant, "#1001")
    seeder.fhb(tenant.accounts["fhb"], "1001", status="delivered")
    seeder.elogy(tenant.accounts["elogy"], "1001")

    original_fetch = ProviderReconciler._fetch_batch

    def fetch(self, account_ids, cursor):
        if self.adapter.model is ElogyOrder:
            raise RuntimeError("elogy staging table unreadable")
        return original_fetch(self, account_ids, cursor)

    monkeypatch.setattr(ProviderReconciler, "_fetch_batch", fetch)

    with pytest.raises(StagingSyncFailed) as excinfo:
        _sync(tenant.user_id, session_factory, settings)

    assert "elogy" in excinfo.value.message
    session = _session(seeder, tenant.user_id)
    assert session.phase == SyncPhaseEnum.error
    assert session.is_running is False
    assert session.percentage < 100
    assert seeder.get(Order, order_id).provider_data.keys() == {"fhb"}


def test_trigger_claims_run_and_enqueues_it(seeder, session_factory, settings):
    tenant = seeder.tenant()
    seeder.order(tenant, "#1001")
    seeder.fhb(tenant.accounts["fhb"], "1001")
    queued = []

    async def enqueue(user_id, run_id):
        queued.append((user_id, run_id))

    run_id = asyncio.run(trigger_reconciliation(
        tenant.user_id, enqueue=enqueue, session_factory=session_factory, settings=settings,
    ))

    assert queued == [(tenant.user_id, run_id)]
    session = _session(seeder, tenant.user_id)
    assert session.is_running is True
    assert session.run_id == run_id

    # A second pipeline stage passes the same run id: continuation, not refusal
    assert asyncio.run(trigger_reconciliation(
        tenant.user_id, run_id=run_id, enqueue=enqueue, session_factory=session_factory, settings=settings,
    )) == run_id

    # A different trigger is refused
    with pytest.raises(SyncAlreadyRunningError):
        asyncio.run(trigger_reconciliation(
            tenant.user_id, enqueue=enqueue, session_factory=session_factory, settings=settings,
        ))

    # The worker picks the claimed run up as a continuation
    result = _sync(tenant.user_id, session_factory, settings, run_id=run_id)
    assert result.continuation is True
    assert result.updated == 1
    assert _session(seeder, tenant.user_id).phase == SyncPhaseEnum.completed


def test_trigger_inline_runs_to_completion(seeder, session_factory, settings):
    tenant = seeder.tenant()
    seeder.order(tenant, "#1001")
    seeder.fhb(tenant.accounts["fhb"], "1001")

    run_id = asyncio.run(trigger_reconciliation(tenant.user_id, session_factory=session_factory, settings=settings))

    session = _session(seeder, tenant.user_id)
    assert session.run_id == run_id
    assert session.phase == SyncPhaseEnum.completed
    assert session.updated_orders == 1


def test_enqueue_failure_releases_session(seeder, session_factory, settings):
    tenant = seeder.tenant()

    async def enqueue(user_id, run_id):
        raise ConnectionError("redis down")

    with pytest.raises(StagingSyncFailed):
        asyncio.run(trigger_reconciliation(
            tenant.user_id, enqueue=enqueue, session_factory=session_factory, settings=settings,
        ))

    session = _session(seeder, tenant.user_id)
    assert session.is_running is False
    assert session.phase == SyncPhaseEnum.error
