"""Pytest configuration for codsync integration tests

WHAT: Shared fixtures for database-backed service, worker and HTTP tests
WHY: Every test gets its own file-backed SQLite database, so provider
     reconcilers running in worker threads each open a real connection
REFERENCES:
    - codsync/database.py: Database configuration
    - codsync/models.py: Tables seeded here
"""

import os
import sys
import tempfile
import uuid
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment (codsync.database reads DATABASE_URL at import time)
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{Path(tempfile.gettempdir()) / f'codsync_test_{os.getpid()}.db'}",
)
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)

from codsync.models import (  # noqa: E402
    Base,
    BigArenaOrder,
    DigistoreOrder,
    ElogyOrder,
    EuropeanFulfillmentOrder,
    FhbOrder,
    Operation,
    Order,
    Store,
    User,
    WarehouseAccount,
    WarehouseAccountOperation,
    WarehouseAccountStatusEnum,
)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def session_factory(tmp_path):
    """Fresh file-backed SQLite database per test."""
    db_file = tmp_path / "codsync.db"
    engine = create_engine(
        f"sqlite:///{db_file}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    yield factory

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def seeder(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def app_seeder():
    """Seeder bound to the application's own engine (HTTP and worker tests)."""
    from codsync.database import SessionLocal, engine

    Base.metadata.create_all(bind=engine)
    yield Seeder(SessionLocal)
    Base.metadata.drop_all(bind=engine)


# ============================================================================
# Seeding helpers
# ============================================================================

class Tenant:
    def __init__(self, user_id, store_id):
        self.user_id = user_id
        self.store_id = store_id
        self.operation_ids = []
        self.accounts: Dict[str, uuid.UUID] = {}

    @property
    def operation_id(self):
        return self.operation_ids[0]


class Seeder:
    """Writes fixtures through short-lived sessions, returns ids only."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._counter = 0

    def _save(self, *objects):
        """Commit objects, returning the first one's id.

        Ids are read before the commit; committed instances are expired and
        detached once the session closes.
        """
        first_id = objects[0].id if objects else None
        db = self.session_factory()
        try:
            db.add_all(objects)
            db.commit()
        finally:
            db.close()
        return first_id

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    # -- tenants --------------------------------------------------------------

    def tenant(
        self,
        providers=("fhb",),
        prefixes=(None,),
        integration_started_at: Optional[datetime] = None,
        account_status=WarehouseAccountStatusEnum.active,
    ) -> Tenant:
        """User + store + one operation per prefix, every provider account linked to all of them."""
        user = User(id=uuid.uuid4(), email=f"owner{self._next()}@example.com", name="Owner")
        store = Store(id=uuid.uuid4(), name="Store", owner_id=user.id)
        tenant = Tenant(user.id, store.id)
        objects = [user, store]

        operations = []
        for prefix in prefixes:
            operation = Operation(
                id=uuid.uuid4(),
                store_id=store.id,
                name=f"Operation {prefix or self._next()}",
                order_prefix=prefix,
                integration_started_at=integration_started_at,
            )
            operations.append(operation)
            tenant.operation_ids.append(operation.id)
        objects += operations

        for provider in providers:
            account = WarehouseAccount(
                id=uuid.uuid4(),
                user_id=user.id,
                provider_key=provider,
                status=account_status,
            )
            tenant.accounts[provider] = account.id
            objects.append(account)
            for operation in operations:
                objects.append(WarehouseAccountOperation(account_id=account.id, operation_id=operation.id))

        # Parents first so SQLite foreign keys (if enabled) are satisfied
        self._save(user)
        self._save(store)
        self._save(*objects[2:])
        return tenant

    # -- canonical orders -----------------------------------------------------

    def order(
        self,
        tenant: Tenant,
        number: Optional[str],
        operation_id=None,
        email=None,
        phone=None,
        name=None,
        total=None,
        order_date: Optional[datetime] = None,
        shopify_data=None,
        status="pending",
        provider_data=None,
    ) -> uuid.UUID:
        order = Order(
            id=uuid.uuid4(),
            store_id=tenant.store_id,
            operation_id=operation_id or tenant.operation_id,
            shopify_order_number=number,
            customer_email=email,
            customer_phone=phone,
            customer_name=name,
            total=Decimal(str(total)) if total is not None else None,
            order_date=order_date,
            shopify_data=shopify_data,
            status=status,
            provider_data=provider_data,
        )
        return self._save(order)

    # -- staging rows ---------------------------------------------------------

    def fhb(self, account_id, number, status="sent", tracking=None, value=None, **recipient) -> uuid.UUID:
        row = FhbOrder(
            id=uuid.uuid4(),
            account_id=account_id,
            fhb_order_id=f"FHB-{self._next()}",
            variable_symbol=number,
            status=status,
            tracking=tracking,
            value=Decimal(str(value)) if value is not None else None,
            recipient=recipient or None,
            raw_data={},
        )
        return self._save(row)

    def european(self, account_id, number, status="delivered", tracking=None, value=None, **recipient) -> uuid.UUID:
        row = EuropeanFulfillmentOrder(
            id=uuid.uuid4(),
            account_id=account_id,
            european_order_id=f"EF-{self._next()}",
            order_number=number,
            status=status,
            tracking=tracking,
            value=Decimal(str(value)) if value is not None else None,
            recipient=recipient or None,
            raw_data={"source": "api"},
        )
        return self._save(row)

    def elogy(self, account_id, number, status="in_transit", tracking=None, value=None, **recipient) -> uuid.UUID:
        row = ElogyOrder(
            id=uuid.uuid4(),
            account_id=account_id,
            elogy_order_id=f"EL-{self._next()}",
            order_number=number,
            status=status,
            tracking=tracking,
            value=Decimal(str(value)) if value is not None else None,
            recipient=recipient or None,
            raw_data={},
        )
        return self._save(row)

    def big_arena(self, account_id, number, status="shipped", total=None, email=None, phone=None, name=None) -> uuid.UUID:
        row = BigArenaOrder(
            id=uuid.uuid4(),
            account_id=account_id,
            order_id=f"BA-{self._next()}",
            external_id=number,
            status=status,
            total=Decimal(str(total)) if total is not None else None,
            tracking_code=f"TRK{self._counter}",
            customer_email=email,
            customer_phone=phone,
            customer_name=name,
            raw_data={},
        )
        return self._save(row)

    def digistore(self, account_id, purchase_id, delivery_type="delivery", amount=None, **buyer) -> uuid.UUID:
        row = DigistoreOrder(
            id=uuid.uuid4(),
            account_id=account_id,
            delivery_id=f"D-{self._next()}",
            purchase_id=purchase_id,
            delivery_type=delivery_type,
            amount=Decimal(str(amount)) if amount is not None else None,
            buyer=buyer or None,
            raw_data={},
        )
        return self._save(row)

    # -- reads ----------------------------------------------------------------

    def get(self, model, object_id):
        db = self.session_factory()
        try:
            obj = db.get(model, object_id)
            if obj is not None:
                db.expunge(obj)
            return obj
        finally:
            db.close()

    def count(self, model) -> int:
        db = self.session_factory()
        try:
            return db.query(model).count()
        finally:
            db.close()
