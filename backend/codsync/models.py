"""SQLAlchemy ORM models and enums.

This module defines the schema the staging reconciliation engine reads and
writes, using UUID primary keys and explicit relationships. Storefront
ingestion and warehouse ingestion adapters populate `orders` and the
per-provider staging tables; this service only reconciles them.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Text, Boolean, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns are stored without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums ---------------------------------------------------------

class WarehouseAccountStatusEnum(str, enum.Enum):
    pending = "pending"
    active = "active"


class SyncPhaseEnum(str, enum.Enum):
    preparing = "preparing"
    syncing = "syncing"
    completed = "completed"
    error = "error"


class OrderStatusEnum(str, enum.Enum):
    """Tenant-facing order lifecycle.

    Provider vocabularies (FHB, eLogy, ...) are translated into these values
    by the provider adapters before they reach `orders.status`.
    """
    pending = "pending"
    confirmed = "confirmed"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"
    returned = "returned"


# Tenant models --------------------------------------------------

class User(Base):
    """User is the tenant: owns stores, warehouse accounts and one sync session."""
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    stores = relationship("Store", back_populates="owner")
    warehouse_accounts = relationship("WarehouseAccount", back_populates="user")

    def __str__(self):
        return self.email


class Store(Base):
    __tablename__ = "stores"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    owner = relationship("User", back_populates="stores")
    operations = relationship("Operation", back_populates="store")

    def __str__(self):
        return self.name


class Operation(Base):
    """Operation is a tenant's business unit and the scoping boundary for matching.

    WHAT: Groups canonical orders of one storefront/country combination
    WHY: Warehouse rows must be attributed to exactly one operation before any
         order lookup happens; two operations never share canonical orders
    """
    __tablename__ = "operations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id"), nullable=False)
    name = Column(String, nullable=False)
    country = Column(String, nullable=True)  # e.g. "ES", "IT"
    currency = Column(String, nullable=False, default="EUR")
    status = Column(String, nullable=False, default="active")  # active, paused, archived

    # Order-number prefix used by the warehouse for this operation (e.g. "LI-")
    # WHY: disambiguates rows when one warehouse account serves several operations
    order_prefix = Column(String, nullable=True)

    # Earliest active storefront integration; orders placed before it are out of scope
    integration_started_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    store = relationship("Store", back_populates="operations")
    account_links = relationship("WarehouseAccountOperation", back_populates="operation")

    def __str__(self):
        return self.name


class WarehouseAccount(Base):
    """Credentials/config for one warehouse or carrier connection.

    Credentials themselves are owned by the ingestion adapters; this service
    only needs ownership, provider and status.
    """
    __tablename__ = "warehouse_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    provider_key = Column(String, nullable=False)  # fhb, european_fulfillment, elogy, big_arena, digistore
    display_name = Column(String, nullable=True)
    status = Column(
        Enum(WarehouseAccountStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=WarehouseAccountStatusEnum.pending,
    )
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="warehouse_accounts")
    operation_links = relationship("WarehouseAccountOperation", back_populates="account", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.display_name or self.provider_key} ({self.status.value if self.status else 'unknown'})"


class WarehouseAccountOperation(Base):
    __tablename__ = "warehouse_account_operations"
    __table_args__ = (
        UniqueConstraint("account_id", "operation_id", name="uq_warehouse_account_operation"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("warehouse_accounts.id"), nullable=False)
    operation_id = Column(UUID(as_uuid=True), ForeignKey("operations.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    account = relationship("WarehouseAccount", back_populates="operation_links")
    operation = relationship("Operation", back_populates="account_links")


# =============================================================================
# CANONICAL ORDERS
# =============================================================================
# WHAT: One row per storefront order, created by storefront ingestion
# WHY: Carrier data is merged into these rows; storefront-owned fields
#      (customer identity, original amount) are never overwritten here


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_operation_number", "operation_id", "shopify_order_number"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id"), nullable=False)
    operation_id = Column(UUID(as_uuid=True), ForeignKey("operations.id"), nullable=True, index=True)

    # Source identification
    data_source = Column(String, nullable=False, default="shopify")  # shopify, cartpanda, digistore24, manual
    shopify_order_id = Column(String, nullable=True)
    shopify_order_number = Column(String, nullable=True)  # e.g. "#1001" or "LI-1001"

    # Customer information (storefront-owned)
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    customer_city = Column(String, nullable=True)
    customer_country = Column(String, nullable=True)

    # Order details
    status = Column(String, nullable=False, default=OrderStatusEnum.pending.value)
    total = Column(Numeric(10, 2), nullable=True)
    currency = Column(String, nullable=True, default="EUR")

    # Carrier enrichment
    provider = Column(String, nullable=True)  # last provider that enriched this order
    tracking_number = Column(String, nullable=True)
    carrier_imported = Column(Boolean, nullable=False, default=False)
    carrier_order_id = Column(String, nullable=True)
    carrier_matched_at = Column(DateTime, nullable=True)
    provider_data = Column(JSON, nullable=True)  # {provider_key: {...last known carrier state}}
    shopify_data = Column(JSON, nullable=True)  # raw storefront payload (nested customer/addresses)

    # Sync bookkeeping
    last_sync_at = Column(DateTime, nullable=True)
    needs_sync = Column(Boolean, nullable=False, default=True)

    order_date = Column(DateTime, nullable=True)  # when the order was placed on the storefront
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __str__(self):
        return f"Order {self.shopify_order_number or self.id} ({self.status})"


# =============================================================================
# STAGING TABLES (one per provider)
# =============================================================================
# WHAT: Raw fulfillment observations written by the ingestion adapters
# WHY: Reconciliation runs without external API calls; a row with
#      processed_to_orders = true is terminal and never re-examined


class FhbOrder(Base):
    """Carrier-A (FHB) staging row."""
    __tablename__ = "fhb_orders"
    __table_args__ = (
        UniqueConstraint("account_id", "fhb_order_id", name="uq_fhb_order"),
        Index("ix_fhb_orders_unprocessed", "processed_to_orders"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("warehouse_accounts.id"), nullable=True)
    fhb_order_id = Column(String, nullable=False)
    variable_symbol = Column(String, nullable=False, index=True)  # storefront order number as seen by FHB
    status = Column(String, nullable=False)
    tracking = Column(String, nullable=True)
    value = Column(Numeric(10, 2), nullable=True)
    recipient = Column(JSON, nullable=True)
    items = Column(JSON, nullable=True)
    raw_data = Column(JSON, nullable=False, default=dict)
    processed_to_orders = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class EuropeanFulfillmentOrder(Base):
    """Carrier-B (European Fulfillment) staging row."""
    __tablename__ = "european_fulfillment_orders"
    __table_args__ = (
        UniqueConstraint("account_id", "european_order_id", name="uq_european_fulfillment_order"),
        Index("ix_european_fulfillment_orders_unprocessed", "processed_to_orders"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("warehouse_accounts.id"), nullable=True)
    european_order_id = Column(String, nullable=False)
    order_number = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)  # status_livrison vocabulary
    tracking = Column(String, nullable=True)
    value = Column(Numeric(10, 2), nullable=True)
    recipient = Column(JSON, nullable=True)
    items = Column(JSON, nullable=True)
    raw_data = Column(JSON, nullable=False, default=dict)
    processed_to_orders = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ElogyOrder(Base):
    """Carrier-C (eLogy) staging row."""
    __tablename__ = "elogy_orders"
    __table_args__ = (
        UniqueConstraint("account_id", "elogy_order_id", name="uq_elogy_order"),
        Index("ix_elogy_orders_unprocessed", "processed_to_orders"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("warehouse_accounts.id"), nullable=True)
    elogy_order_id = Column(String, nullable=False)
    order_number = Column(String, nullable=True, index=True)  # absent on manually created shipments
    status = Column(String, nullable=False)
    tracking = Column(String, nullable=True)
    value = Column(Numeric(10, 2), nullable=True)
    recipient = Column(JSON, nullable=True)
    items = Column(JSON, nullable=True)
    raw_data = Column(JSON, nullable=False, default=dict)
    processed_to_orders = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class BigArenaOrder(Base):
    """Carrier-D (Big Arena) staging row.

    Customer contact is stored flat (customer_name/phone/email) instead of a
    recipient block, and the row carries a direct link to the matched order.
    """
    __tablename__ = "big_arena_orders"
    __table_args__ = (
        UniqueConstraint("account_id", "order_id", name="uq_big_arena_order"),
        Index("ix_big_arena_orders_unprocessed", "processed_to_orders"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("warehouse_accounts.id"), nullable=True)
    order_id = Column(String, nullable=False)  # Big Arena internal id
    external_id = Column(String, nullable=True, index=True)  # storefront order number
    status = Column(String, nullable=True)
    total = Column(Numeric(12, 2), nullable=True)
    currency = Column(String, nullable=True)
    tracking_code = Column(String, nullable=True)
    tracking_url = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    shipping_address = Column(JSON, nullable=True)
    items = Column(JSON, nullable=True)
    raw_data = Column(JSON, nullable=False, default=dict)
    processed_to_orders = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    linked_order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=True)
    order_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class DigistoreOrder(Base):
    """Payment-platform (Digistore24) delivery staging row."""
    __tablename__ = "digistore_orders"
    __table_args__ = (
        UniqueConstraint("account_id", "delivery_id", name="uq_digistore_order"),
        Index("ix_digistore_orders_unprocessed", "processed_to_orders"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("warehouse_accounts.id"), nullable=True)
    delivery_id = Column(String, nullable=False)
    purchase_id = Column(String, nullable=False, index=True)  # order number shown to the buyer
    transaction_id = Column(String, nullable=True)
    delivery_type = Column(String, nullable=False)  # request, in_progress, delivery, cancelled, ...
    tracking = Column(String, nullable=True)
    amount = Column(Numeric(10, 2), nullable=True)
    buyer = Column(JSON, nullable=True)  # {email, first_name, last_name, phone, address: {...}}
    raw_data = Column(JSON, nullable=False, default=dict)
    processed_to_orders = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    linked_order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# SYNC SESSIONS
# =============================================================================
# WHAT: Durable per-user progress of the staging reconciliation
# WHY: Progress is polled by a different request/process than the one running
#      the sync; the row also carries the single-active-run guard (is_running
#      + run_id) and a version counter that bumps on every write


class SyncSession(Base):
    __tablename__ = "sync_sessions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True)

    is_running = Column(Boolean, nullable=False, default=False)
    phase = Column(
        Enum(SyncPhaseEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=SyncPhaseEnum.preparing,
    )
    message = Column(Text, nullable=True)
    run_id = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=0)

    # Counters for the current (or last) run
    total_records = Column(Integer, nullable=False, default=0)
    processed_records = Column(Integer, nullable=False, default=0)
    updated_orders = Column(Integer, nullable=False, default=0)
    created_orders = Column(Integer, nullable=False, default=0)  # always 0: no orphan orders
    skipped_records = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    percentage = Column(Integer, nullable=False, default=0)
    provider_stats = Column(JSON, nullable=True)  # {provider_key: {processed, updated, skipped, errors}}

    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    last_updated_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return f"SyncSession {self.user_id} ({self.phase.value if self.phase else 'unknown'})"
