"""Generic provider reconciler: drains one staging table into canonical orders.

WHAT:
    Pulls unprocessed rows of one provider's staging table in bounded
    batches, resolves each row's operation, runs the order matcher and
    merges carrier data into the matched canonical order.

WHY:
    Every carrier needs the same loop; the ProviderAdapter carries the
    differences (field names, status vocabulary, no-match policy).

ROW OUTCOMES:
    matched              -> order merged, row processed (+ linked_order_id)
    operation_unresolved -> row processed, counted as skipped
    failed_match         -> terminal policy: row processed, failedMatch stamped
    unmatched            -> retry policy: row untouched, retried next run
    error                -> rolled back, counted, row untouched

A canonical order is never created from a staging row.

SAFETY CAPS:
    The loop ends when a batch comes back empty, or when the batch, record or
    wall-clock cap is hit. Rows are walked by ascending id within a run so
    retry-eligible rows are never fetched twice in the same run.

REFERENCES:
    - codsync/services/provider_adapters.py
    - codsync/services/order_matcher.py
    - codsync/services/staging_sync_service.py (runs one reconciler per provider)
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from codsync.models import Order, utcnow
from codsync.services.operation_resolver import AccountOperationsCache, resolve_operation
from codsync.services.order_matcher import DEFAULT_VALUE_TOLERANCE, OrderMatcher
from codsync.services.provider_adapters import POLICY_TERMINAL, ProviderAdapter, StagingFields

logger = logging.getLogger(__name__)

OUTCOME_MATCHED = "matched"
OUTCOME_OPERATION_UNRESOLVED = "operation_unresolved"
OUTCOME_FAILED_MATCH = "failed_match"
OUTCOME_UNMATCHED = "unmatched"

FAILED_MATCH_REASON = "No storefront order matched by order number, email, phone or name and value"


@dataclass
class ReconcileStats:
    """Counters returned by one provider pass."""
    provider: str
    processed: int = 0  # rows examined this run, whatever the outcome
    created: int = 0  # stays 0: unmatched rows never create orders
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    failed_matches: int = 0
    unmatched: int = 0
    batches: int = 0
    stopped_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


# Called after every batch; returning False stops the loop (run superseded)
ProgressCallback = Callable[[ReconcileStats], bool]


class ProviderReconciler:
    """One provider, one Session, serial rows."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        db: Session,
        cache: AccountOperationsCache,
        batch_size: int = 100,
        max_batches: int = 500,
        max_records: int = 50000,
        max_seconds: float = 900,
        value_tolerance: float = DEFAULT_VALUE_TOLERANCE,
        progress_callback: Optional[ProgressCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.adapter = adapter
        self.db = db
        self.cache = cache
        self.batch_size = batch_size
        self.max_batches = max_batches
        self.max_records = max_records
        self.max_seconds = max_seconds
        self.progress_callback = progress_callback
        self.clock = clock
        self.matcher = OrderMatcher(db, value_tolerance=value_tolerance)
        self.log_tag = f"[RECONCILER:{adapter.key}]"

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def run(self) -> ReconcileStats:
        stats = ReconcileStats(provider=self.adapter.key)
        account_ids = self.cache.account_ids(self.adapter.key)
        if not account_ids:
            stats.stopped_reason = "no_accounts"
            return stats

        started = self.clock()
        cursor = None

        while True:
            if stats.batches >= self.max_batches:
                stats.stopped_reason = "max_batches"
                break
            if stats.processed >= self.max_records:
                stats.stopped_reason = "max_records"
                break
            if self.clock() - started >= self.max_seconds:
                stats.stopped_reason = "max_seconds"
                break

            # Fetch failures are systemic and propagate to the orchestrator
            batch = self._fetch_batch(account_ids, cursor)
            if not batch:
                stats.stopped_reason = "drained"
                break

            stats.batches += 1
            row_ids = [row.id for row in batch]
            cursor = row_ids[-1]
            # Storefront orders keep arriving during a run
            self.matcher.invalidate()

            for row_id, row in zip(row_ids, batch):
                self._process_row(row_id, row, stats)

            logger.debug(
                "%s batch %d: processed=%d updated=%d skipped=%d errors=%d",
                self.log_tag, stats.batches, stats.processed, stats.updated, stats.skipped, stats.errors,
            )

            if self.progress_callback and not self.progress_callback(stats):
                stats.stopped_reason = "superseded"
                break

        logger.info(
            "%s done (%s): processed=%d updated=%d skipped=%d failed_matches=%d unmatched=%d errors=%d",
            self.log_tag, stats.stopped_reason, stats.processed, stats.updated, stats.skipped,
            stats.failed_matches, stats.unmatched, stats.errors,
        )
        return stats

    def _fetch_batch(self, account_ids, cursor) -> List:
        model = self.adapter.model
        query = self.db.query(model).filter(
            model.processed_to_orders.is_(False),
            model.account_id.in_(account_ids),
        )
        if cursor is not None:
            query = query.filter(model.id > cursor)
        return query.order_by(model.id).limit(self.batch_size).all()

    def _process_row(self, row_id, row, stats: ReconcileStats) -> None:
        stats.processed += 1
        try:
            outcome = self.reconcile_row(row)
            self.db.commit()
        except Exception:
            self.db.rollback()
            stats.errors += 1
            logger.exception("%s Failed to reconcile staging row %s", self.log_tag, row_id)
            return

        if outcome == OUTCOME_MATCHED:
            stats.updated += 1
        elif outcome == OUTCOME_FAILED_MATCH:
            stats.skipped += 1
            stats.failed_matches += 1
        elif outcome == OUTCOME_UNMATCHED:
            stats.skipped += 1
            stats.unmatched += 1
        else:
            stats.skipped += 1

    # -------------------------------------------------------------------------
    # Single row
    # -------------------------------------------------------------------------

    def reconcile_row(self, row, now: Optional[datetime] = None) -> str:
        """Apply one staging row; the caller commits or rolls back."""
        now = now or utcnow()
        fields = self.adapter.extract(row)

        operation = resolve_operation(self.cache, row.account_id, fields.order_number)
        if operation is None:
            logger.debug("%s row %s: no operation for account %s / %r", self.log_tag, row.id, row.account_id, fields.order_number)
            self._mark_processed(row, now)
            return OUTCOME_OPERATION_UNRESOLVED

        result = self._find(fields, operation)
        if not result and self.adapter.no_match_policy == POLICY_TERMINAL and self.matcher.served_cached:
            # failedMatch is permanent, so the miss must hold against current orders
            self.matcher.invalidate()
            result = self._find(fields, operation)

        if result:
            self.merge_into_order(result.order, fields, now)
            self._mark_processed(row, now)
            if self.adapter.link_column:
                setattr(row, self.adapter.link_column, result.order.id)
            logger.debug("%s row %s -> order %s via %s", self.log_tag, row.id, result.order.id, result.strategy)
            return OUTCOME_MATCHED

        if self.adapter.no_match_policy == POLICY_TERMINAL:
            raw = dict(row.raw_data or {})
            raw.update(
                failedMatch=True,
                failedMatchReason=FAILED_MATCH_REASON,
                failedMatchAt=now.isoformat(),
            )
            row.raw_data = raw
            self._mark_processed(row, now)
            return OUTCOME_FAILED_MATCH

        return OUTCOME_UNMATCHED

    def _find(self, fields: StagingFields, operation):
        return self.matcher.find_match(
            fields.order_number,
            fields.email,
            fields.phone,
            operation.id,
            name=fields.name,
            value=fields.value,
            integration_date=operation.integration_started_at,
        )

    def _mark_processed(self, row, now: datetime) -> None:
        row.processed_to_orders = True
        row.processed_at = now

    def merge_into_order(self, order: Order, fields: StagingFields, now: datetime) -> None:
        """Write carrier fields and this provider's enrichment sub-key.

        Storefront-owned fields (customer identity, total) are only filled
        when the order has none.
        """
        # Re-read the blob under a row lock (no-op on SQLite) so a concurrent
        # reconciler's sub-key is not lost
        self.db.refresh(order, attribute_names=["provider_data"], with_for_update=True)

        status = self.adapter.translate_status(fields.status)
        if status:
            order.status = status
        if fields.tracking:
            order.tracking_number = fields.tracking
        if fields.provider_order_id:
            order.carrier_order_id = fields.provider_order_id
        order.carrier_imported = True
        order.carrier_matched_at = now
        order.provider = self.adapter.key
        order.last_sync_at = now
        order.needs_sync = False

        provider_data = dict(order.provider_data or {})
        provider_data[self.adapter.key] = {
            "order_id": fields.provider_order_id,
            "status": fields.status,
            "order_number": fields.order_number,
            "tracking": fields.tracking,
            "value": fields.value,
            "updated_at": now.isoformat(),
        }
        order.provider_data = provider_data

        if not order.customer_email and fields.email:
            order.customer_email = fields.email
        if not order.customer_phone and fields.phone:
            order.customer_phone = fields.phone
        if not order.customer_name and fields.name:
            order.customer_name = fields.name
        if not order.customer_city and fields.city:
            order.customer_city = fields.city
        if not order.customer_country and fields.country:
            order.customer_country = fields.country
        if order.total is None and fields.value is not None:
            order.total = fields.value
