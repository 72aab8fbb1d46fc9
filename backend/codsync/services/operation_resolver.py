"""Operation resolution for staging rows.

WHAT:
    Builds a per-user cache of {warehouse account -> linked operations} and
    decides which operation a staging row belongs to.

WHY:
    A warehouse account can serve several operations of the same tenant.
    Matching is scoped to exactly one operation, so the operation has to be
    decided before any order lookup. When it cannot be decided the row is
    skipped for good (there is no way to guess the tenant unit).

RESOLUTION ORDER:
    1. Operation whose order_prefix starts the row's order number
    2. The only operation linked to the account
    3. None (caller marks the row processed + skipped)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from codsync.models import (
    Operation,
    Store,
    WarehouseAccount,
    WarehouseAccountOperation,
    WarehouseAccountStatusEnum,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationCandidate:
    """Snapshot of the operation fields the reconciler needs (detached from any Session)."""
    id: UUID
    name: str
    order_prefix: Optional[str] = None
    integration_started_at: Optional[datetime] = None


@dataclass
class AccountOperationsCache:
    operations_by_account: Dict[UUID, List[OperationCandidate]] = field(default_factory=dict)
    account_ids_by_provider: Dict[str, List[UUID]] = field(default_factory=dict)
    promoted_accounts: int = 0

    def account_ids(self, provider_key: str) -> List[UUID]:
        return self.account_ids_by_provider.get(provider_key, [])

    def operations_for(self, account_id: Optional[UUID]) -> List[OperationCandidate]:
        if account_id is None:
            return []
        return self.operations_by_account.get(account_id, [])


def build_account_operations_cache(db: Session, user_id: UUID) -> AccountOperationsCache:
    """Load every (account, operation) link owned by the user in one query.

    Both sides of the link must belong to the user: the account directly, the
    operation through its store. Accounts still `pending` but already linked
    are promoted to `active` here and committed.
    """
    rows = (
        db.query(WarehouseAccount, Operation)
        .join(WarehouseAccountOperation, WarehouseAccountOperation.account_id == WarehouseAccount.id)
        .join(Operation, Operation.id == WarehouseAccountOperation.operation_id)
        .join(Store, Store.id == Operation.store_id)
        .filter(
            WarehouseAccount.user_id == user_id,
            Store.owner_id == user_id,
            WarehouseAccount.status.in_([
                WarehouseAccountStatusEnum.pending,
                WarehouseAccountStatusEnum.active,
            ]),
        )
        .order_by(WarehouseAccount.created_at, Operation.created_at)
        .all()
    )

    cache = AccountOperationsCache()
    promoted = set()

    for account, operation in rows:
        candidates = cache.operations_by_account.setdefault(account.id, [])
        if not candidates:
            cache.account_ids_by_provider.setdefault(account.provider_key, []).append(account.id)
        candidates.append(OperationCandidate(
            id=operation.id,
            name=operation.name,
            order_prefix=(operation.order_prefix or "").strip() or None,
            integration_started_at=operation.integration_started_at,
        ))

        if account.status == WarehouseAccountStatusEnum.pending and account.id not in promoted:
            account.status = WarehouseAccountStatusEnum.active
            promoted.add(account.id)

    if promoted:
        db.commit()
        logger.info("[STAGING_SYNC] Promoted %d pending warehouse account(s) to active for user %s", len(promoted), user_id)

    cache.promoted_accounts = len(promoted)
    logger.debug(
        "[STAGING_SYNC] Operation cache for user %s: %d account(s), providers=%s",
        user_id, len(cache.operations_by_account), sorted(cache.account_ids_by_provider),
    )
    return cache


def resolve_operation(
    cache: AccountOperationsCache,
    account_id: Optional[UUID],
    order_number: Optional[str],
) -> Optional[OperationCandidate]:
    """Pick the operation a staging row belongs to, or None."""
    candidates = cache.operations_for(account_id)
    if not candidates:
        return None

    number = (order_number or "").strip().lstrip("#").upper()
    if number:
        # Longest prefix wins so "LIT-" beats "LI-" for "LIT-1001"
        prefixed = [c for c in candidates if c.order_prefix and number.startswith(c.order_prefix.upper())]
        if prefixed:
            return max(prefixed, key=lambda c: len(c.order_prefix))

    if len(candidates) == 1:
        return candidates[0]

    return None
