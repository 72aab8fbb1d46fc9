"""Order matcher: cascading identity resolution for staging rows.

WHAT:
    Given the identifying fields of one staging row and the operation it was
    resolved to, returns at most one canonical order.

WHY:
    Warehouses rarely echo storefront identifiers faithfully. Order numbers
    lose or gain prefixes and "#", phones gain country codes, and some
    providers send neither. The cascade below tries the most reliable
    identifier first; the first strategy with a hit wins and later
    strategies are never consulted (no cross-strategy scoring).

STRATEGIES (in order):
    1. order_number  - exact hit on any spelling from order_number_variants()
    2. email         - case-insensitive, against primary and storefront-payload emails
    3. phone         - exact, then 9-digit suffix (>= 9 digits) or reverse suffix (< 9)
    4. name_value    - name substring + |total - value| <= tolerance, unique hit only

SCOPE:
    Every lookup is restricted to one operation and, when the operation has an
    integration start date, to orders placed on or after it (orders without
    an order date stay in scope).

REFERENCES:
    - codsync/services/identifier_normalizer.py
    - codsync/services/provider_reconciler.py (only caller)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from codsync.models import Order
from codsync.services.identifier_normalizer import (
    is_usable_name,
    normalize_email,
    normalize_name,
    normalize_phone,
    order_number_variants,
    parse_value,
)

logger = logging.getLogger(__name__)

MIN_PHONE_DIGITS = 7
PHONE_SUFFIX_DIGITS = 9
DEFAULT_VALUE_TOLERANCE = 1.0


@dataclass(frozen=True)
class MatchResult:
    order: Order
    strategy: str
    detail: str = ""


@dataclass(frozen=True)
class _Candidate:
    """Projection of one canonical order used by strategies 2-4."""
    id: UUID
    emails: Tuple[str, ...]
    phone: str
    name: str
    total: Optional[float]


# =============================================================================
# STOREFRONT PAYLOAD HELPERS
# =============================================================================

def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def order_emails(customer_email: Optional[str], shopify_data: Optional[Dict]) -> Tuple[str, ...]:
    """All normalized emails a canonical order is known under (primary first)."""
    raw = [
        customer_email,
        _dig(shopify_data, "email"),
        _dig(shopify_data, "customer", "email"),
        _dig(shopify_data, "contact_email"),
    ]
    emails: List[str] = []
    for value in raw:
        email = normalize_email(value)
        if email and email not in emails:
            emails.append(email)
    return tuple(emails)


def order_phone(customer_phone: Optional[str], shopify_data: Optional[Dict]) -> str:
    """Normalized phone of a canonical order: primary field first, then payload alternates."""
    raw = [
        customer_phone,
        _dig(shopify_data, "phone"),
        _dig(shopify_data, "customer", "phone"),
        _dig(shopify_data, "shipping_address", "phone"),
        _dig(shopify_data, "billing_address", "phone"),
        _dig(shopify_data, "customer", "default_address", "phone"),
    ]
    for value in raw:
        phone = normalize_phone(value)
        if phone:
            return phone
    return ""


def order_name(customer_name: Optional[str], shopify_data: Optional[Dict]) -> str:
    name = normalize_name(customer_name)
    if name:
        return name
    first = _dig(shopify_data, "customer", "first_name") or ""
    last = _dig(shopify_data, "customer", "last_name") or ""
    return normalize_name(f"{first} {last}")


def _sort_key(order_date: Optional[datetime], order_id: UUID):
    # Most recent order first, undated orders last, id as tie-breaker
    return (order_date is None, -(order_date.timestamp()) if order_date else 0.0, str(order_id))


# =============================================================================
# MATCHER
# =============================================================================

class OrderMatcher:
    """Matcher bound to one Session.

    Candidate projections for strategies 2-4 are loaded once per
    (operation, integration date) and reused until `invalidate()`; the
    reconciler drops them at every batch. `served_cached` tells whether the
    last `find_match` read a projection loaded by an earlier row, so a caller
    about to record a permanent miss can retry against fresh orders.
    """

    def __init__(self, db: Session, value_tolerance: float = DEFAULT_VALUE_TOLERANCE):
        self.db = db
        self.value_tolerance = value_tolerance
        self._candidates: Dict[Tuple[UUID, Optional[datetime]], List[_Candidate]] = {}
        self.served_cached = False
        self._fresh_keys: set = set()

    def invalidate(self) -> None:
        self._candidates.clear()

    def match(
        self,
        order_number: Optional[str],
        email: Optional[str],
        phone: Optional[str],
        operation_id: UUID,
        name: Optional[str] = None,
        value: Any = None,
        integration_date: Optional[datetime] = None,
    ) -> Optional[Order]:
        result = self.find_match(order_number, email, phone, operation_id, name, value, integration_date)
        return result.order if result else None

    def find_match(
        self,
        order_number: Optional[str],
        email: Optional[str],
        phone: Optional[str],
        operation_id: UUID,
        name: Optional[str] = None,
        value: Any = None,
        integration_date: Optional[datetime] = None,
    ) -> Optional[MatchResult]:
        """Run the cascade; first strategy with a hit wins."""
        self.served_cached = False
        self._fresh_keys = set()
        result = self._match_order_number(order_number, operation_id, integration_date)
        if result:
            return result

        normalized_email = normalize_email(email)
        if normalized_email:
            result = self._match_email(normalized_email, operation_id, integration_date)
            if result:
                return result

        normalized_phone = normalize_phone(phone)
        if len(normalized_phone) >= MIN_PHONE_DIGITS:
            result = self._match_phone(normalized_phone, operation_id, integration_date)
            if result:
                return result

        normalized_name = normalize_name(name)
        numeric_value = parse_value(value)
        if is_usable_name(normalized_name) and numeric_value is not None:
            return self._match_name_value(normalized_name, numeric_value, operation_id, integration_date)

        return None

    # -------------------------------------------------------------------------
    # Strategy 1: order number variants
    # -------------------------------------------------------------------------

    def _scoped_query(self, query, operation_id: UUID, integration_date: Optional[datetime]):
        query = query.filter(Order.operation_id == operation_id)
        if integration_date is not None:
            query = query.filter(or_(Order.order_date.is_(None), Order.order_date >= integration_date))
        return query

    def _match_order_number(
        self,
        order_number: Optional[str],
        operation_id: UUID,
        integration_date: Optional[datetime],
    ) -> Optional[MatchResult]:
        variants = order_number_variants(order_number)
        if not variants:
            return None

        orders = self._scoped_query(
            self.db.query(Order).filter(Order.shopify_order_number.in_(variants)),
            operation_id,
            integration_date,
        ).all()
        if not orders:
            return None

        orders.sort(key=lambda o: _sort_key(o.order_date, o.id))
        for variant in variants:
            for order in orders:
                if order.shopify_order_number == variant:
                    logger.debug("[MATCHER] order_number hit %s via variant %r", order.id, variant)
                    return MatchResult(order=order, strategy="order_number", detail=variant)
        return None

    # -------------------------------------------------------------------------
    # Strategies 2-4: in-memory candidate projection
    # -------------------------------------------------------------------------

    def _load_candidates(self, operation_id: UUID, integration_date: Optional[datetime]) -> List[_Candidate]:
        key = (operation_id, integration_date)
        cached = self._candidates.get(key)
        if cached is not None:
            if key not in self._fresh_keys:
                self.served_cached = True
            return cached

        rows = self._scoped_query(
            self.db.query(
                Order.id,
                Order.customer_email,
                Order.customer_phone,
                Order.customer_name,
                Order.total,
                Order.shopify_data,
                Order.order_date,
            ),
            operation_id,
            integration_date,
        ).all()
        rows.sort(key=lambda r: _sort_key(r.order_date, r.id))

        candidates = [
            _Candidate(
                id=row.id,
                emails=order_emails(row.customer_email, row.shopify_data),
                phone=order_phone(row.customer_phone, row.shopify_data),
                name=order_name(row.customer_name, row.shopify_data),
                total=float(row.total) if row.total is not None else None,
            )
            for row in rows
        ]
        self._candidates[key] = candidates
        self._fresh_keys.add(key)
        logger.debug("[MATCHER] Loaded %d candidate order(s) for operation %s", len(candidates), operation_id)
        return candidates

    def _hit(self, candidate: _Candidate, strategy: str, detail: str) -> Optional[MatchResult]:
        order = self.db.get(Order, candidate.id)
        if order is None:
            return None
        logger.debug("[MATCHER] %s hit %s (%s)", strategy, order.id, detail)
        return MatchResult(order=order, strategy=strategy, detail=detail)

    def _first(self, candidates: Iterable[_Candidate], strategy: str, detail: str) -> Optional[MatchResult]:
        for candidate in candidates:
            result = self._hit(candidate, strategy, detail)
            if result:
                return result
        return None

    def _match_email(self, email: str, operation_id: UUID, integration_date: Optional[datetime]) -> Optional[MatchResult]:
        candidates = self._load_candidates(operation_id, integration_date)
        return self._first((c for c in candidates if email in c.emails), "email", "exact")

    def _match_phone(self, phone: str, operation_id: UUID, integration_date: Optional[datetime]) -> Optional[MatchResult]:
        candidates = [c for c in self._load_candidates(operation_id, integration_date) if c.phone]

        result = self._first((c for c in candidates if c.phone == phone), "phone", "exact")
        if result:
            return result

        if len(phone) >= PHONE_SUFFIX_DIGITS:
            suffix = phone[-PHONE_SUFFIX_DIGITS:]
            return self._first(
                (c for c in candidates if len(c.phone) >= PHONE_SUFFIX_DIGITS and c.phone[-PHONE_SUFFIX_DIGITS:] == suffix),
                "phone",
                f"suffix{PHONE_SUFFIX_DIGITS}",
            )

        # Short warehouse number: storefront phone must end with all of it
        return self._first((c for c in candidates if c.phone.endswith(phone)), "phone", "reverse_suffix")

    def _match_name_value(
        self,
        name: str,
        value: float,
        operation_id: UUID,
        integration_date: Optional[datetime],
    ) -> Optional[MatchResult]:
        hits = [
            c for c in self._load_candidates(operation_id, integration_date)
            if c.total is not None
            and is_usable_name(c.name)
            and (name in c.name or c.name in name)
            and abs(c.total - value) <= self.value_tolerance
        ]
        if not hits:
            return None
        if len(hits) > 1:
            logger.debug("[MATCHER] name_value ambiguous for %r (%d candidates), rejecting", name, len(hits))
            return None
        return self._hit(hits[0], "name_value", f"{hits[0].total:.2f}~{value:.2f}")
