"""Per-provider adapters for the generic provider reconciler.

WHAT:
    One ProviderAdapter per staging table: how to read identifying fields from
    a row, how to translate the provider's status vocabulary, and what to do
    when a row finds no canonical order.

WHY:
    The reconciliation loop is identical for every carrier; only field names,
    status words and the no-match policy differ. Keeping those differences in
    data lets one ProviderReconciler serve all staging tables.

NO-MATCH POLICY:
    terminal - upstream lookup is a single full-text / date-bounded query per
               record (European Fulfillment, Digistore24). The row is marked
               processed and stamped failedMatch in raw_data; never retried.
    retry    - re-querying is cheap and storefront data may land late (FHB,
               eLogy, Big Arena). The row is left unprocessed for a later run.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Type

from codsync.models import (
    BigArenaOrder,
    DigistoreOrder,
    ElogyOrder,
    EuropeanFulfillmentOrder,
    FhbOrder,
    OrderStatusEnum,
)

POLICY_TERMINAL = "terminal"
POLICY_RETRY = "retry"

_S = OrderStatusEnum


@dataclass(frozen=True)
class StagingFields:
    """Identifying and carrier fields of one staging row, provider-agnostic."""
    order_number: Optional[str]
    provider_order_id: Optional[str]
    status: Optional[str]
    tracking: Optional[str] = None
    value: Any = None
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


@dataclass(frozen=True)
class ProviderAdapter:
    key: str
    model: Type
    status_map: Dict[str, str]
    no_match_policy: str
    extract: Callable[[Any], StagingFields]
    # Column on the staging row pointing at the matched canonical order, if the table has one
    link_column: Optional[str] = None

    def translate_status(self, raw_status: Optional[str]) -> Optional[str]:
        """Provider status -> tenant status; None for unknown words (canonical status is kept)."""
        if not raw_status:
            return None
        return self.status_map.get(str(raw_status).strip().lower())

    @property
    def table_name(self) -> str:
        return self.model.__tablename__


# =============================================================================
# FIELD EXTRACTION
# =============================================================================

def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _recipient_field(recipient: Optional[Dict], key: str) -> Optional[str]:
    """Top-level field first, then the nested address block."""
    if not isinstance(recipient, dict):
        return None
    value = _text(recipient.get(key))
    if value:
        return value
    address = recipient.get("address")
    if isinstance(address, dict):
        return _text(address.get(key))
    return None


def _recipient_name(recipient: Optional[Dict]) -> Optional[str]:
    name = _recipient_field(recipient, "name")
    if name:
        return name
    first = _recipient_field(recipient, "first_name") or ""
    last = _recipient_field(recipient, "last_name") or ""
    return _text(f"{first} {last}")


def _json_value(value: Any) -> Any:
    # Numeric columns come back as Decimal; the enrichment blob is JSON
    if isinstance(value, Decimal):
        return float(value)
    return value


def _extract_fhb(row: FhbOrder) -> StagingFields:
    return StagingFields(
        order_number=_text(row.variable_symbol),
        provider_order_id=_text(row.fhb_order_id),
        status=_text(row.status),
        tracking=_text(row.tracking),
        value=_json_value(row.value),
        email=_recipient_field(row.recipient, "email"),
        phone=_recipient_field(row.recipient, "phone"),
        name=_recipient_name(row.recipient),
        city=_recipient_field(row.recipient, "city"),
        country=_recipient_field(row.recipient, "country"),
    )


def _extract_european(row: EuropeanFulfillmentOrder) -> StagingFields:
    return StagingFields(
        order_number=_text(row.order_number),
        provider_order_id=_text(row.european_order_id),
        status=_text(row.status),
        tracking=_text(row.tracking),
        value=_json_value(row.value),
        email=_recipient_field(row.recipient, "email"),
        phone=_recipient_field(row.recipient, "phone"),
        name=_recipient_name(row.recipient),
        city=_recipient_field(row.recipient, "city"),
        country=_recipient_field(row.recipient, "country"),
    )


def _extract_elogy(row: ElogyOrder) -> StagingFields:
    return StagingFields(
        order_number=_text(row.order_number),
        provider_order_id=_text(row.elogy_order_id),
        status=_text(row.status),
        tracking=_text(row.tracking),
        value=_json_value(row.value),
        email=_recipient_field(row.recipient, "email"),
        phone=_recipient_field(row.recipient, "phone"),
        name=_recipient_name(row.recipient),
        city=_recipient_field(row.recipient, "city"),
        country=_recipient_field(row.recipient, "country"),
    )


def _extract_big_arena(row: BigArenaOrder) -> StagingFields:
    address = row.shipping_address if isinstance(row.shipping_address, dict) else {}
    return StagingFields(
        order_number=_text(row.external_id),
        provider_order_id=_text(row.order_id),
        status=_text(row.status),
        tracking=_text(row.tracking_code),
        value=_json_value(row.total),
        email=_text(row.customer_email),
        phone=_text(row.customer_phone),
        name=_text(row.customer_name),
        city=_text(address.get("city")),
        country=_text(address.get("country")),
    )


def _extract_digistore(row: DigistoreOrder) -> StagingFields:
    return StagingFields(
        order_number=_text(row.purchase_id),
        provider_order_id=_text(row.delivery_id),
        status=_text(row.delivery_type),
        tracking=_text(row.tracking),
        value=_json_value(row.amount),
        email=_recipient_field(row.buyer, "email"),
        phone=_recipient_field(row.buyer, "phone"),
        name=_recipient_name(row.buyer),
        city=_recipient_field(row.buyer, "city"),
        country=_recipient_field(row.buyer, "country"),
    )


# =============================================================================
# STATUS VOCABULARIES (provider word, lowercased -> tenant status)
# =============================================================================

FHB_STATUS_MAP = {
    "pending": _S.pending.value,
    "processing": _S.confirmed.value,
    "shipped": _S.shipped.value,
    "sent": _S.shipped.value,
    "delivered": _S.delivered.value,
    "canceled": _S.cancelled.value,
    "cancelled": _S.cancelled.value,
    "rejected": _S.cancelled.value,  # refused at the door
    "returned": _S.returned.value,
}

EUROPEAN_FULFILLMENT_STATUS_MAP = {
    "pending": _S.pending.value,
    "new order": _S.pending.value,
    "incident": _S.pending.value,
    "processing": _S.processing.value,
    "redeployment": _S.processing.value,
    "unpacked": _S.processing.value,
    "shipped": _S.shipped.value,
    "sent": _S.shipped.value,
    "in delivery": _S.shipped.value,
    "in transit": _S.shipped.value,
    "delivered": _S.delivered.value,
    "canceled": _S.cancelled.value,
    "cancelled": _S.cancelled.value,
    "rejected": _S.cancelled.value,
    "returned": _S.returned.value,
}

ELOGY_STATUS_MAP = {
    "pending": _S.pending.value,
    "processing": _S.processing.value,
    "in_warehouse": _S.confirmed.value,
    "shipped": _S.shipped.value,
    "in_transit": _S.shipped.value,
    "out_for_delivery": _S.shipped.value,
    "delivered": _S.delivered.value,
    "canceled": _S.cancelled.value,
    "cancelled": _S.cancelled.value,
    "returned": _S.returned.value,
}

BIG_ARENA_STATUS_MAP = {
    "pending": _S.pending.value,
    "confirmed": _S.confirmed.value,
    "processing": _S.processing.value,
    "shipped": _S.shipped.value,
    "sent": _S.shipped.value,
    "in_transit": _S.shipped.value,
    "delivered": _S.delivered.value,
    "canceled": _S.cancelled.value,
    "cancelled": _S.cancelled.value,
    "rejected": _S.cancelled.value,
    "returned": _S.returned.value,
}

DIGISTORE_STATUS_MAP = {
    "request": _S.pending.value,
    "in_progress": _S.confirmed.value,
    "delivery": _S.shipped.value,
    "partial_delivery": _S.shipped.value,
    "return": _S.returned.value,
    "cancel": _S.cancelled.value,
    "cancelled": _S.cancelled.value,
}


# =============================================================================
# REGISTRY
# =============================================================================

FHB = ProviderAdapter(
    key="fhb",
    model=FhbOrder,
    status_map=FHB_STATUS_MAP,
    no_match_policy=POLICY_RETRY,
    extract=_extract_fhb,
)

EUROPEAN_FULFILLMENT = ProviderAdapter(
    key="european_fulfillment",
    model=EuropeanFulfillmentOrder,
    status_map=EUROPEAN_FULFILLMENT_STATUS_MAP,
    no_match_policy=POLICY_TERMINAL,
    extract=_extract_european,
)

ELOGY = ProviderAdapter(
    key="elogy",
    model=ElogyOrder,
    status_map=ELOGY_STATUS_MAP,
    no_match_policy=POLICY_RETRY,
    extract=_extract_elogy,
)

BIG_ARENA = ProviderAdapter(
    key="big_arena",
    model=BigArenaOrder,
    status_map=BIG_ARENA_STATUS_MAP,
    no_match_policy=POLICY_RETRY,
    extract=_extract_big_arena,
    link_column="linked_order_id",
)

DIGISTORE = ProviderAdapter(
    key="digistore",
    model=DigistoreOrder,
    status_map=DIGISTORE_STATUS_MAP,
    no_match_policy=POLICY_TERMINAL,
    extract=_extract_digistore,
    link_column="linked_order_id",
)

PROVIDER_ADAPTERS = (FHB, EUROPEAN_FULFILLMENT, ELOGY, BIG_ARENA, DIGISTORE)


def get_adapter(provider_key: str) -> ProviderAdapter:
    for adapter in PROVIDER_ADAPTERS:
        if adapter.key == provider_key:
            return adapter
    raise KeyError(f"Unknown staging provider: {provider_key}")
