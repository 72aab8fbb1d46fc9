"""Identifier normalization for staging reconciliation.

WHAT:
    Pure functions turning phone numbers, emails, names and order numbers
    into comparable canonical forms.

WHY:
    Warehouses and storefronts format the same identifier differently
    ("+34 699-123-456 ext 2" vs "699123456", "LI-1001" vs "#1001"). Both
    sides of every comparison go through the same function, otherwise
    matching silently fails.

All functions are total: None/empty input yields "" (or an empty list),
never an exception.
"""

import re
import unicodedata
from typing import Any, List, Optional, Tuple


# Extension suffixes: "ext 12", "ext.12", "extension 3", "ramal 5", "x123"
_EXTENSION_RE = re.compile(r"\b(ext|extension|ramal|x)\s*\.?\s*\d+", re.IGNORECASE)
# Digits glued to the number ("699123456x12") have no word boundary before the x
_TRAILING_X_RE = re.compile(r"(?<=\d)\s*x\s*\d+$", re.IGNORECASE)
_NON_DIGIT_RE = re.compile(r"\D")
_WHITESPACE_RE = re.compile(r"\s+")

# "LI-1001", "LI1001", "ABC-12-34" -> prefix "LI"/"ABC", base "1001"/"12-34"
_PREFIXED_NUMBER_RE = re.compile(r"^([A-Za-z]+)-?(\d.*)$")

MIN_NAME_LENGTH = 3


def _as_text(raw: Any) -> str:
    if raw is None:
        return ""
    return str(raw).strip()


def normalize_phone(raw: Any) -> str:
    """Strip extension patterns, then every non-digit character.

    Country-code digits are kept; suffix matching in the order matcher deals
    with one side carrying a country code the other dropped.
    """
    text = _as_text(raw)
    if not text:
        return ""
    text = _EXTENSION_RE.sub("", text)
    text = _TRAILING_X_RE.sub("", text)
    return _NON_DIGIT_RE.sub("", text)


def normalize_email(raw: Any) -> str:
    return _as_text(raw).lower()


def normalize_name(raw: Any) -> str:
    """Lowercase, strip diacritics, collapse whitespace.

    "  María   GARCÍA " -> "maria garcia"
    """
    text = _as_text(raw)
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def is_usable_name(normalized: str) -> bool:
    """Very short names ("jo", "a") match far too many orders."""
    return len(normalized) >= MIN_NAME_LENGTH


def split_order_prefix(order_number: str) -> Optional[Tuple[str, str]]:
    """Split "LI-1001" into ("LI", "1001"); None when there is no alpha prefix."""
    match = _PREFIXED_NUMBER_RE.match(order_number)
    if not match:
        return None
    return match.group(1), match.group(2)


def order_number_variants(raw: Any) -> List[str]:
    """Candidate spellings of a storefront order number, most literal first.

    For "LI-483422":
        ["LI-483422", "#LI-483422", "483422", "#483422", "LI483422", "#LI483422"]

    The set is deduplicated preserving order so the matcher tries the
    literal value before any rewritten form.
    """
    text = _as_text(raw)
    if not text:
        return []

    bare = text.lstrip("#").strip()
    if not bare:
        return []

    candidates = [text, bare, f"#{bare}"]

    parts = split_order_prefix(bare)
    if parts:
        prefix, base = parts
        candidates += [base, f"#{base}"]
    else:
        prefix, base = None, None

    no_dashes = bare.replace("-", "")
    candidates += [no_dashes, f"#{no_dashes}"]

    if prefix:
        candidates += [f"{prefix}-{base}", f"#{prefix}-{base}"]

    variants: List[str] = []
    seen = set()
    for candidate in candidates:
        if candidate and candidate not in seen:
            seen.add(candidate)
            variants.append(candidate)
    return variants


def parse_value(raw: Any) -> Optional[float]:
    """Monetary value as float; None for missing, unparsable or non-positive values."""
    if raw is None or raw == "":
        return None
    try:
        value = float(str(raw).replace(",", ".")) if isinstance(raw, str) else float(raw)
    except (TypeError, ValueError):
        return None
    if value != value or value <= 0:  # NaN or non-positive
        return None
    return value
