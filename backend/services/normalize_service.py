"""
Normalization Service

Pure functions applied to line items after extraction, whichever strategy
produced them:
  - category labels are mapped onto the canonical taxonomy
  - dates are repaired (unparseable / implausible years → today)
  - amounts are cleaned to non-negative two-decimal values
  - duplicate items are collapsed
"""
import logging
import math
import re
import string
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from models.schemas import ExtractedLineItem
from services.categories import (
    CANONICAL_CATEGORIES,
    FALLBACK_CATEGORY,
    LEGACY_CATEGORY_ALIASES,
    match_keyword_category,
)

logger = logging.getLogger("pocketbook.normalize")

# Plausible receipt years.  Anything outside is treated as an OCR misread
# (e.g. "2123").  Revisit before importing archived or far-future receipts.
MIN_RECEIPT_YEAR = 2020
MAX_RECEIPT_YEAR = 2030

DEFAULT_DESCRIPTION = "Store Purchase"
DEFAULT_PAYMENT_METHOD = "Card"

_TWO_PLACES = Decimal("0.01")
_DECIMAL_COMMA_RE = re.compile(r",\d{2}$")
_CANONICAL_BY_LOWER = {c.lower(): c for c in CANONICAL_CATEGORIES}

# Accepted non-ISO date layouts, tried in order.  US month-first wins over
# day-first for ambiguous values like 03/04/2024.
_DATE_FORMATS = (
    "%m/%d/%Y", "%m/%d/%y",
    "%m-%d-%Y", "%m-%d-%y",
    "%d/%m/%Y", "%d/%m/%y",
    "%Y/%m/%d", "%d.%m.%Y",
    "%b %d, %Y", "%B %d, %Y", "%d %b %Y", "%d %B %Y",
)
_ISO_DATE_RE = re.compile(r'^(\d{4})-(\d{2})-(\d{2})$')


def normalize_category(raw: Optional[str]) -> str:
    """
    Map any label onto the canonical taxonomy.  Total: never raises and
    always returns a member of CANONICAL_CATEGORIES.

    Order: exact (case-insensitive) → keyword substring → legacy alias → "Other".
    """
    label = (raw or "").strip()
    if not label:
        return FALLBACK_CATEGORY
    lower = label.lower()
    if lower in _CANONICAL_BY_LOWER:
        return _CANONICAL_BY_LOWER[lower]
    matched = match_keyword_category(label)
    if matched:
        return matched
    alias = LEGACY_CATEGORY_ALIASES.get(lower)
    if alias:
        return alias
    return FALLBACK_CATEGORY


def _today(today: Optional[date]) -> date:
    return today or date.today()


def _parse_date(raw: str) -> Optional[date]:
    text = raw.strip()
    m = _ISO_DATE_RE.match(text)
    if m:
        try:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            return None
    # ISO datetimes ("2024-03-01T10:22:00Z"): keep the calendar date
    if len(text) > 10 and _ISO_DATE_RE.match(text[:10]):
        return _parse_date(text[:10])
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_date(raw: Optional[str], today: Optional[date] = None) -> str:
    """
    Return an ISO YYYY-MM-DD date.  Missing, unparseable and out-of-window
    dates (year outside [MIN_RECEIPT_YEAR, MAX_RECEIPT_YEAR]) become today.
    """
    fallback = _today(today).isoformat()
    if not raw or not str(raw).strip():
        return fallback
    parsed = _parse_date(str(raw))
    if parsed is None:
        logger.debug("Unparseable receipt date %r, using today", raw)
        return fallback
    if not (MIN_RECEIPT_YEAR <= parsed.year <= MAX_RECEIPT_YEAR):
        logger.debug("Receipt date %r outside %d-%d, using today",
                     raw, MIN_RECEIPT_YEAR, MAX_RECEIPT_YEAR)
        return fallback
    return parsed.isoformat()


def normalize_amount(raw: Union[str, int, float, Decimal, None]) -> Decimal:
    """Strip currency markers and return a non-negative two-decimal Decimal."""
    if raw is None:
        return Decimal("0.00")
    if isinstance(raw, float):
        if math.isnan(raw) or math.isinf(raw):
            return Decimal("0.00")
        text = repr(raw)
    else:
        text = str(raw)
    text = re.sub(r'(?i)\b(rs|pkr|usd|eur|inr)\.?', '', text)
    text = re.sub(r'[$€£₹\s]', '', text)
    if _DECIMAL_COMMA_RE.search(text):
        # "3,49" and "1.234,56": the last comma is the decimal point
        head, _, cents = text.rpartition(',')
        text = head.replace('.', '').replace(',', '') + '.' + cents
    else:
        text = text.replace(',', '')
    try:
        value = Decimal(text)
    except InvalidOperation:
        return Decimal("0.00")
    if not value.is_finite() or value < 0:
        return Decimal("0.00")
    try:
        return value.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        logger.debug("Amount %r too large to represent, using 0.00", raw)
        return Decimal("0.00")


# ── Description cleanup ───────────────────────────────────────────────────────

_QTY_PREFIX_RE = re.compile(r'^\s*(?:\d+\s*[xX]\b|\(\d+\)|[xX]\s*\d+\b)\s*')
_SKU_RE        = re.compile(r'(?i)\b(?:sku|upc|plu)\s*#?\s*\d+\b|\b[A-Z]{0,3}\d{5,}\b')
_PRICE_RE      = re.compile(r'[$€£₹]?\s*\d+[.,]\d{2}\b')
_LEADING_RE    = re.compile(r'^[^A-Za-z0-9(]+')
_PREFIX_WORD_RE = re.compile(r'(?i)^(?:item|product)\s*[:.\-]\s*')


def clean_description(raw: Optional[str]) -> str:
    """
    Human-clean an item description: drop quantity markers, SKU codes,
    embedded prices and leading symbols, collapse whitespace, title-case.
    Returns "" when nothing usable remains.
    """
    text = (raw or "").strip()
    text = _PREFIX_WORD_RE.sub('', text)
    text = _QTY_PREFIX_RE.sub('', text)
    text = _SKU_RE.sub(' ', text)
    text = _PRICE_RE.sub(' ', text)
    text = _LEADING_RE.sub('', text)
    text = re.sub(r'\s{2,}', ' ', text).strip(" -*#:")
    return string.capwords(text)


def synthetic_default_item(today: Optional[date] = None,
                           amount: Union[str, Decimal, None] = None) -> ExtractedLineItem:
    """The placeholder expense used when nothing could be read from a receipt."""
    return ExtractedLineItem(
        description=DEFAULT_DESCRIPTION,
        amount=normalize_amount(amount),
        date=_today(today).isoformat(),
        category=FALLBACK_CATEGORY,
        payment_method=DEFAULT_PAYMENT_METHOD,
    )


def normalize_item(raw: dict, today: Optional[date] = None,
                   default_date: Optional[str] = None) -> ExtractedLineItem:
    """Turn one raw strategy item (a dict) into a normalized ExtractedLineItem."""
    description = clean_description(str(raw.get("description") or ""))
    return ExtractedLineItem(
        description=description or "Receipt Item",
        amount=normalize_amount(raw.get("amount")),
        date=normalize_date(raw.get("date") or default_date, today),
        category=normalize_category(raw.get("category")),
        payment_method=str(raw.get("payment_method") or "").strip() or DEFAULT_PAYMENT_METHOD,
    )


def deduplicate(items: list[ExtractedLineItem]) -> list[ExtractedLineItem]:
    """
    Collapse items with the same description (case-insensitive).  Exact
    (description, amount) repeats disappear; when amounts differ, the highest
    one is kept.  Output keeps the order of first occurrence.
    """
    kept: dict[str, ExtractedLineItem] = {}
    for item in items:
        key = item.description.strip().lower()
        current = kept.get(key)
        if current is None or item.amount > current.amount:
            kept[key] = item
    return list(kept.values())


def select_main_item(items: list[ExtractedLineItem],
                     today: Optional[date] = None) -> ExtractedLineItem:
    """Largest-amount item (first wins ties); the placeholder when empty."""
    if not items:
        return synthetic_default_item(today)
    best = items[0]
    for item in items[1:]:
        if item.amount > best.amount:
            best = item
    return best


def normalize_items(raw_items: list[dict], today: Optional[date] = None,
                    default_date: Optional[str] = None) -> list[ExtractedLineItem]:
    """Normalize every raw item then deduplicate."""
    return deduplicate([normalize_item(r, today, default_date) for r in raw_items])
