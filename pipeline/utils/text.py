from __future__ import annotations

import re
from typing import Any, Optional

MAX_MOQ = 100_000

_CURRENCY_PATTERNS = (
    (re.compile(r"₹|\bINR\b|\bRs\.?", re.IGNORECASE), "INR"),
    (re.compile(r"US\s?\$|\bUSD\b|\$"), "USD"),
    (re.compile(r"\bRMB\b|\bCNY\b|¥|￥", re.IGNORECASE), "CNY"),
    (re.compile(r"€|\bEUR\b"), "EUR"),
)
_NUMBER_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")
_MOQ_RE = re.compile(
    r"(?:MOQ|Min(?:imum)?\.?\s*Order(?:\s*Quantity)?|≥)\s*:?\s*([\d,]{1,7})",
    re.IGNORECASE,
)
_MOQ_UNIT_RE = re.compile(
    r"([\d,]{1,7})\s*(?:pieces?|pcs?|units?|sets?|pairs?|kgs?|kilograms?|tons?|meters?|boxes|box|cartons?|nos?)\b",
    re.IGNORECASE,
)


def clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def first_str(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def detect_currency(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    for pattern, code in _CURRENCY_PATTERNS:
        if pattern.search(text):
            return code
    return None


def parse_price(text: Optional[str]) -> tuple[Optional[float], Optional[str]]:
    """Lowest price in a price string and its currency: "US$ 1.20-3.50 / Piece" -> (1.2, "USD")."""
    if not text:
        return None, None
    currency = detect_currency(text)
    for match in _NUMBER_RE.finditer(text):
        raw = match.group(0).replace(",", "")
        try:
            value = float(raw)
        except ValueError:
            continue
        if value > 0:
            return value, currency
    return None, currency


def parse_moq(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    match = _MOQ_RE.search(text) or _MOQ_UNIT_RE.search(text)
    if match is None:
        bare = re.fullmatch(r"\s*([\d,]{1,7})\s*", text)
        if not bare:
            return None
        match = bare
    try:
        value = int(match.group(1).replace(",", ""))
    except ValueError:
        return None
    if 0 < value <= MAX_MOQ:
        return value
    return None


def first_number(text: Optional[str]) -> Optional[int]:
    match = re.search(r"(\d{1,5})", text or "")
    return int(match.group(1)) if match else None
