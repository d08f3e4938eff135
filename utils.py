"""Utility functions for ticket reconciliation."""

from __future__ import annotations

import math
from calendar import monthrange
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

# Absorbs float round-trip noise from JSON-stored hours
HOURS_TOLERANCE = Decimal("0.000001")

# Stands in for an empty billing component
PLACEHOLDER = "_"
LEGACY_BILLING_KEY = "_::_::_"


def to_decimal(value: Any) -> Decimal:
    """Coerce a stored number (float, int, str or None) to Decimal."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def hours_eq(a: Decimal | float | None, b: Decimal | float | None) -> bool:
    return abs(to_decimal(a) - to_decimal(b)) < HOURS_TOLERANCE


def norm_str(value: Any) -> str:
    """Normalise for comparison: None and whitespace-only compare equal to ''."""
    if value is None:
        return ""
    return str(value).strip()


def is_placeholder(value: Any) -> bool:
    text = norm_str(value)
    return text == "" or text == PLACEHOLDER


def round_to_half_hour(hours: Decimal) -> Decimal:
    """Round up to the next half hour."""
    return Decimal(math.ceil(to_decimal(hours) * 2)) / 2


def build_billing_key(approver: str | None, po_afe: str | None, cc: str | None) -> str:
    parts = [norm_str(p) or PLACEHOLDER for p in (approver, po_afe, cc)]
    return "::".join(parts)


def parse_billing_key(key: str) -> tuple[str, str, str]:
    """Split a billing key into (approver, po_afe, cc) with placeholders blanked."""
    parts = (key or "").split("::")
    parts += [""] * (3 - len(parts))
    approver, po_afe, cc = (p if p != PLACEHOLDER else "" for p in parts[:3])
    return approver, po_afe, cc


def billing_po_afe(key: str) -> str:
    return parse_billing_key(key)[1]


def parse_approver_po_afe(combined: str | None) -> tuple[str, str, str]:
    """Split the legacy "approver / po_afe / cc" header value."""
    text = norm_str(combined)
    parts = [p.strip() for p in text.split(" / ", 2)] if text else []
    parts += [""] * (3 - len(parts))
    return parts[0], parts[1], parts[2]


def get_week_start(d: date) -> date:
    """Get the Monday that starts the week containing date d."""
    return d - timedelta(days=d.weekday())


def get_month_range(year: int, month: int) -> tuple[date, date]:
    """Get (first_day, last_day) of a calendar month."""
    return date(year, month, 1), date(year, month, monthrange(year, month)[1])


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1
