"""Common helper functions for the service layer.

This module provides reusable utilities for:
- UUID handling
- Query ordering and pagination
- Enum validation
- Fixed-point monetary arithmetic
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from fastapi import HTTPException

MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize naive timestamps (as returned by SQLite) to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def apply_ordering(query, order_by: str, order_dir: str, allowed_columns: dict):
    """Apply ordering to a query with validation.

    Raises:
        HTTPException: 400 if order_by is not in allowed_columns
    """
    if order_by not in allowed_columns:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}",
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query, limit: int, offset: int):
    return query.limit(limit).offset(offset)


def validate_enum(value, enum_cls, label: str):
    """Validate and convert a value to an enum member.

    Accepts either the member value or its name, case-insensitively.

    Raises:
        HTTPException: 400 if value is not a valid enum member
    """
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip()
    for candidate in (text, text.upper()):
        try:
            return enum_cls(candidate)
        except ValueError:
            continue
    try:
        return enum_cls[text.lower()]
    except KeyError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}") from exc


def round_money(value: Decimal | int | float | str) -> Decimal:
    """Round a monetary value to 2 decimal places, half-up.

    Floats go through ``str`` first so 0.1 stays 0.10 instead of its
    binary expansion.
    """
    return Decimal(str(value)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percentage: Decimal | int | str | None) -> Decimal:
    """Return ``amount * percentage / 100`` rounded half-up to cents."""
    if percentage is None:
        return ZERO
    return round_money(Decimal(str(amount)) * Decimal(str(percentage)) / HUNDRED)


def sum_money(values: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for value in values:
        total += Decimal(str(value))
    return round_money(total)


def sum_abs_money(values: Iterable[Decimal]) -> Decimal:
    """Sum of absolute values; refunds are stored negated."""
    return sum_money(abs(Decimal(str(value))) for value in values)
