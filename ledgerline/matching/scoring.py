"""Scoring primitives for recurring-item matching.

Three pure functions, each returning a score in [0, 1] rounded to 4
places so that a replay of the same inputs reproduces the stored score
exactly:

- due_date_score: proximity of the transaction date to the due date
- amount_score:   closeness of the amount to the expected amount
- recency_score:  how recently the recurring item was last observed

Amounts are signed (positive = outflow) and only amounts flowing the
same way are compared.

All three share one falloff curve, 1 - (distance / limit)^2: exactly 1.0
at a perfect match, strictly decreasing with distance, and 0.0 once the
distance reaches the limit.
"""

from __future__ import annotations

from datetime import date, datetime

RECENCY_HORIZON_DAYS = 180
SCORE_PRECISION = 4


def _falloff(distance: float, limit: float) -> float:
    if distance <= 0:
        return 1.0
    if limit <= 0 or distance >= limit:
        return 0.0
    return round(1.0 - (distance / limit) ** 2, SCORE_PRECISION)


def _as_date(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


def _as_datetime(value: date | datetime | str) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(value).replace(tzinfo=None)


def due_date_distance(transaction_date, next_due_date) -> int:
    """Signed day distance: negative when the transaction is early."""
    return (_as_date(transaction_date) - _as_date(next_due_date)).days


def amount_delta(actual_amount: float, expected_amount: float) -> float:
    return round(abs(actual_amount - expected_amount), 2)


def same_direction(actual_amount: float, expected_amount: float) -> bool:
    """True when both amounts are outflows, or both are inflows."""
    return (actual_amount < 0) == (expected_amount < 0)


def due_date_score(
    transaction_date,
    next_due_date,
    window_before: int,
    window_after: int,
) -> float:
    """Score the transaction date against the due window.

    Every day inside the window scores above 0; the first day past
    either edge scores 0.
    """
    distance = due_date_distance(transaction_date, next_due_date)
    if distance == 0:
        return 1.0
    window = window_before if distance < 0 else window_after
    if abs(distance) > window:
        return 0.0
    return _falloff(abs(distance), window + 1)


def amount_score(
    actual_amount: float,
    expected_amount: float,
    variance_percent: float,
    variance_absolute: float,
) -> float:
    """Score the amount against the larger of the two tolerances.

    Both amounts are signed (positive = outflow). A transaction flowing
    the other way than expected, such as a refund of a bill, scores 0.
    """
    if not same_direction(actual_amount, expected_amount):
        return 0.0
    delta = amount_delta(actual_amount, expected_amount)
    if delta == 0:
        return 1.0
    tolerance = max(
        abs(expected_amount) * variance_percent / 100.0,
        variance_absolute,
    )
    return _falloff(delta, tolerance)


def recency_score(
    last_observed_at,
    now,
    horizon_days: int = RECENCY_HORIZON_DAYS,
) -> float:
    """Favour items confirmed recently, normalised over a fixed horizon.

    An item never observed scores 0; an observation at or after `now`
    scores 1.
    """
    if last_observed_at is None:
        return 0.0
    age = _as_datetime(now) - _as_datetime(last_observed_at)
    age_days = age.total_seconds() / 86400.0
    return _falloff(age_days, horizon_days)
