"""Recurring-item matcher.

Scores a transaction against a household's recurring items and decides
whether it satisfies one of them:

1. Only active items of the transaction's household are candidates.
2. score = w_due * due_date + w_amt * amount + w_rec * recency, using each
   item's own weights.
3. Candidates below their own deterministic_match_threshold are dropped.
4. The highest score wins. Equal scores are ordered by the tie-break
   policy, e.g. "due_date_distance_then_amount_delta_then_latest_observed".
5. No surviving candidate means no match. A weak match is never forced.

Amounts are signed (positive = outflow). A transaction flowing the other
way than the item expects, such as a refund of a bill, scores 0 overall
whatever the weights, so it can never match.

Recency is measured at the transaction date rather than wall-clock time
so that a replay of the same inputs yields the same decision.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from ledgerline.database.models import FREQUENCIES, EnrichedTransaction, RecurringItem
from ledgerline.errors import FieldError, ValidationError
from ledgerline.matching.scoring import (
    SCORE_PRECISION,
    amount_delta,
    amount_score,
    due_date_distance,
    due_date_score,
    recency_score,
    same_direction,
)

if TYPE_CHECKING:
    from ledgerline.database.repository import Repository

logger = logging.getLogger(__name__)

WEIGHT_SUM_TOLERANCE = 0.001
MAX_DUE_WINDOW_DAYS = 90

TIE_BREAK_KEYS = ("due_date_distance", "amount_delta", "latest_observed")
TIE_BREAK_SEPARATOR = "_then_"


# ── Configuration validation ──────────────────────────────


def parse_tie_break_policy(policy: str) -> tuple[str, ...]:
    """Split a policy string into its ordered tie-break keys.

    Raises:
        ValueError: If the policy is empty or names an unknown key.
    """
    if not policy or not policy.strip():
        raise ValueError("tie-break policy is empty")
    keys = tuple(policy.strip().split(TIE_BREAK_SEPARATOR))
    unknown = [k for k in keys if k not in TIE_BREAK_KEYS]
    if unknown:
        raise ValueError(f"unknown tie-break keys: {', '.join(unknown)}")
    return keys


def validate_recurring_item(item: RecurringItem) -> None:
    """Reject a recurring item whose scoring configuration is malformed.

    Weights are never renormalised; a triple that does not sum to 1.0
    (within WEIGHT_SUM_TOLERANCE) is an error.

    Raises:
        ValidationError: With one FieldError per offending field.
    """
    errors: list[FieldError] = []

    weights = {
        "due_date_score_weight": item.due_date_score_weight,
        "amount_score_weight": item.amount_score_weight,
        "recency_score_weight": item.recency_score_weight,
    }
    for name, value in weights.items():
        if not 0.0 <= value <= 1.0:
            errors.append(FieldError(name, "weight must be between 0 and 1."))
    total = sum(weights.values())
    if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
        errors.append(FieldError(
            "score_weights",
            f"weights must sum to 1.0 (got {total:.4f}).",
        ))

    if not 0.0 <= item.deterministic_match_threshold <= 1.0:
        errors.append(FieldError(
            "deterministic_match_threshold", "threshold must be between 0 and 1.",
        ))
    for name in ("due_window_days_before", "due_window_days_after"):
        value = getattr(item, name)
        if not 0 <= value <= MAX_DUE_WINDOW_DAYS:
            errors.append(FieldError(
                name, f"window must be between 0 and {MAX_DUE_WINDOW_DAYS} days.",
            ))
    if not 0.0 <= item.amount_variance_percent <= 100.0:
        errors.append(FieldError(
            "amount_variance_percent", "variance percent must be between 0 and 100.",
        ))
    if item.amount_variance_absolute < 0:
        errors.append(FieldError(
            "amount_variance_absolute", "absolute variance cannot be negative.",
        ))
    if item.frequency not in FREQUENCIES:
        errors.append(FieldError(
            "frequency", f"frequency must be one of: {', '.join(FREQUENCIES)}.",
        ))
    if not item.score_version or not item.score_version.strip():
        errors.append(FieldError("score_version", "score version is required."))
    try:
        parse_tie_break_policy(item.tie_break_policy)
    except ValueError as e:
        errors.append(FieldError("tie_break_policy", str(e)))
    try:
        date.fromisoformat(item.next_due_date)
    except (TypeError, ValueError):
        errors.append(FieldError("next_due_date", "next_due_date must be YYYY-MM-DD."))

    if errors:
        raise ValidationError(errors)


# ── Due date advancement ──────────────────────────────────


def _add_months(d: date, months: int) -> date:
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance_due_date(next_due_date: str, frequency: str) -> str:
    """Move a due date forward by one period of the given frequency."""
    d = date.fromisoformat(next_due_date)
    if frequency == "Weekly":
        return (d + timedelta(days=7)).isoformat()
    if frequency == "BiWeekly":
        return (d + timedelta(days=14)).isoformat()
    if frequency == "Monthly":
        return _add_months(d, 1).isoformat()
    if frequency == "Quarterly":
        return _add_months(d, 3).isoformat()
    if frequency == "Annually":
        return _add_months(d, 12).isoformat()
    raise ValueError(f"Unknown frequency: {frequency!r}")


# ── Matching ──────────────────────────────────────────────


@dataclass
class CandidateScore:
    """Score breakdown for one recurring item."""
    item_id: str
    score: float
    due_date_score: float
    amount_score: float
    recency_score: float
    threshold: float
    due_date_distance: int
    amount_delta: float
    last_observed_at: str | None

    @property
    def passes_threshold(self) -> bool:
        # A zero score never matches, even against a zero threshold.
        return self.score > 0 and self.score >= self.threshold


@dataclass
class MatchResult:
    """Outcome of matching one transaction against its candidates."""
    matched_item_id: str | None
    score: float
    score_version: str | None
    tie_break_applied: bool = False
    next_due_date: str | None = None
    previous_due_date: str | None = None
    candidates: list[CandidateScore] = field(default_factory=list)

    @property
    def is_match(self) -> bool:
        return self.matched_item_id is not None

    def to_dict(self) -> dict:
        return {
            "matchedRecurringItemId": self.matched_item_id,
            "score": self.score,
            "scoreVersion": self.score_version,
            "tieBreakApplied": self.tie_break_applied,
            "recurringItemNextDueDate": self.next_due_date,
        }


def _tie_break_sort_key(candidate: CandidateScore, keys: tuple[str, ...]) -> tuple:
    parts: list = []
    for key in keys:
        if key == "due_date_distance":
            parts.append(abs(candidate.due_date_distance))
        elif key == "amount_delta":
            parts.append(candidate.amount_delta)
        elif key == "latest_observed":
            # Most recent first; never-observed sorts last.
            observed = candidate.last_observed_at
            parts.append((observed is None, _negated_timestamp(observed)))
    parts.append(candidate.item_id)
    return tuple(parts)


def _negated_timestamp(value: str | None) -> float:
    if value is None:
        return 0.0
    observed = datetime.fromisoformat(value).replace(tzinfo=None)
    return -(observed - datetime(1970, 1, 1)).total_seconds()


class RecurringMatcher:
    """Scores transactions against recurring items and confirms matches.

    `match` is pure. `confirm` persists a match through the repository
    with a compare-and-set on the item's next_due_date.
    """

    def __init__(self, repo: Repository | None = None):
        self.repo = repo

    def score_candidate(
        self,
        txn: EnrichedTransaction,
        item: RecurringItem,
        now=None,
    ) -> CandidateScore:
        validate_recurring_item(item)
        now = now if now is not None else txn.transaction_date
        due = due_date_score(
            txn.transaction_date, item.next_due_date,
            item.due_window_days_before, item.due_window_days_after,
        )
        amt = amount_score(
            txn.amount, item.expected_amount,
            item.amount_variance_percent, item.amount_variance_absolute,
        )
        rec = recency_score(item.last_observed_at, now)
        if same_direction(txn.amount, item.expected_amount):
            score = round(
                item.due_date_score_weight * due
                + item.amount_score_weight * amt
                + item.recency_score_weight * rec,
                SCORE_PRECISION,
            )
        else:
            score = 0.0
        return CandidateScore(
            item_id=item.id,
            score=score,
            due_date_score=due,
            amount_score=amt,
            recency_score=rec,
            threshold=item.deterministic_match_threshold,
            due_date_distance=due_date_distance(txn.transaction_date, item.next_due_date),
            amount_delta=amount_delta(txn.amount, item.expected_amount),
            last_observed_at=item.last_observed_at,
        )

    def match(
        self,
        txn: EnrichedTransaction,
        candidates: list[RecurringItem],
        now=None,
    ) -> MatchResult:
        """Pick the recurring item this transaction satisfies, if any.

        Raises:
            ValidationError: If a candidate's scoring configuration is malformed.
        """
        eligible = [
            item for item in candidates
            if item.is_active and item.household_id == txn.household_id
        ]
        if len(eligible) < len(candidates):
            logger.debug(
                "Skipped %d inactive or out-of-household recurring items for %s",
                len(candidates) - len(eligible), txn.id,
            )

        items = {item.id: item for item in eligible}
        scored = [self.score_candidate(txn, item, now) for item in eligible]
        passing = [c for c in scored if c.passes_threshold]

        if not passing:
            best = max((c.score for c in scored), default=0.0)
            logger.debug(
                "No recurring match for %s (best score %.4f of %d candidates)",
                txn.id, best, len(scored),
            )
            return MatchResult(
                matched_item_id=None,
                score=best,
                score_version=None,
                candidates=scored,
            )

        top_score = max(c.score for c in passing)
        tied = sorted(
            (c for c in passing if c.score == top_score),
            key=lambda c: c.item_id,
        )
        tie_break_applied = len(tied) > 1
        if tie_break_applied:
            keys = parse_tie_break_policy(items[tied[0].item_id].tie_break_policy)
            tied.sort(key=lambda c: _tie_break_sort_key(c, keys))
            logger.debug(
                "Tie between %d recurring items at %.4f for %s, resolved by %s",
                len(tied), top_score, txn.id, "/".join(keys),
            )

        winner = items[tied[0].item_id]
        return MatchResult(
            matched_item_id=winner.id,
            score=top_score,
            score_version=winner.score_version,
            tie_break_applied=tie_break_applied,
            next_due_date=advance_due_date(winner.next_due_date, winner.frequency),
            previous_due_date=winner.next_due_date,
            candidates=scored,
        )

    def confirm(self, txn: EnrichedTransaction, result: MatchResult) -> bool:
        """Persist a match: advance the item's due date and link the transaction.

        Returns False without writing when there is nothing to confirm or
        the transaction is already linked to a recurring item, so a
        repeated reconciliation does not advance the due date twice.

        Raises:
            ConflictError: If the due date moved since the match was scored.
        """
        if not result.is_match:
            return False
        if self.repo is None:
            raise RuntimeError("RecurringMatcher.confirm requires a repository")
        if txn.recurring_item_id is not None:
            logger.debug(
                "Transaction %s already linked to recurring item %s",
                txn.id, txn.recurring_item_id,
            )
            return False

        self.repo.confirm_recurring_match(
            txn.id,
            result.matched_item_id,
            expected_next_due_date=result.previous_due_date,
            new_next_due_date=result.next_due_date,
            observed_at=txn.transaction_date,
        )
        txn.recurring_item_id = result.matched_item_id
        logger.info(
            "Matched %s to recurring item %s (score %.4f, %s); next due %s",
            txn.id, result.matched_item_id, result.score,
            result.score_version, result.next_due_date,
        )
        return True
