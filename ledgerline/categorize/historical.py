"""Stage 2: historical similarity matching.

Looks at past transactions of the same household with the same
normalized description and reuses their subcategory assignments. Two
match levels are tried in order:

1. Exact match (same description + same amount +-$0.01): requires >=2
   unanimous past assignments -> confidence 0.95
2. Description-only match (same description, any amount): requires >=3
   past assignments with >=80% agreement on one subcategory -> confidence
   0.85, with human-reviewed assignments weighted 1.5x
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ledgerline.categorize.base import (
    ClassificationStage,
    StageContext,
    StageProposal,
    normalize_description,
)
from ledgerline.database.models import REVIEW_NEEDS_REVIEW, REVIEW_REVIEWED, EnrichedTransaction

logger = logging.getLogger(__name__)

EXACT_MIN_COUNT = 2
EXACT_CONFIDENCE = 0.95
DESC_MIN_COUNT = 3
DESC_MIN_AGREEMENT = 0.80
DESC_CONFIDENCE = 0.85
REVIEWED_WEIGHT = 1.5
AMOUNT_TOLERANCE = 0.01


@dataclass
class HistoricalMatch:
    """Result of a historical pattern match."""
    subcategory_id: str
    confidence: float
    match_level: str  # "exact" or "description"
    match_count: int
    agreement_pct: float


def history_rows_from_transactions(txns: list[EnrichedTransaction]) -> list[dict]:
    """Aggregate prior transactions into history rows.

    Lets callers hand the stage an in-memory history instead of having it
    query the repository. Transactions without a subcategory or still
    waiting for review are ignored.
    """
    counts: dict[tuple[str, float], dict] = {}
    for t in txns:
        if t.subcategory_id is None or t.review_status == REVIEW_NEEDS_REVIEW:
            continue
        key = (t.subcategory_id, t.amount)
        row = counts.setdefault(key, {
            "subcategory_id": t.subcategory_id,
            "amount": t.amount,
            "cnt": 0,
            "reviewed_cnt": 0,
        })
        row["cnt"] += 1
        if t.review_status == REVIEW_REVIEWED:
            row["reviewed_cnt"] += 1
    return list(counts.values())


def match_historical(rows: list[dict], amount: float) -> HistoricalMatch | None:
    """Find a clear historical pattern in the aggregated rows, else None."""
    if not rows:
        return None

    # --- Level 1: Exact match (same description + same amount) ---
    exact_rows = [
        r for r in rows
        if abs(r["amount"] - amount) <= AMOUNT_TOLERANCE
    ]
    if exact_rows:
        total = sum(r["cnt"] for r in exact_rows)
        if total >= EXACT_MIN_COUNT:
            subcategories = {r["subcategory_id"] for r in exact_rows}
            if len(subcategories) == 1:
                return HistoricalMatch(
                    subcategory_id=exact_rows[0]["subcategory_id"],
                    confidence=EXACT_CONFIDENCE,
                    match_level="exact",
                    match_count=total,
                    agreement_pct=1.0,
                )

    # --- Level 2: Description-only match (any amount) ---
    total_count = sum(r["cnt"] for r in rows)
    if total_count < DESC_MIN_COUNT:
        return None

    weights: dict[str, float] = {}
    for r in rows:
        w = r["cnt"] + r["reviewed_cnt"] * (REVIEWED_WEIGHT - 1)
        weights[r["subcategory_id"]] = weights.get(r["subcategory_id"], 0) + w
    total_weighted = sum(weights.values())

    # Ties on weight resolve to the lexically smallest id for stable replays.
    best = min(weights, key=lambda s: (-weights[s], s))
    agreement = weights[best] / total_weighted if total_weighted > 0 else 0

    if agreement >= DESC_MIN_AGREEMENT:
        return HistoricalMatch(
            subcategory_id=best,
            confidence=DESC_CONFIDENCE,
            match_level="description",
            match_count=total_count,
            agreement_pct=round(agreement, 4),
        )
    return None


class HistoricalStage(ClassificationStage):
    """Reuse past assignments for the same merchant description."""

    name = "historical"

    def propose(self, txn: EnrichedTransaction, context: StageContext) -> StageProposal:
        desc = txn.normalized_description or normalize_description(txn.raw_description or "")
        if not desc:
            return StageProposal(
                None, 0.0, "historical_missing_description",
                "Transaction has no description to compare with history.",
            )

        rows = context.history
        if rows is None:
            if context.repo is None:
                return StageProposal(
                    None, 0.0, "historical_no_history",
                    "No transaction history was available.",
                )
            rows = context.repo.get_historical_subcategory_counts(
                txn.household_id, desc, exclude_transaction_id=txn.id,
            )

        match = match_historical(rows, txn.amount)
        if match is None:
            return StageProposal(
                None, 0.0, "historical_no_pattern",
                f"No consistent history for '{desc}' ({sum(r['cnt'] for r in rows)} prior).",
            )

        logger.debug(
            "Historical %s match: %s -> %s (%.0f%% of %d)",
            match.match_level, desc, match.subcategory_id,
            match.agreement_pct * 100, match.match_count,
        )
        return StageProposal(
            match.subcategory_id,
            match.confidence,
            f"historical_{match.match_level}_match",
            f"{match.match_count} prior transactions for '{desc}' agree "
            f"{match.agreement_pct:.0%} on '{match.subcategory_id}'.",
        )
