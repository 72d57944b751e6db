"""Stage 1: deterministic rule matching.

Two passes, first hit wins:
  - Merchant rules from merchants.yaml (contains / exact patterns), each
    carrying its own confidence.
  - Keyword matching of description tokens against subcategory names.
    Confidence = 0.35 + 0.55 * token coverage, plus 0.20 when the whole
    subcategory name appears in the description, capped at 1.0. Two
    candidates within the conflict delta of each other are ambiguous and
    yield no proposal.

Only outflows (positive amounts) are classified here.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from ledgerline.categorize.base import (
    ClassificationStage,
    StageContext,
    StageProposal,
    clamp_confidence,
)
from ledgerline.database.models import EnrichedTransaction

logger = logging.getLogger(__name__)

NON_EXPENSE_CONFIDENCE = 0.20
DEFAULT_MERCHANT_CONFIDENCE = 0.85
BASE_KEYWORD_CONFIDENCE = 0.35
COVERAGE_WEIGHT = 0.55
PHRASE_BOOST = 0.20
DEFAULT_CONFLICT_DELTA = 0.05

_TOKEN_SPLIT = re.compile(r"[\s\-/\\_.,:;()\[\]{}!?&+*\"']+")


@dataclass
class KeywordCandidate:
    subcategory_id: str
    subcategory_name: str
    confidence: float
    matched_tokens: list[str]


def _normalize_token(token: str) -> str:
    return "".join(ch.lower() for ch in token if ch.isalnum())


def tokenize(value: str) -> set[str]:
    tokens = (_normalize_token(t) for t in _TOKEN_SPLIT.split(value or ""))
    return {t for t in tokens if len(t) > 1}


def _normalize_phrase(value: str) -> str:
    return "".join(ch.lower() for ch in value if ch.isalnum())


def match_merchant_rule(description: str, rules: list[dict]) -> dict | None:
    """Return the first merchant rule matching the description, or None."""
    desc_upper = description.upper()
    for rule in rules:
        pattern = rule.get("pattern", "")
        if not pattern:
            continue
        match_type = rule.get("match", "contains")
        if match_type == "exact":
            matched = desc_upper == pattern.upper()
        else:
            matched = pattern.upper() in desc_upper
        if not matched:
            continue
        if not rule.get("subcategory_id"):
            logger.warning(
                "Merchant rule missing subcategory_id for pattern '%s'", pattern
            )
            continue
        return rule
    return None


def keyword_candidates(
    description: str, subcategories: list[dict]
) -> list[KeywordCandidate]:
    """Score every subcategory whose name shares tokens with the description.

    Sorted by confidence (highest first), then by name for a stable order.
    """
    desc_tokens = tokenize(description)
    desc_phrase = _normalize_phrase(description)
    candidates: list[KeywordCandidate] = []
    for sub in subcategories:
        name_tokens = tokenize(sub["name"])
        if not name_tokens:
            continue
        matched = sorted(t for t in name_tokens if t in desc_tokens)
        if not matched:
            continue
        coverage = len(matched) / len(name_tokens)
        name_phrase = _normalize_phrase(sub["name"])
        boost = PHRASE_BOOST if name_phrase and name_phrase in desc_phrase else 0.0
        confidence = min(
            1.0,
            round(BASE_KEYWORD_CONFIDENCE + coverage * COVERAGE_WEIGHT + boost, 4),
        )
        candidates.append(KeywordCandidate(sub["id"], sub["name"], confidence, matched))
    candidates.sort(key=lambda c: (-c.confidence, c.subcategory_name))
    return candidates


class RuleStage(ClassificationStage):
    """Merchant rules, then keyword matching against subcategory names."""

    name = "rules"

    def __init__(
        self,
        merchant_rules: list[dict] | None = None,
        conflict_delta: float = DEFAULT_CONFLICT_DELTA,
    ):
        self.merchant_rules = merchant_rules or []
        self.conflict_delta = conflict_delta

    def propose(self, txn: EnrichedTransaction, context: StageContext) -> StageProposal:
        desc = (txn.raw_description or "").strip()
        if not desc:
            return StageProposal(
                None, 0.0, "rules_missing_description",
                "Transaction description is empty so rules cannot be evaluated.",
            )

        if txn.amount <= 0:
            return StageProposal(
                None, NON_EXPENSE_CONFIDENCE, "rules_non_expense_amount",
                "Rule stage only classifies outflows (positive amounts).",
            )

        rule = match_merchant_rule(desc, self.merchant_rules)
        if rule is not None:
            sub_id = rule["subcategory_id"]
            if context.subcategories and sub_id not in context.subcategory_ids():
                logger.warning(
                    "Merchant rule '%s' points at unknown subcategory '%s'",
                    rule.get("pattern"), sub_id,
                )
            else:
                confidence = clamp_confidence(
                    rule.get("confidence", DEFAULT_MERCHANT_CONFIDENCE)
                )
                return StageProposal(
                    sub_id, confidence, "rules_merchant_match",
                    f"Merchant rule '{rule['pattern']}' maps to '{sub_id}'.",
                )

        candidates = keyword_candidates(desc, context.subcategories)
        if not candidates:
            return StageProposal(
                None, 0.0, "rules_no_match",
                "No merchant rule or subcategory keyword matched the description.",
            )

        top = candidates[0]
        if len(candidates) > 1 and top.confidence - candidates[1].confidence <= self.conflict_delta:
            summary = ", ".join(
                f"{c.subcategory_name} ({c.confidence:.4f})" for c in candidates[:3]
            )
            logger.debug("Conflicting keyword rules for %s: %s", txn.id, summary)
            return StageProposal(
                None, top.confidence, "rules_conflicting_matches",
                f"Competing keyword matches with similar confidence: {summary}.",
            )

        return StageProposal(
            top.subcategory_id, top.confidence, "rules_keyword_match",
            f"Matched subcategory '{top.subcategory_name}' on tokens: "
            f"{', '.join(top.matched_tokens)}.",
        )
