"""Base stage: shared interface, data structures, and utility functions."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ledgerline.database.models import EnrichedTransaction

if TYPE_CHECKING:
    from ledgerline.database.repository import Repository


@dataclass
class StageProposal:
    """What one stage thinks the transaction is, and how sure it is."""
    subcategory_id: str | None
    confidence: float
    rationale_code: str
    rationale: str
    note: str | None = None  # free-form summary, sanitized before persisting


@dataclass
class StageContext:
    """Inputs shared by all stages of one classification run.

    Attributes:
        subcategories: Subcategories the stages may propose ([{id, name}]).
        history: Optional prior assignments for the same description, as
            rows of {subcategory_id, amount, cnt, reviewed_cnt}. When None,
            the historical stage queries the repository instead.
        repo: Repository for history lookups.
    """
    subcategories: list[dict] = field(default_factory=list)
    history: list[dict] | None = None
    repo: Repository | None = None

    def subcategory_ids(self) -> set[str]:
        return {s["id"] for s in self.subcategories}


class ClassificationStage(ABC):
    """Abstract base for all classification stages."""

    name: str = "stage"

    @abstractmethod
    def propose(
        self, txn: EnrichedTransaction, context: StageContext
    ) -> StageProposal:
        """Propose a subcategory and confidence for a transaction.

        Implementations return a proposal with subcategory_id=None when
        they have nothing to offer; they never raise for "no match".
        """


def normalize_description(desc: str) -> str:
    """Normalize a bank transaction description for matching.

    - Uppercase
    - Strip long numbers (4+ digits)
    - Strip #123 patterns
    - Strip * and # decorators
    - Collapse whitespace
    """
    desc = desc.upper()
    desc = re.sub(r'\d{4,}', '', desc)
    desc = re.sub(r'#\d+', '', desc)
    desc = re.sub(r'[*#]', '', desc)
    desc = re.sub(r'\s{2,}', ' ', desc)
    return desc.strip()


def clamp_confidence(value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    return round(max(0.0, min(1.0, value)), 4)
