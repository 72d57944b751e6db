"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
All primary keys are TEXT (UUID strings generated via uuid4()). Dates are
YYYY-MM-DD strings, timestamps ISO-8601 UTC strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Union
from uuid import uuid4


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Enumerated string values ──────────────────────────────

REVIEW_NONE = "None"
REVIEW_NEEDS_REVIEW = "NeedsReview"
REVIEW_REVIEWED = "Reviewed"
REVIEW_STATUSES = (REVIEW_NONE, REVIEW_NEEDS_REVIEW, REVIEW_REVIEWED)

FREQUENCIES = ("Weekly", "BiWeekly", "Monthly", "Quarterly", "Annually")

PROPOSAL_PROPOSED = "Proposed"
PROPOSAL_APPROVED = "Approved"
PROPOSAL_REJECTED = "Rejected"

PROPOSAL_SOURCES = ("Deterministic", "Manual", "Agent")

DECISION_AUTO_ASSIGNED = "AutoAssigned"
DECISION_NEEDS_REVIEW = "NeedsReview"


# ── Classification decision (closed set of variants) ──────


@dataclass(frozen=True)
class AutoAssigned:
    """A stage accepted a subcategory with sufficient confidence."""
    subcategory_id: str
    kind: str = field(default=DECISION_AUTO_ASSIGNED, init=False)


@dataclass(frozen=True)
class NeedsReview:
    """No stage was confident enough; a human has to decide."""
    kind: str = field(default=DECISION_NEEDS_REVIEW, init=False)


Decision = Union[AutoAssigned, NeedsReview]


def decision_from_row(kind: str, subcategory_id: str | None) -> Decision:
    if kind == DECISION_AUTO_ASSIGNED:
        if not subcategory_id:
            raise ValueError("AutoAssigned decision stored without a subcategory")
        return AutoAssigned(subcategory_id)
    if kind == DECISION_NEEDS_REVIEW:
        return NeedsReview()
    raise ValueError(f"Unknown classification decision: {kind!r}")


# ── Tables ────────────────────────────────────────────────


@dataclass
class TransactionSplit:
    amount: float
    id: str = field(default_factory=_new_id)
    parent_transaction_id: str | None = None
    subcategory_id: str | None = None
    amortization_months: int = 1
    notes: str | None = None


@dataclass
class EnrichedTransaction:
    account_id: str
    household_id: str
    transaction_date: str
    amount: float  # signed: positive=outflow, negative=inflow
    raw_description: str
    id: str = field(default_factory=_new_id)
    normalized_description: str | None = None
    recurring_item_id: str | None = None
    subcategory_id: str | None = None
    review_status: str = REVIEW_NONE
    review_reason: str | None = None
    splits: list[TransactionSplit] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class RecurringItem:
    household_id: str
    merchant_name: str
    expected_amount: float
    next_due_date: str
    id: str = field(default_factory=_new_id)
    is_variable: bool = False
    frequency: str = "Monthly"
    due_window_days_before: int = 3
    due_window_days_after: int = 3
    amount_variance_percent: float = 5.0
    amount_variance_absolute: float = 0.0
    deterministic_match_threshold: float = 0.70
    due_date_score_weight: float = 0.50
    amount_score_weight: float = 0.35
    recency_score_weight: float = 0.15
    score_version: str = "recurring-v1"
    tie_break_policy: str = "due_date_distance_then_amount_delta_then_latest_observed"
    last_observed_at: str | None = None
    is_active: bool = True
    user_note: str | None = None
    agent_note: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class ReimbursementProposal:
    incoming_transaction_id: str
    proposed_amount: float
    lifecycle_group_id: str
    lifecycle_ordinal: int
    id: str = field(default_factory=_new_id)
    related_transaction_id: str | None = None
    related_transaction_split_id: str | None = None
    status: str = PROPOSAL_PROPOSED
    status_reason_code: str = "proposal_created"
    status_rationale: str = "Proposal created and awaiting human review."
    needs_review: bool = False
    proposal_source: str = "Deterministic"
    provenance_source: str = "engine"
    provenance_reference: str | None = None
    provenance_payload_json: str | None = None
    supersedes_proposal_id: str | None = None
    superseded_by_proposal_id: str | None = None
    decided_by_user_id: str | None = None
    decided_at_utc: str | None = None
    user_note: str | None = None
    agent_note: str | None = None
    created_at: str = field(default_factory=_now)

    @property
    def is_decided(self) -> bool:
        return self.decided_at_utc is not None

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by_proposal_id is not None

    @property
    def is_decidable(self) -> bool:
        return (
            self.status == PROPOSAL_PROPOSED
            and not self.is_decided
            and not self.is_superseded
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "incomingTransactionId": self.incoming_transaction_id,
            "relatedTransactionId": self.related_transaction_id,
            "relatedTransactionSplitId": self.related_transaction_split_id,
            "proposedAmount": self.proposed_amount,
            "lifecycleGroupId": self.lifecycle_group_id,
            "lifecycleOrdinal": self.lifecycle_ordinal,
            "status": self.status,
            "statusReasonCode": self.status_reason_code,
            "statusRationale": self.status_rationale,
            "needsReview": self.needs_review,
            "proposalSource": self.proposal_source,
            "provenanceSource": self.provenance_source,
            "provenanceReference": self.provenance_reference,
            "supersedesProposalId": self.supersedes_proposal_id,
            "supersededByProposalId": self.superseded_by_proposal_id,
            "decisionedByUserId": self.decided_by_user_id,
            "decisionedAtUtc": self.decided_at_utc,
            "createdAtUtc": self.created_at,
        }


@dataclass
class ClassificationStageOutput:
    stage_name: str
    stage_order: int
    confidence: float
    rationale_code: str
    rationale: str
    proposed_subcategory_id: str | None = None
    escalated_to_next_stage: bool = False
    accepted: bool = False
    outcome_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "stage": self.stage_name,
            "stageOrder": self.stage_order,
            "proposedSubcategoryId": self.proposed_subcategory_id,
            "confidence": self.confidence,
            "rationaleCode": self.rationale_code,
            "rationale": self.rationale,
            "escalatedToNextStage": self.escalated_to_next_stage,
            "accepted": self.accepted,
        }


@dataclass
class ClassificationOutcome:
    transaction_id: str
    decision: Decision
    final_confidence: float
    review_status: str
    decision_reason_code: str
    decision_rationale: str
    id: str = field(default_factory=_new_id)
    agent_note_summary: str | None = None
    assignment_source: str = "needs_review"
    stage_outputs: list[ClassificationStageOutput] = field(default_factory=list)
    created_at: str = field(default_factory=_now)

    @property
    def proposed_subcategory_id(self) -> str | None:
        if isinstance(self.decision, AutoAssigned):
            return self.decision.subcategory_id
        return None

    def same_result_as(self, other: ClassificationOutcome) -> bool:
        """True if both outcomes carry the same decision and stage trail."""
        def _trail(o: ClassificationOutcome) -> list[tuple]:
            return [
                (s.stage_order, s.stage_name, s.proposed_subcategory_id,
                 s.confidence, s.rationale_code, s.escalated_to_next_stage,
                 s.accepted)
                for s in o.stage_outputs
            ]

        return (
            self.transaction_id == other.transaction_id
            and self.decision == other.decision
            and self.final_confidence == other.final_confidence
            and self.review_status == other.review_status
            and self.decision_reason_code == other.decision_reason_code
            and _trail(self) == _trail(other)
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transactionId": self.transaction_id,
            "proposedSubcategoryId": self.proposed_subcategory_id,
            "finalConfidence": self.final_confidence,
            "decision": self.decision.kind,
            "reviewStatus": self.review_status,
            "decisionReasonCode": self.decision_reason_code,
            "decisionRationale": self.decision_rationale,
            "agentNoteSummary": self.agent_note_summary,
            "assignmentSource": self.assignment_source,
            "stageOutputs": [s.to_dict() for s in self.stage_outputs],
            "createdAtUtc": self.created_at,
        }
