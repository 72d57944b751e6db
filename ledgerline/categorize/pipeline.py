"""Classification pipeline: up to three stages with confidence escalation.

Stages (in order):
1. Rules       - merchant rules and subcategory keyword matching
2. Historical  - past assignments for the same description
3. Agent       - injected agent classifier

Each stage proposes a subcategory with a confidence. A stage is accepted
when it proposes a subcategory at or above its own threshold; the run
stops there. A stage that is not accepted escalates to the next stage,
if there is one.

Aggregation:
  - Highest-confidence accepted stage wins -> AutoAssigned
  - No accepted stage -> NeedsReview, no subcategory, final confidence is
    the highest confidence any stage reported

A transaction that is already waiting for human review stays that way:
the run is recorded but never auto-assigns over the pending review.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ledgerline.categorize.agent import AgentClassifier, AgentStage
from ledgerline.categorize.base import ClassificationStage, StageContext, StageProposal
from ledgerline.categorize.historical import HistoricalStage
from ledgerline.categorize.note_summary import sanitize_agent_note
from ledgerline.categorize.rules import RuleStage
from ledgerline.database.models import (
    REVIEW_NEEDS_REVIEW,
    REVIEW_NONE,
    REVIEW_REVIEWED,
    AutoAssigned,
    ClassificationOutcome,
    ClassificationStageOutput,
    EnrichedTransaction,
    NeedsReview,
)

if TYPE_CHECKING:
    from ledgerline.config import Config
    from ledgerline.database.repository import Repository

logger = logging.getLogger(__name__)

MAX_STAGES = 3
DEFAULT_THRESHOLD = 0.80
ASSIGNMENT_NEEDS_REVIEW = "needs_review"
REASON_EXISTING_NEEDS_REVIEW = "existing_needs_review"


class ClassificationPipeline:
    """Runs the configured stages in order and aggregates one outcome."""

    def __init__(
        self,
        stages: list[ClassificationStage],
        thresholds: dict[str, float] | None = None,
    ):
        if not 1 <= len(stages) <= MAX_STAGES:
            raise ValueError(
                f"pipeline needs between 1 and {MAX_STAGES} stages, got {len(stages)}"
            )
        self.stages = list(stages)
        self.thresholds = dict(thresholds or {})

    def threshold_for(self, stage: ClassificationStage) -> float:
        return self.thresholds.get(stage.name, DEFAULT_THRESHOLD)

    def classify(
        self,
        txn: EnrichedTransaction,
        context: StageContext,
        now: str | None = None,
    ) -> ClassificationOutcome:
        outputs: list[ClassificationStageOutput] = []
        notes: list[str] = []
        winner: tuple[ClassificationStage, StageProposal] | None = None

        for order, stage in enumerate(self.stages, start=1):
            proposal = stage.propose(txn, context)
            accepted = (
                proposal.subcategory_id is not None
                and proposal.confidence >= self.threshold_for(stage)
            )
            has_next = order < len(self.stages)
            outputs.append(ClassificationStageOutput(
                stage_name=stage.name,
                stage_order=order,
                proposed_subcategory_id=proposal.subcategory_id,
                confidence=round(proposal.confidence, 4),
                rationale_code=proposal.rationale_code,
                rationale=proposal.rationale,
                escalated_to_next_stage=not accepted and has_next,
                accepted=accepted,
            ))
            if proposal.note:
                notes.append(proposal.note)
            logger.debug(
                "Stage %d (%s) for %s: %s @ %.4f [%s]%s",
                order, stage.name, txn.id, proposal.subcategory_id,
                proposal.confidence, proposal.rationale_code,
                " accepted" if accepted else "",
            )
            if accepted:
                winner = (stage, proposal)
                break

        final_confidence = round(max(o.confidence for o in outputs), 4)
        summary = sanitize_agent_note(" ".join(notes)) if notes else None
        created_at = now or datetime.now(timezone.utc).isoformat()

        if winner is not None and txn.review_status == REVIEW_NEEDS_REVIEW:
            return ClassificationOutcome(
                transaction_id=txn.id,
                decision=NeedsReview(),
                final_confidence=final_confidence,
                review_status=REVIEW_NEEDS_REVIEW,
                decision_reason_code=REASON_EXISTING_NEEDS_REVIEW,
                decision_rationale=(
                    f"Stage '{winner[0].name}' proposed '{winner[1].subcategory_id}' but the "
                    "transaction is already waiting for human review."
                ),
                agent_note_summary=summary,
                assignment_source=ASSIGNMENT_NEEDS_REVIEW,
                stage_outputs=outputs,
                created_at=created_at,
            )

        if winner is not None:
            stage, proposal = winner
            review_status = REVIEW_REVIEWED if txn.review_status == REVIEW_REVIEWED else REVIEW_NONE
            return ClassificationOutcome(
                transaction_id=txn.id,
                decision=AutoAssigned(proposal.subcategory_id),
                final_confidence=round(proposal.confidence, 4),
                review_status=review_status,
                decision_reason_code=f"{stage.name}_accepted",
                decision_rationale=proposal.rationale,
                agent_note_summary=summary,
                assignment_source=stage.name,
                stage_outputs=outputs,
                created_at=created_at,
            )

        return ClassificationOutcome(
            transaction_id=txn.id,
            decision=NeedsReview(),
            final_confidence=final_confidence,
            review_status=REVIEW_NEEDS_REVIEW,
            decision_reason_code="needs_review_low_confidence",
            decision_rationale=(
                f"No stage reached its threshold (best confidence "
                f"{final_confidence:.4f} after {len(outputs)} stage(s))."
            ),
            agent_note_summary=summary,
            assignment_source=ASSIGNMENT_NEEDS_REVIEW,
            stage_outputs=outputs,
            created_at=created_at,
        )


def apply_outcome(
    txn: EnrichedTransaction, outcome: ClassificationOutcome, repo: Repository
) -> None:
    """Write an outcome's decision onto the transaction.

    NeedsReview clears nothing: a subcategory a human assigned earlier is
    left in place until they review it again.
    """
    if outcome.decision_reason_code == REASON_EXISTING_NEEDS_REVIEW:
        return
    if isinstance(outcome.decision, AutoAssigned):
        repo.update_transaction_classification(
            txn.id, outcome.review_status,
            subcategory_id=outcome.decision.subcategory_id,
            review_reason=None,
        )
        txn.subcategory_id = outcome.decision.subcategory_id
        txn.review_reason = None
    else:
        repo.update_transaction_classification(
            txn.id, outcome.review_status,
            review_reason=outcome.decision_reason_code,
        )
        txn.review_reason = outcome.decision_reason_code
    txn.review_status = outcome.review_status


def build_pipeline(
    config: Config, agent_classifier: AgentClassifier | None = None
) -> ClassificationPipeline:
    """Assemble the standard pipeline from configuration.

    The agent stage is only added when an agent classifier is supplied
    and the agent is enabled in engine.yaml.
    """
    stages: list[ClassificationStage] = [
        RuleStage(config.merchants, config.rule_conflict_delta),
        HistoricalStage(),
    ]
    if agent_classifier is not None and config.agent_enabled:
        stages.append(AgentStage(agent_classifier))
    return ClassificationPipeline(stages, config.stage_thresholds)
