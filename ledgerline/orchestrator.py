"""Reconciliation orchestrator: one transaction through the whole engine.

Steps:
1. Load the transaction and the household's active recurring items
2. Match against recurring items, confirming a match if there is one
3. Classify through the pipeline and apply the decision
4. Append the classification outcome (skipped when identical to the latest)
5. Flag inflows as reimbursement candidates

Proposals are only created on request, through propose_reimbursement.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from ledgerline.categorize.base import StageContext
from ledgerline.categorize.pipeline import ClassificationPipeline, apply_outcome
from ledgerline.database.models import ClassificationOutcome, ReimbursementProposal
from ledgerline.database.repository import Repository
from ledgerline.errors import FieldError, NotFoundError, ValidationError
from ledgerline.matching.recurring import MatchResult, RecurringMatcher
from ledgerline.reimbursements.lifecycle import (
    ProposalRequest,
    ReimbursementLifecycleManager,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    transaction_id: str
    match: MatchResult
    outcome: ClassificationOutcome
    is_reimbursement_candidate: bool
    recurring_confirmed: bool = False
    outcome_recorded: bool = True

    def to_dict(self) -> dict:
        return {
            "transactionId": self.transaction_id,
            "recurringMatch": self.match.to_dict(),
            "classification": self.outcome.to_dict(),
            "isReimbursementCandidate": self.is_reimbursement_candidate,
        }


class Reconciler:
    """Wires the matcher, classification pipeline and lifecycle manager."""

    def __init__(
        self,
        repo: Repository,
        pipeline: ClassificationPipeline,
        subcategories: list[dict],
        lifecycle: ReimbursementLifecycleManager | None = None,
    ):
        self.repo = repo
        self.pipeline = pipeline
        self.subcategories = subcategories
        self.matcher = RecurringMatcher(repo)
        self.lifecycle = lifecycle or ReimbursementLifecycleManager(repo)

    def reconcile(
        self, transaction_id: str, now: str | None = None
    ) -> ReconciliationResult:
        """Reconcile one stored transaction.

        Raises:
            NotFoundError: If the transaction does not exist.
            ValidationError: If a recurring item's configuration is malformed.
            ConflictError: If the recurring due date moved during the run.
        """
        txn = self.repo.get_transaction(transaction_id)
        if txn is None:
            raise NotFoundError("transaction", transaction_id)

        items = self.repo.get_active_recurring_items(txn.household_id)
        match = self.matcher.match(txn, items)
        if txn.recurring_item_id is not None:
            # Confirmed on an earlier run; the item's due date has moved on.
            match = self._existing_link(txn.recurring_item_id, match)
            confirmed = False
        else:
            confirmed = self.matcher.confirm(txn, match)

        context = StageContext(subcategories=self.subcategories, repo=self.repo)
        outcome = self.pipeline.classify(txn, context, now=now)

        latest = self.repo.get_latest_outcome(txn.id)
        if latest is not None and outcome.same_result_as(latest):
            logger.debug("Outcome for %s unchanged; keeping %s", txn.id, latest.id)
            outcome = latest
            recorded = False
        else:
            apply_outcome(txn, outcome, self.repo)
            self.repo.insert_outcome(outcome)
            recorded = True
            logger.info(
                "Classified %s: %s (%s, %.4f)",
                txn.id, outcome.decision.kind,
                outcome.proposed_subcategory_id or "-", outcome.final_confidence,
            )

        return ReconciliationResult(
            transaction_id=txn.id,
            match=match,
            outcome=outcome,
            is_reimbursement_candidate=txn.amount < 0,
            recurring_confirmed=confirmed,
            outcome_recorded=recorded,
        )

    def _existing_link(self, item_id: str, match: MatchResult) -> MatchResult:
        """Report the recurring item a transaction is already linked to."""
        item = self.repo.get_recurring_item(item_id)
        score = next((c.score for c in match.candidates if c.item_id == item_id), 0.0)
        return MatchResult(
            matched_item_id=item_id,
            score=score,
            score_version=item.score_version if item else None,
            next_due_date=item.next_due_date if item else None,
            candidates=match.candidates,
        )

    def propose_reimbursement(
        self,
        result: ReconciliationResult,
        related_transaction_id: str | None = None,
        related_transaction_split_id: str | None = None,
        proposed_amount: float | None = None,
        supersedes_proposal_id: str | None = None,
    ) -> ReimbursementProposal:
        """Create a deterministic proposal for a reconciled inflow.

        The proposed amount defaults to the full inflow.

        Raises:
            ValidationError: If the result is not a reimbursement candidate
                or the request is malformed.
        """
        if not result.is_reimbursement_candidate:
            raise ValidationError(FieldError(
                "incoming_transaction_id",
                "Only inflows can settle a reimbursement.",
            ))
        if proposed_amount is None:
            txn = self.repo.get_transaction(result.transaction_id)
            if txn is None:
                raise NotFoundError("transaction", result.transaction_id)
            proposed_amount = abs(txn.amount)

        return self.lifecycle.create(ProposalRequest(
            incoming_transaction_id=result.transaction_id,
            proposed_amount=proposed_amount,
            related_transaction_id=related_transaction_id,
            related_transaction_split_id=related_transaction_split_id,
            supersedes_proposal_id=supersedes_proposal_id,
            proposal_source="Deterministic",
            provenance_source="classification_outcome",
            provenance_reference=result.outcome.id,
            provenance_payload_json=json.dumps({
                "decision": result.outcome.decision.kind,
                "finalConfidence": result.outcome.final_confidence,
                "recurringItemId": result.match.matched_item_id,
            }, sort_keys=True),
        ))
