"""Conflict routing for new reimbursement proposals.

A proposal that collides with existing work is still recorded, but is
flagged for human review instead of being left to the normal flow:

1. Stale supersede: the proposal being revised already has a newer
   sibling in its lifecycle group.
2. Duplicate: another active proposal for the same incoming transaction
   already targets the same related transaction or split.
3. Over-allocation: active proposals plus this one claim more than the
   incoming transaction's amount.

Checks run in that order; the first hit wins.
"""

from __future__ import annotations

from dataclasses import dataclass

from ledgerline.database.models import (
    PROPOSAL_APPROVED,
    PROPOSAL_PROPOSED,
    ReimbursementProposal,
)

STALE_CONFLICT = "reimbursement_conflict_stale_proposal"
DUPLICATE_CONFLICT = "reimbursement_conflict_duplicate_proposal"
OVER_ALLOCATION_CONFLICT = "reimbursement_conflict_over_allocation"


@dataclass
class ConflictRouting:
    reason_code: str
    rationale: str


def is_active(proposal: ReimbursementProposal) -> bool:
    """Approved, or still proposed and not replaced by a revision."""
    if proposal.status == PROPOSAL_APPROVED:
        return True
    return proposal.status == PROPOSAL_PROPOSED and not proposal.is_superseded


def _is_stale(
    superseded: ReimbursementProposal | None,
    existing: list[ReimbursementProposal],
) -> bool:
    if superseded is None:
        return False
    return any(
        p.id != superseded.id
        and p.lifecycle_group_id == superseded.lifecycle_group_id
        and p.lifecycle_ordinal > superseded.lifecycle_ordinal
        for p in existing
    )


def _is_duplicate(
    proposal: ReimbursementProposal, existing: list[ReimbursementProposal]
) -> bool:
    return any(
        is_active(p)
        and p.id != proposal.supersedes_proposal_id
        and p.related_transaction_id == proposal.related_transaction_id
        and p.related_transaction_split_id == proposal.related_transaction_split_id
        for p in existing
    )


def evaluate_conflicts(
    proposal: ReimbursementProposal,
    incoming_amount: float,
    existing: list[ReimbursementProposal],
    superseded: ReimbursementProposal | None = None,
) -> ConflictRouting | None:
    """Decide whether a new proposal must be routed to human review.

    Args:
        proposal: The proposal about to be inserted.
        incoming_amount: Signed amount of the incoming transaction.
        existing: All proposals already recorded for the incoming transaction.
        superseded: The proposal being revised, if any. It does not count
            towards the allocated amount since the revision replaces it.

    Returns:
        ConflictRouting with the reason code, or None when there is no conflict.
    """
    if _is_stale(superseded, existing):
        return ConflictRouting(
            STALE_CONFLICT,
            "Supersede target is stale relative to the current reimbursement "
            "lifecycle and requires human review.",
        )

    if _is_duplicate(proposal, existing):
        return ConflictRouting(
            DUPLICATE_CONFLICT,
            "An active reimbursement proposal already targets this incoming "
            "transaction and related target; human review is required.",
        )

    incoming = round(abs(incoming_amount), 2)
    proposed = round(abs(proposal.proposed_amount), 2)
    allocated = round(sum(
        abs(p.proposed_amount) for p in existing
        if is_active(p) and p.id != proposal.supersedes_proposal_id
    ), 2)
    if round(allocated + proposed, 2) > incoming:
        return ConflictRouting(
            OVER_ALLOCATION_CONFLICT,
            f"Proposed reimbursement over-allocates the incoming transaction "
            f"amount (allocated={allocated:.2f}, proposed={proposed:.2f}, "
            f"incoming={incoming:.2f}); human review is required.",
        )
    return None
