"""Reimbursement proposal lifecycle: Proposed -> Approved | Rejected.

Proposals for one incoming transaction form lifecycle groups. Each new
revision of a claim gets the next ordinal in its group and points at the
proposal it supersedes; superseded proposals can never be decided. A
decision is a human act and is recorded exactly once.

Every check runs before the first write. The two writes that race
(marking a proposal superseded, recording a decision) are conditional
UPDATEs in the repository.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4

from ledgerline.database.models import (
    PROPOSAL_APPROVED,
    PROPOSAL_REJECTED,
    PROPOSAL_SOURCES,
    EnrichedTransaction,
    ReimbursementProposal,
)
from ledgerline.database.repository import Repository
from ledgerline.errors import ConflictError, FieldError, NotFoundError, ValidationError
from ledgerline.reimbursements.conflicts import evaluate_conflicts

logger = logging.getLogger(__name__)

DEFAULT_REASON_CODE = "proposal_created"
DEFAULT_RATIONALE = "Proposal created and awaiting human review."

_ACTIONS = {
    "approve": (PROPOSAL_APPROVED, "approved_by_human", "Proposal approved by human reviewer."),
    "reject": (PROPOSAL_REJECTED, "rejected_by_human", "Proposal rejected by human reviewer."),
}


class AccessScope(Protocol):
    """Visibility boundary owned by the host application."""

    def can_read_account(self, user_id: str, account_id: str) -> bool:
        ...


@dataclass
class ProposalRequest:
    """Everything needed to record a new reimbursement proposal."""
    incoming_transaction_id: str
    proposed_amount: float
    related_transaction_id: str | None = None
    related_transaction_split_id: str | None = None
    lifecycle_group_id: str | None = None
    lifecycle_ordinal: int | None = None
    proposal_source: str = "Deterministic"
    status_reason_code: str = DEFAULT_REASON_CODE
    status_rationale: str = DEFAULT_RATIONALE
    provenance_source: str = "engine"
    provenance_reference: str | None = None
    provenance_payload_json: str | None = None
    supersedes_proposal_id: str | None = None
    created_by_user_id: str | None = None
    user_note: str | None = None
    agent_note: str | None = None


def parse_action(action: str | None) -> str:
    """Normalise a decision action to "approve" or "reject".

    Raises:
        ValidationError: For anything else.
    """
    normalized = (action or "").strip().lower()
    if normalized not in _ACTIONS:
        raise ValidationError(FieldError("action", "Action must be approve or reject."))
    return normalized


def parse_proposal_source(source: str | None) -> str | None:
    """Case-insensitive lookup of a proposal source, None if unknown."""
    normalized = (source or "").strip().lower()
    for known in PROPOSAL_SOURCES:
        if known.lower() == normalized:
            return known
    return None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def validate_request(request: ProposalRequest) -> None:
    """Field-level checks that need no database access."""
    errors: list[FieldError] = []
    if not _clean(request.incoming_transaction_id):
        errors.append(FieldError("incoming_transaction_id", "Incoming transaction is required."))
    if request.proposed_amount is None or round(request.proposed_amount, 2) <= 0:
        errors.append(FieldError("proposed_amount", "Proposed amount must be greater than zero."))
    has_txn = _clean(request.related_transaction_id) is not None
    has_split = _clean(request.related_transaction_split_id) is not None
    if has_txn == has_split:
        errors.append(FieldError(
            "related_transaction_id",
            "Exactly one of related_transaction_id or related_transaction_split_id is required.",
        ))
    if parse_proposal_source(request.proposal_source) is None:
        errors.append(FieldError(
            "proposal_source",
            f"Proposal source must be one of: {', '.join(PROPOSAL_SOURCES)}.",
        ))
    for name in ("status_reason_code", "status_rationale", "provenance_source"):
        if not _clean(getattr(request, name)):
            errors.append(FieldError(name, f"{name} is required."))
    if request.lifecycle_ordinal is not None and request.lifecycle_ordinal < 1:
        errors.append(FieldError("lifecycle_ordinal", "Lifecycle ordinal must be at least 1."))
    if errors:
        raise ValidationError(errors)


class LifecycleGroup:
    """All revisions of one claim, indexed by id and ordered by ordinal.

    Supersede links are stored as ids into this arena, so walking the
    chain never follows object references. Chains stay linear because
    only an undecided, unsuperseded proposal can be superseded and the
    repository marks it with a conditional UPDATE. A cycle can still turn
    up in stored data, and walking by visited ids reports it.
    """

    def __init__(self, group_id: str, proposals: list[ReimbursementProposal]):
        self.group_id = group_id
        self.proposals = sorted(proposals, key=lambda p: p.lifecycle_ordinal)
        self.by_id = {p.id: p for p in self.proposals}

    def __contains__(self, proposal_id: str) -> bool:
        return proposal_id in self.by_id

    @property
    def max_ordinal(self) -> int:
        return self.proposals[-1].lifecycle_ordinal if self.proposals else 0

    def next_ordinal(self) -> int:
        return self.max_ordinal + 1

    def chain(self, proposal_id: str) -> list[ReimbursementProposal]:
        """The revision chain through a proposal, oldest first.

        Raises:
            ConflictError: If the supersede links form a cycle.
        """
        root = self._walk(proposal_id, "supersedes_proposal_id")[-1]
        return self._walk(root.id, "superseded_by_proposal_id")

    def _walk(self, start_id: str, link: str) -> list[ReimbursementProposal]:
        seen: set[str] = set()
        path: list[ReimbursementProposal] = []
        current = self.by_id.get(start_id)
        while current is not None:
            if current.id in seen:
                raise ConflictError(
                    "reimbursement_lifecycle_conflict",
                    f"Supersede chain in group {self.group_id} contains a cycle.",
                )
            seen.add(current.id)
            path.append(current)
            next_id = getattr(current, link)
            current = self.by_id.get(next_id) if next_id else None
        return path


class ReimbursementLifecycleManager:
    """Creates, decides and lists reimbursement proposals."""

    def __init__(self, repo: Repository, access_scope: AccessScope | None = None):
        self.repo = repo
        self.access_scope = access_scope

    def group(self, group_id: str) -> LifecycleGroup:
        return LifecycleGroup(group_id, self.repo.get_proposals_in_group(group_id))

    def _check_access(self, user_id: str | None, txn: EnrichedTransaction) -> None:
        if user_id is None or self.access_scope is None:
            return
        if not self.access_scope.can_read_account(user_id, txn.account_id):
            # Reported as missing so callers cannot learn about other households.
            raise NotFoundError("transaction", txn.id)

    def _load_transaction(self, txn_id: str) -> EnrichedTransaction:
        txn = self.repo.get_transaction(txn_id)
        if txn is None:
            raise NotFoundError("transaction", txn_id)
        return txn

    def create(self, request: ProposalRequest) -> ReimbursementProposal:
        """Validate and record a new proposal.

        Raises:
            ValidationError: Malformed request.
            NotFoundError: Referenced transaction, split or proposal missing.
            ConflictError: Supersede target already decided or superseded,
                or the lifecycle slot is taken.
        """
        validate_request(request)

        incoming = self._load_transaction(request.incoming_transaction_id.strip())
        self._check_access(request.created_by_user_id, incoming)

        related_txn_id = _clean(request.related_transaction_id)
        related_split_id = _clean(request.related_transaction_split_id)
        if related_txn_id is not None:
            self._check_access(request.created_by_user_id, self._load_transaction(related_txn_id))
        elif self.repo.get_split(related_split_id) is None:
            raise NotFoundError("transaction_split", related_split_id)

        superseded: ReimbursementProposal | None = None
        group_id = _clean(request.lifecycle_group_id)
        if request.supersedes_proposal_id:
            superseded = self.repo.get_proposal(request.supersedes_proposal_id)
            if superseded is None:
                raise NotFoundError("reimbursement_proposal", request.supersedes_proposal_id)
            errors: list[FieldError] = []
            if superseded.incoming_transaction_id != incoming.id:
                errors.append(FieldError(
                    "supersedes_proposal_id",
                    "Superseded proposal must belong to the same incoming transaction.",
                ))
            if group_id is not None and group_id != superseded.lifecycle_group_id:
                errors.append(FieldError(
                    "lifecycle_group_id",
                    "Superseded proposal must belong to the same lifecycle group.",
                ))
            if errors:
                raise ValidationError(errors)
            if superseded.is_superseded:
                raise ConflictError(
                    "reimbursement_superseded",
                    f"Proposal {superseded.id} has already been superseded.",
                )
            if superseded.is_decided:
                raise ConflictError(
                    "reimbursement_already_decided",
                    f"Proposal {superseded.id} has already been decided.",
                )
            group_id = superseded.lifecycle_group_id

        group = self.group(group_id) if group_id else LifecycleGroup(str(uuid4()), [])
        if any(p.incoming_transaction_id != incoming.id for p in group.proposals):
            raise ValidationError(FieldError(
                "lifecycle_group_id",
                "Lifecycle group belongs to a different incoming transaction.",
            ))
        ordinal = request.lifecycle_ordinal
        if ordinal is None:
            ordinal = group.next_ordinal()
        elif ordinal <= group.max_ordinal:
            raise ConflictError(
                "reimbursement_lifecycle_conflict",
                f"Ordinal {ordinal} is not after the latest ordinal "
                f"{group.max_ordinal} of group {group.group_id}.",
            )

        proposal = ReimbursementProposal(
            incoming_transaction_id=incoming.id,
            proposed_amount=round(request.proposed_amount, 2),
            lifecycle_group_id=group.group_id,
            lifecycle_ordinal=ordinal,
            related_transaction_id=related_txn_id,
            related_transaction_split_id=related_split_id,
            status_reason_code=request.status_reason_code.strip(),
            status_rationale=request.status_rationale.strip(),
            proposal_source=parse_proposal_source(request.proposal_source),
            provenance_source=request.provenance_source.strip(),
            provenance_reference=_clean(request.provenance_reference),
            provenance_payload_json=request.provenance_payload_json,
            supersedes_proposal_id=superseded.id if superseded else None,
            user_note=_clean(request.user_note),
            agent_note=_clean(request.agent_note),
        )

        routing = evaluate_conflicts(
            proposal,
            incoming.amount,
            self.repo.get_proposals_for_incoming(incoming.id),
            superseded,
        )
        if routing is not None:
            proposal.needs_review = True
            proposal.status_reason_code = routing.reason_code
            proposal.status_rationale = routing.rationale
            logger.warning(
                "Reimbursement proposal for %s routed to review: %s",
                incoming.id, routing.reason_code,
            )

        self.repo.insert_proposal(proposal)
        if superseded is not None:
            superseded.superseded_by_proposal_id = proposal.id
        logger.info(
            "Created reimbursement proposal %s (group %s, ordinal %d, %.2f)",
            proposal.id, proposal.lifecycle_group_id, proposal.lifecycle_ordinal,
            proposal.proposed_amount,
        )
        return proposal

    def decide(
        self,
        proposal_id: str,
        action: str,
        decided_by_user_id: str | None,
        user_note: str | None = None,
        agent_note: str | None = None,
        now: str | None = None,
    ) -> ReimbursementProposal:
        """Approve or reject a proposal on behalf of a human reviewer.

        Raises:
            ValidationError: Unknown action or missing user.
            NotFoundError: No such proposal.
            ConflictError: Proposal already decided or superseded.
        """
        errors: list[FieldError] = []
        try:
            normalized = parse_action(action)
        except ValidationError as e:
            errors.extend(e.errors)
            normalized = None
        if not _clean(decided_by_user_id):
            errors.append(FieldError("decided_by_user_id", "Deciding user is required."))
        if errors:
            raise ValidationError(errors)

        proposal = self.repo.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError("reimbursement_proposal", proposal_id)
        self._check_access(
            decided_by_user_id,
            self._load_transaction(proposal.incoming_transaction_id),
        )
        self._raise_if_not_decidable(proposal)

        status, reason_code, rationale = _ACTIONS[normalized]
        decided_at = now or datetime.now(timezone.utc).isoformat()
        won = self.repo.decide_proposal(
            proposal.id, status, reason_code, rationale,
            decided_by_user_id.strip(), decided_at,
            user_note=_clean(user_note),
            agent_note=_clean(agent_note),
        )
        current = self.repo.get_proposal(proposal.id)
        if not won:
            self._raise_if_not_decidable(current)
            raise ConflictError(
                "reimbursement_already_decided",
                f"Proposal {proposal.id} could not be decided.",
            )

        logger.info(
            "Proposal %s %s by %s", proposal.id, status.lower(), decided_by_user_id,
        )
        return current

    @staticmethod
    def _raise_if_not_decidable(proposal: ReimbursementProposal) -> None:
        if proposal.is_superseded:
            raise ConflictError(
                "reimbursement_superseded",
                f"Proposal {proposal.id} was superseded by "
                f"{proposal.superseded_by_proposal_id} and cannot be decided.",
            )
        if proposal.is_decided or not proposal.is_decidable:
            raise ConflictError(
                "reimbursement_already_decided",
                f"Proposal {proposal.id} has already been decided ({proposal.status}).",
            )

    def chain(self, proposal_id: str) -> list[ReimbursementProposal]:
        """Revision chain containing the proposal, oldest first."""
        proposal = self.repo.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError("reimbursement_proposal", proposal_id)
        return self.group(proposal.lifecycle_group_id).chain(proposal.id)
