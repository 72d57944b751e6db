"""Tests for the reimbursement proposal lifecycle manager."""

from unittest.mock import MagicMock

import pytest

from ledgerline.database.models import (
    PROPOSAL_APPROVED,
    PROPOSAL_PROPOSED,
    PROPOSAL_REJECTED,
    EnrichedTransaction,
    ReimbursementProposal,
    TransactionSplit,
)
from ledgerline.errors import ConflictError, NotFoundError, ValidationError
from ledgerline.reimbursements.lifecycle import (
    LifecycleGroup,
    ProposalRequest,
    ReimbursementLifecycleManager,
    parse_action,
)


def _txn(**kw) -> EnrichedTransaction:
    defaults = dict(
        account_id="acct-checking",
        household_id="hh-1",
        transaction_date="2024-03-20",
        amount=-100.00,
        raw_description="VENMO CASHOUT",
    )
    defaults.update(kw)
    return EnrichedTransaction(**defaults)


@pytest.fixture
def incoming(repo):
    return repo.insert_transaction(_txn())


@pytest.fixture
def related(repo):
    return repo.insert_transaction(_txn(amount=100.00, raw_description="DR SMITH DENTAL"))


@pytest.fixture
def manager(repo):
    return ReimbursementLifecycleManager(repo)


def _request(incoming, related, **kw) -> ProposalRequest:
    defaults = dict(
        incoming_transaction_id=incoming.id,
        related_transaction_id=related.id,
        proposed_amount=40.00,
    )
    defaults.update(kw)
    return ProposalRequest(**defaults)


class TestCreate:
    def test_first_proposal_opens_group(self, manager, repo, incoming, related):
        p = manager.create(_request(incoming, related))

        assert p.lifecycle_ordinal == 1
        assert p.lifecycle_group_id
        assert p.status == PROPOSAL_PROPOSED
        assert p.status_reason_code == "proposal_created"
        assert p.needs_review is False
        assert repo.get_proposal(p.id).proposed_amount == 40.00

    def test_amount_rounded_to_cents(self, manager, incoming, related):
        p = manager.create(_request(incoming, related, proposed_amount=12.346))
        assert p.proposed_amount == 12.35

    def test_source_is_case_insensitive(self, manager, incoming, related):
        p = manager.create(_request(incoming, related, proposal_source=" manual "))
        assert p.proposal_source == "Manual"

    def test_split_target(self, manager, repo, incoming):
        parent = repo.insert_transaction(_txn(
            amount=100.00,
            splits=[TransactionSplit(amount=60.00), TransactionSplit(amount=40.00)],
        ))
        split_id = parent.splits[1].id
        p = manager.create(_request(
            incoming, parent, related_transaction_id=None,
            related_transaction_split_id=split_id,
        ))
        assert p.related_transaction_split_id == split_id
        assert p.related_transaction_id is None

    def test_next_ordinal_in_group(self, manager, incoming, related):
        p1 = manager.create(_request(incoming, related, proposed_amount=10.00))
        p2 = manager.create(_request(
            incoming, related, proposed_amount=10.00,
            lifecycle_group_id=p1.lifecycle_group_id,
        ))
        assert p2.lifecycle_group_id == p1.lifecycle_group_id
        assert p2.lifecycle_ordinal == 2

    def test_explicit_ordinal_must_be_after_latest(self, manager, incoming, related):
        p1 = manager.create(_request(incoming, related))
        with pytest.raises(ConflictError) as exc:
            manager.create(_request(
                incoming, related, lifecycle_group_id=p1.lifecycle_group_id,
                lifecycle_ordinal=1,
            ))
        assert exc.value.code == "reimbursement_lifecycle_conflict"

    def test_explicit_ordinal_gap_allowed(self, manager, incoming, related):
        p1 = manager.create(_request(incoming, related, proposed_amount=10.00))
        p2 = manager.create(_request(
            incoming, related, proposed_amount=10.00,
            lifecycle_group_id=p1.lifecycle_group_id, lifecycle_ordinal=5,
        ))
        assert p2.lifecycle_ordinal == 5

    def test_group_of_other_incoming_rejected(self, manager, repo, incoming, related):
        other = repo.insert_transaction(_txn())
        p1 = manager.create(_request(other, related))
        with pytest.raises(ValidationError) as exc:
            manager.create(_request(incoming, related, lifecycle_group_id=p1.lifecycle_group_id))
        assert "lifecycle_group_id" in exc.value.fields


class TestCreateValidation:
    @pytest.mark.parametrize("overrides,field", [
        ({"proposed_amount": 0}, "proposed_amount"),
        ({"proposed_amount": -5.0}, "proposed_amount"),
        ({"proposed_amount": 0.004}, "proposed_amount"),
        ({"related_transaction_split_id": "split-1"}, "related_transaction_id"),
        ({"related_transaction_id": None}, "related_transaction_id"),
        ({"proposal_source": "Robot"}, "proposal_source"),
        ({"status_reason_code": " "}, "status_reason_code"),
        ({"status_rationale": ""}, "status_rationale"),
        ({"provenance_source": ""}, "provenance_source"),
        ({"lifecycle_ordinal": 0}, "lifecycle_ordinal"),
    ])
    def test_rejected_before_any_write(self, manager, repo, incoming, related, overrides, field):
        with pytest.raises(ValidationError) as exc:
            manager.create(_request(incoming, related, **overrides))
        assert field in exc.value.fields
        assert repo.get_proposals_for_incoming(incoming.id) == []

    def test_all_errors_reported(self, manager, incoming, related):
        with pytest.raises(ValidationError) as exc:
            manager.create(_request(
                incoming, related, proposed_amount=0, proposal_source="Robot",
            ))
        assert {"proposed_amount", "proposal_source"} <= exc.value.fields

    def test_missing_incoming(self, manager, related):
        with pytest.raises(NotFoundError) as exc:
            manager.create(ProposalRequest("nope", 10.0, related_transaction_id=related.id))
        assert exc.value.entity == "transaction"

    def test_missing_related(self, manager, incoming, related):
        with pytest.raises(NotFoundError):
            manager.create(_request(incoming, related, related_transaction_id="nope"))

    def test_missing_split(self, manager, incoming, related):
        with pytest.raises(NotFoundError) as exc:
            manager.create(_request(
                incoming, related, related_transaction_id=None,
                related_transaction_split_id="nope",
            ))
        assert exc.value.entity == "transaction_split"

    def test_missing_supersede_target(self, manager, incoming, related):
        with pytest.raises(NotFoundError):
            manager.create(_request(incoming, related, supersedes_proposal_id="nope"))


class TestSupersede:
    def test_revision_marks_previous(self, manager, repo, incoming, related):
        p1 = manager.create(_request(incoming, related))
        p2 = manager.create(_request(incoming, related, proposed_amount=45.00,
                                     supersedes_proposal_id=p1.id))

        assert p2.lifecycle_group_id == p1.lifecycle_group_id
        assert p2.lifecycle_ordinal == 2
        assert p2.supersedes_proposal_id == p1.id
        assert p2.needs_review is False
        assert repo.get_proposal(p1.id).superseded_by_proposal_id == p2.id

    def test_cannot_supersede_twice(self, manager, incoming, related):
        p1 = manager.create(_request(incoming, related))
        manager.create(_request(incoming, related, supersedes_proposal_id=p1.id))
        with pytest.raises(ConflictError) as exc:
            manager.create(_request(incoming, related, supersedes_proposal_id=p1.id))
        assert exc.value.code == "reimbursement_superseded"

    def test_cannot_supersede_decided(self, manager, incoming, related):
        p1 = manager.create(_request(incoming, related))
        manager.decide(p1.id, "reject", "user-1")
        with pytest.raises(ConflictError) as exc:
            manager.create(_request(incoming, related, supersedes_proposal_id=p1.id))
        assert exc.value.code == "reimbursement_already_decided"

    def test_must_share_incoming_transaction(self, manager, repo, incoming, related):
        other = repo.insert_transaction(_txn())
        p1 = manager.create(_request(other, related))
        with pytest.raises(ValidationError) as exc:
            manager.create(_request(incoming, related, supersedes_proposal_id=p1.id))
        assert "supersedes_proposal_id" in exc.value.fields

    def test_must_share_group(self, manager, incoming, related):
        p1 = manager.create(_request(incoming, related))
        with pytest.raises(ValidationError) as exc:
            manager.create(_request(incoming, related, supersedes_proposal_id=p1.id,
                                    lifecycle_group_id="some-other-group"))
        assert "lifecycle_group_id" in exc.value.fields


class TestDecide:
    def test_superseded_then_decide_once(self, manager, incoming, related):
        p1 = manager.create(_request(incoming, related))
        p2 = manager.create(_request(incoming, related, supersedes_proposal_id=p1.id))

        with pytest.raises(ConflictError) as exc:
            manager.decide(p1.id, "approve", "user-1")
        assert exc.value.code == "reimbursement_superseded"

        decided = manager.decide(p2.id, "approve", "user-1", now="2024-03-21T10:00:00+00:00")
        assert decided.status == PROPOSAL_APPROVED
        assert decided.status_reason_code == "approved_by_human"
        assert decided.status_rationale == "Proposal approved by human reviewer."
        assert decided.decided_by_user_id == "user-1"
        assert decided.decided_at_utc == "2024-03-21T10:00:00+00:00"

        with pytest.raises(ConflictError) as exc:
            manager.decide(p2.id, "reject", "user-2")
        assert exc.value.code == "reimbursement_already_decided"

    def test_reject_with_notes(self, manager, incoming, related):
        p = manager.create(_request(incoming, related))
        decided = manager.decide(p.id, "  REJECT ", " user-1 ", user_note="  wrong payer  ")
        assert decided.status == PROPOSAL_REJECTED
        assert decided.status_reason_code == "rejected_by_human"
        assert decided.user_note == "wrong payer"
        assert decided.decided_by_user_id == "user-1"

    def test_invalid_action_and_user(self, manager, incoming, related):
        p = manager.create(_request(incoming, related))
        with pytest.raises(ValidationError) as exc:
            manager.decide(p.id, "maybe", "")
        assert exc.value.fields == {"action", "decided_by_user_id"}

    def test_unknown_proposal(self, manager):
        with pytest.raises(NotFoundError):
            manager.decide("nope", "approve", "user-1")

    def test_conditional_write_wins_once(self, repo, manager, incoming, related):
        p = manager.create(_request(incoming, related))
        args = (PROPOSAL_APPROVED, "approved_by_human", "ok", "user-1", "2024-03-21")
        assert repo.decide_proposal(p.id, *args) is True
        assert repo.decide_proposal(p.id, *args) is False

    def test_lost_race_reported_as_conflict(self, repo, incoming, related):
        manager = ReimbursementLifecycleManager(repo)
        p = manager.create(_request(incoming, related))
        stale = repo.get_proposal(p.id)
        repo.decide_proposal(p.id, PROPOSAL_REJECTED, "rejected_by_human", "no",
                             "user-2", "2024-03-21")

        racing = MagicMock(wraps=repo)
        racing.get_proposal.side_effect = [stale, repo.get_proposal(p.id)]
        with pytest.raises(ConflictError) as exc:
            ReimbursementLifecycleManager(racing).decide(p.id, "approve", "user-1")
        assert exc.value.code == "reimbursement_already_decided"
        assert repo.get_proposal(p.id).status == PROPOSAL_REJECTED

    def test_parse_action(self):
        assert parse_action(" Approve") == "approve"
        with pytest.raises(ValidationError):
            parse_action(None)


class TestAccessScope:
    def test_unreadable_account_looks_missing(self, repo, incoming, related):
        scope = MagicMock()
        scope.can_read_account.return_value = False
        manager = ReimbursementLifecycleManager(repo, access_scope=scope)
        p = ReimbursementLifecycleManager(repo).create(_request(incoming, related))

        with pytest.raises(NotFoundError):
            manager.decide(p.id, "approve", "outsider")
        scope.can_read_account.assert_called_with("outsider", "acct-checking")

    def test_creator_checked(self, repo, incoming, related):
        scope = MagicMock()
        scope.can_read_account.return_value = True
        manager = ReimbursementLifecycleManager(repo, access_scope=scope)
        manager.create(_request(incoming, related, created_by_user_id="user-1"))
        assert scope.can_read_account.call_count == 2


class TestChain:
    def test_chain_oldest_first(self, manager, incoming, related):
        p1 = manager.create(_request(incoming, related))
        p2 = manager.create(_request(incoming, related, supersedes_proposal_id=p1.id))
        p3 = manager.create(_request(incoming, related, supersedes_proposal_id=p2.id))

        assert [p.id for p in manager.chain(p2.id)] == [p1.id, p2.id, p3.id]
        assert [p.lifecycle_ordinal for p in manager.chain(p3.id)] == [1, 2, 3]

    def test_unknown_proposal(self, manager):
        with pytest.raises(NotFoundError):
            manager.chain("nope")

    def test_cycle_detected(self):
        a = ReimbursementProposal("in-1", 10.0, "g", 1, id="a", related_transaction_id="r",
                                  supersedes_proposal_id="b", superseded_by_proposal_id="b")
        b = ReimbursementProposal("in-1", 10.0, "g", 2, id="b", related_transaction_id="r",
                                  supersedes_proposal_id="a", superseded_by_proposal_id="a")
        group = LifecycleGroup("g", [b, a])
        with pytest.raises(ConflictError) as exc:
            group.chain("a")
        assert exc.value.code == "reimbursement_lifecycle_conflict"

    def test_next_ordinal_follows_max(self):
        a = ReimbursementProposal("in-1", 10.0, "g", 1, id="a", related_transaction_id="r",
                                  superseded_by_proposal_id="b")
        b = ReimbursementProposal("in-1", 10.0, "g", 2, id="b", related_transaction_id="r",
                                  supersedes_proposal_id="a")
        group = LifecycleGroup("g", [b, a])
        assert group.next_ordinal() == 3
        assert [p.id for p in group.chain("b")] == ["a", "b"]

    def test_superseded_ancestor_cannot_be_relinked(self, manager, incoming, related):
        p1 = manager.create(_request(incoming, related))
        p2 = manager.create(_request(incoming, related, supersedes_proposal_id=p1.id))
        with pytest.raises(ConflictError) as exc:
            manager.create(_request(incoming, related, supersedes_proposal_id=p1.id,
                                    lifecycle_group_id=p1.lifecycle_group_id))
        assert exc.value.code == "reimbursement_superseded"
        assert [p.id for p in manager.chain(p2.id)] == [p1.id, p2.id]
