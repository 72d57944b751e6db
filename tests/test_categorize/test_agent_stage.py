"""Tests for the agent stage and the Claude-backed classifier (stage 3)."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from ledgerline.categorize.agent import (
    AgentProposal,
    AgentStage,
    ClaudeAgentClassifier,
    parse_agent_response,
)
from ledgerline.categorize.base import StageContext
from ledgerline.database.models import EnrichedTransaction

SUBCATEGORIES = [
    {"id": "restaurants", "name": "Restaurants"},
    {"id": "coffee-shops", "name": "Coffee Shops"},
]
VALID_IDS = {s["id"] for s in SUBCATEGORIES}


def _txn(**kw) -> EnrichedTransaction:
    defaults = dict(
        account_id="acct-checking",
        household_id="hh-1",
        transaction_date="2024-03-14",
        amount=23.40,
        raw_description="SQ *MYSTERY MERCHANT",
    )
    defaults.update(kw)
    return EnrichedTransaction(**defaults)


@pytest.fixture
def context():
    return StageContext(subcategories=SUBCATEGORIES)


class TestParseResponse:
    def test_valid_json(self):
        resp = json.dumps({"subcategory_id": "restaurants", "confidence": 0.82,
                           "reasoning": "Square merchant near lunch."})
        p = parse_agent_response(resp, VALID_IDS)
        assert p.subcategory_id == "restaurants"
        assert p.confidence == 0.82
        assert p.note == "Square merchant near lunch."

    def test_code_fenced_json(self):
        resp = '```json\n{"subcategory_id": "coffee-shops", "confidence": 0.9}\n```'
        assert parse_agent_response(resp, VALID_IDS).subcategory_id == "coffee-shops"

    def test_confidence_clamped(self):
        resp = json.dumps({"subcategory_id": "restaurants", "confidence": 1.7})
        assert parse_agent_response(resp, VALID_IDS).confidence == 1.0

    def test_non_numeric_confidence(self):
        resp = json.dumps({"subcategory_id": "restaurants", "confidence": "high"})
        assert parse_agent_response(resp, VALID_IDS).confidence == 0.0

    def test_unknown_subcategory_dropped(self):
        resp = json.dumps({"subcategory_id": "yachts", "confidence": 0.99})
        p = parse_agent_response(resp, VALID_IDS)
        assert p.subcategory_id is None
        assert p.confidence == 0.0

    def test_null_subcategory(self):
        resp = json.dumps({"subcategory_id": None, "confidence": 0.6})
        p = parse_agent_response(resp, VALID_IDS)
        assert p.subcategory_id is None
        assert p.confidence == 0.0

    def test_invalid_json(self):
        assert parse_agent_response("I think it's a restaurant", VALID_IDS) is None

    def test_not_a_dict(self):
        assert parse_agent_response("[1, 2]", VALID_IDS) is None


class TestClaudeAgentClassifier:
    def test_prompt_lists_subcategories(self):
        claude_fn = MagicMock(return_value=json.dumps(
            {"subcategory_id": "restaurants", "confidence": 0.8}
        ))
        p = ClaudeAgentClassifier(claude_fn).propose_classification(_txn(), SUBCATEGORIES)

        assert p.subcategory_id == "restaurants"
        system, prompt = claude_fn.call_args[0]
        assert "JSON" in system
        assert "SQ *MYSTERY MERCHANT" in prompt
        assert "$23.40" in prompt
        assert "- coffee-shops: Coffee Shops" in prompt


class TestAgentStage:
    def test_suggestion(self, context):
        classifier = MagicMock()
        classifier.propose_classification.return_value = AgentProposal(
            "restaurants", 0.81, "looks like food", note="looks like food"
        )
        p = AgentStage(classifier).propose(_txn(), context)
        assert p.subcategory_id == "restaurants"
        assert p.confidence == 0.81
        assert p.rationale_code == "agent_suggestion"
        assert p.note == "looks like food"
        classifier.propose_classification.assert_called_once()

    def test_collaborator_failure_becomes_zero_proposal(self, context):
        classifier = MagicMock()
        classifier.propose_classification.side_effect = TimeoutError("slow")
        p = AgentStage(classifier).propose(_txn(), context)
        assert p.subcategory_id is None
        assert p.confidence == 0.0
        assert p.rationale_code == "agent_unavailable"

    def test_unusable_response(self, context):
        classifier = MagicMock()
        classifier.propose_classification.return_value = None
        p = AgentStage(classifier).propose(_txn(), context)
        assert p.rationale_code == "agent_invalid_response"

    def test_no_suggestion(self, context):
        classifier = MagicMock()
        classifier.propose_classification.return_value = AgentProposal(None, 0.0)
        p = AgentStage(classifier).propose(_txn(), context)
        assert p.subcategory_id is None
        assert p.rationale_code == "agent_no_suggestion"

    def test_not_configured(self, context):
        p = AgentStage(None).propose(_txn(), context)
        assert p.subcategory_id is None
        assert p.rationale_code == "agent_not_configured"
