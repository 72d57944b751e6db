"""Stage 3: agent-assisted classification.

The stage delegates to an AgentClassifier collaborator. The default
collaborator asks Claude through the same claude_fn callback the CLI
builds, so tests can pass a plain function instead of a live client.

A collaborator that fails, times out or returns garbage never breaks the
pipeline: the stage records a zero-confidence proposal and the
transaction goes to human review.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from ledgerline.categorize.base import (
    ClassificationStage,
    StageContext,
    StageProposal,
    clamp_confidence,
)
from ledgerline.database.models import EnrichedTransaction

logger = logging.getLogger(__name__)

ClaudeFn = Callable[[str, str], str]


@dataclass
class AgentProposal:
    """What the agent suggested for one transaction."""
    subcategory_id: str | None
    confidence: float
    reasoning: str = ""
    note: str | None = None


class AgentClassifier(Protocol):
    def propose_classification(
        self, txn: EnrichedTransaction, subcategories: list[dict]
    ) -> AgentProposal | None:
        ...


SYSTEM_PROMPT = (
    "You are a household finance classifier. Given a bank transaction, "
    "assign it to the most appropriate subcategory from the list provided. "
    "Return ONLY a JSON object with these fields:\n"
    '  - "subcategory_id": the best matching subcategory ID from the list\n'
    '  - "confidence": your confidence from 0.0 to 1.0\n'
    '  - "reasoning": brief explanation (one sentence)\n'
    "If you cannot determine a subcategory, set subcategory_id to null "
    "and confidence to 0.0.\n"
    "Return ONLY the JSON object, no other text."
)


class ClaudeAgentClassifier:
    """AgentClassifier backed by a claude_fn(system, prompt) -> str callback."""

    def __init__(self, claude_fn: ClaudeFn):
        self.claude_fn = claude_fn

    def propose_classification(
        self, txn: EnrichedTransaction, subcategories: list[dict]
    ) -> AgentProposal | None:
        listing = "\n".join(f"- {s['id']}: {s['name']}" for s in subcategories)
        prompt = (
            f"Transaction: {txn.raw_description}\n"
            f"Amount: ${abs(txn.amount):.2f} "
            f"({'outflow' if txn.amount > 0 else 'inflow'})\n"
            f"Date: {txn.transaction_date}\n\n"
            f"Available subcategories:\n{listing}"
        )
        response = self.claude_fn(SYSTEM_PROMPT, prompt)
        return parse_agent_response(response, {s["id"] for s in subcategories})


def parse_agent_response(response: str, valid_ids: set[str]) -> AgentProposal | None:
    """Parse the agent's JSON reply into a proposal, or None if unusable."""
    text = (response or "").strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [line for line in lines if not line.strip().startswith("```")]
        text = "\n".join(lines)

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.error("Failed to parse agent classification response: %s", text[:200])
        return None

    if not isinstance(data, dict):
        logger.error("Agent response is not a dict: %s", type(data))
        return None

    subcategory_id = data.get("subcategory_id") or None
    reasoning = str(data.get("reasoning") or "")
    if subcategory_id is not None and subcategory_id not in valid_ids:
        logger.warning(
            "Agent returned unknown subcategory_id '%s'", subcategory_id
        )
        return AgentProposal(None, 0.0, reasoning, note=reasoning or None)

    confidence = clamp_confidence(data.get("confidence", 0.0))
    if subcategory_id is None:
        confidence = 0.0
    return AgentProposal(subcategory_id, confidence, reasoning, note=reasoning or None)


class AgentStage(ClassificationStage):
    """Wraps an AgentClassifier as the last classification stage."""

    name = "agent"

    def __init__(self, classifier: AgentClassifier | None):
        self.classifier = classifier

    def propose(self, txn: EnrichedTransaction, context: StageContext) -> StageProposal:
        if self.classifier is None:
            return StageProposal(
                None, 0.0, "agent_not_configured",
                "No agent classifier is configured.",
            )

        try:
            proposal = self.classifier.propose_classification(txn, context.subcategories)
        except Exception:
            logger.exception("Agent classification failed for txn %s", txn.id)
            return StageProposal(
                None, 0.0, "agent_unavailable",
                "Agent classifier failed; routed to human review.",
            )

        if proposal is None:
            return StageProposal(
                None, 0.0, "agent_invalid_response",
                "Agent response could not be used.",
            )
        if proposal.subcategory_id is None:
            return StageProposal(
                None, 0.0, "agent_no_suggestion",
                "Agent could not suggest a subcategory.",
                note=proposal.note,
            )
        return StageProposal(
            proposal.subcategory_id,
            clamp_confidence(proposal.confidence),
            "agent_suggestion",
            f"Agent suggested '{proposal.subcategory_id}'.",
            note=proposal.note,
        )
