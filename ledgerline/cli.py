"""CLI entry point for ledgerline.

Commands:
    ledgerline init-db                       Create or upgrade the database schema
    ledgerline reconcile TXN_ID [--json]     Match, classify and record one transaction
    ledgerline add-recurring HOUSEHOLD MERCHANT AMOUNT NEXT_DUE [--frequency F] [--variable]
                                             Register a recurring bill with engine defaults
    ledgerline review                        List transactions needing review
    ledgerline outcomes TXN_ID               Show the classification history of a transaction
    ledgerline decide PROPOSAL_ID --action approve|reject --user USER [--note TEXT]
                                             Record a human decision on a reimbursement proposal
    ledgerline chain PROPOSAL_ID             Show the revision chain of a proposal
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys

from ledgerline.errors import ConflictError, LedgerlineError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on LEDGERLINE_LOG_LEVEL env var."""
    level = os.environ.get("LEDGERLINE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load engine config from the config directory."""
    from ledgerline.config import Config

    config_dir = os.environ.get("LEDGERLINE_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database, schema applied."""
    from ledgerline.database.repository import Repository

    db_path = os.environ.get("LEDGERLINE_DB_PATH", "ledgerline.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations()
    return repo


def _make_claude_fn(config):
    """Create a Claude API callback for agent classification.

    Returns a callable (system: str, prompt: str) -> str, or None if
    ANTHROPIC_API_KEY is not set.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None

    try:
        import anthropic

        client = anthropic.Anthropic(api_key=api_key)

        def claude_fn(system: str, prompt: str) -> str:
            response = client.messages.create(
                model=config.agent_model,
                max_tokens=config.agent_max_tokens,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
            return response.content[0].text

        return claude_fn
    except Exception as e:
        logger.warning("Claude API not available: %s", e)
        return None


def _get_reconciler(config, repo):
    from ledgerline.categorize.agent import ClaudeAgentClassifier
    from ledgerline.categorize.pipeline import build_pipeline
    from ledgerline.orchestrator import Reconciler

    claude_fn = _make_claude_fn(config)
    classifier = ClaudeAgentClassifier(claude_fn) if claude_fn is not None else None
    pipeline = build_pipeline(config, agent_classifier=classifier)
    return Reconciler(repo, pipeline, config.subcategories)


def _report_error(e: LedgerlineError) -> int:
    if isinstance(e, ValidationError):
        print("Validation failed:")
        for err in e.errors:
            print(f"  {err.field}: {err.message}")
    elif isinstance(e, ConflictError):
        print(f"Conflict ({e.code}): {e.message}")
    elif isinstance(e, NotFoundError):
        print(f"Not found: {e}")
    else:
        print(f"Error: {e}")
    return 1


# ── Command handlers ─────────────────────────────────────


def cmd_init_db(args: argparse.Namespace) -> int:
    """Apply pending migrations."""
    repo = _get_repo()
    version = repo.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    print(f"Database ready at schema version {version}.")
    repo.close()
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Reconcile one stored transaction."""
    config = _get_config()
    repo = _get_repo()
    try:
        result = _get_reconciler(config, repo).reconcile(args.txn_id)
    except LedgerlineError as e:
        return _report_error(e)
    finally:
        repo.close()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    match = result.match
    outcome = result.outcome
    if match.is_match:
        tie = " (tie-break)" if match.tie_break_applied else ""
        print(
            f"Recurring:      {match.matched_item_id}  score={match.score:.4f}{tie}"
            f"  next due {match.next_due_date}"
        )
    else:
        print(f"Recurring:      no match (best score {match.score:.4f})")
    sub = config.subcategory_by_id(outcome.proposed_subcategory_id or "")
    label = f"{sub['id']} ({sub['name']})" if sub else (outcome.proposed_subcategory_id or "-")
    print(
        f"Classification: {outcome.decision.kind}  {label}"
        f"  confidence={outcome.final_confidence:.4f}  [{outcome.decision_reason_code}]"
    )
    for stage in outcome.stage_outputs:
        flag = "accepted" if stage.accepted else ("escalated" if stage.escalated_to_next_stage else "")
        print(
            f"  {stage.stage_order}. {stage.stage_name:<10}"
            f"  {stage.proposed_subcategory_id or '-':<20}"
            f"  {stage.confidence:.4f}  {stage.rationale_code}  {flag}"
        )
    if result.is_reimbursement_candidate:
        print("Inflow: candidate for reimbursement matching.")
    return 0


def cmd_add_recurring(args: argparse.Namespace) -> int:
    """Register a recurring bill, filling scoring settings from engine.yaml."""
    from ledgerline.database.models import RecurringItem

    config = _get_config()
    fields = config.recurring_defaults
    fields.update(
        household_id=args.household,
        merchant_name=args.merchant,
        expected_amount=args.amount,
        next_due_date=args.next_due,
        frequency=args.frequency,
        is_variable=args.variable,
    )
    repo = _get_repo()
    try:
        item = repo.insert_recurring_item(RecurringItem(**fields))
    except LedgerlineError as e:
        return _report_error(e)
    finally:
        repo.close()

    print(f"Recurring item {item.id}: {item.merchant_name} {item.expected_amount:.2f}"
          f" {item.frequency}, next due {item.next_due_date}")
    return 0


def cmd_review(args: argparse.Namespace) -> int:
    """List transactions waiting for human review."""
    repo = _get_repo()
    txns = repo.get_transactions_needing_review(limit=args.limit)
    repo.close()

    if not txns:
        print("No transactions pending review.")
        return 0

    print(f"Transactions pending review ({len(txns)}):")
    print("-" * 80)
    for t in txns:
        print(
            f"  {t.transaction_date}  {t.amount:>10.2f}  {t.account_id:<18}"
            f"  {t.raw_description[:30]:<30}  {t.review_reason or ''}"
        )
    return 0


def cmd_outcomes(args: argparse.Namespace) -> int:
    """Print every recorded outcome for a transaction, oldest first."""
    repo = _get_repo()
    outcomes = repo.get_outcomes(args.txn_id)
    repo.close()

    if not outcomes:
        print(f"No classification outcomes for {args.txn_id}.")
        return 0
    for o in outcomes:
        print(
            f"{o.created_at}  {o.decision.kind:<12}  {o.proposed_subcategory_id or '-':<20}"
            f"  {o.final_confidence:.4f}  {o.decision_reason_code}"
        )
        if o.agent_note_summary:
            print(f"    note: {o.agent_note_summary}")
    return 0


def cmd_decide(args: argparse.Namespace) -> int:
    """Approve or reject a reimbursement proposal."""
    from ledgerline.reimbursements.lifecycle import ReimbursementLifecycleManager

    repo = _get_repo()
    try:
        proposal = ReimbursementLifecycleManager(repo).decide(
            args.proposal_id, args.action, args.user, user_note=args.note,
        )
    except LedgerlineError as e:
        return _report_error(e)
    finally:
        repo.close()

    print(f"Proposal {proposal.id}: {proposal.status} by {proposal.decided_by_user_id}")
    return 0


def cmd_chain(args: argparse.Namespace) -> int:
    """Show every revision of a proposal's claim."""
    from ledgerline.reimbursements.lifecycle import ReimbursementLifecycleManager

    repo = _get_repo()
    try:
        chain = ReimbursementLifecycleManager(repo).chain(args.proposal_id)
    except LedgerlineError as e:
        return _report_error(e)
    finally:
        repo.close()

    for p in chain:
        review = "  needs review" if p.needs_review else ""
        superseded = f"  superseded by {p.superseded_by_proposal_id}" if p.is_superseded else ""
        print(
            f"  #{p.lifecycle_ordinal}  {p.id}  {p.proposed_amount:>10.2f}"
            f"  {p.status:<9}  {p.status_reason_code}{review}{superseded}"
        )
    return 0


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "init-db": cmd_init_db,
    "reconcile": cmd_reconcile,
    "add-recurring": cmd_add_recurring,
    "review": cmd_review,
    "outcomes": cmd_outcomes,
    "decide": cmd_decide,
    "chain": cmd_chain,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="ledgerline",
        description="Transaction reconciliation and classification engine",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init-db", help="Create or upgrade the database schema")

    recon_p = subparsers.add_parser("reconcile", help="Reconcile one transaction")
    recon_p.add_argument("txn_id", help="Transaction ID")
    recon_p.add_argument("--json", action="store_true", help="Print the result as JSON")

    add_p = subparsers.add_parser("add-recurring", help="Register a recurring bill")
    add_p.add_argument("household", help="Household ID")
    add_p.add_argument("merchant", help="Merchant name")
    add_p.add_argument("amount", type=float, help="Expected amount (negative for inflows)")
    add_p.add_argument("next_due", help="Next due date (YYYY-MM-DD)")
    add_p.add_argument("--frequency", default="Monthly",
                       help="Weekly, BiWeekly, Monthly, Quarterly or Annually")
    add_p.add_argument("--variable", action="store_true", help="Amount varies between periods")

    review_p = subparsers.add_parser("review", help="List transactions needing review")
    review_p.add_argument("--limit", type=int, default=50)

    outcomes_p = subparsers.add_parser("outcomes", help="Show classification history")
    outcomes_p.add_argument("txn_id", help="Transaction ID")

    decide_p = subparsers.add_parser("decide", help="Approve or reject a reimbursement proposal")
    decide_p.add_argument("proposal_id", help="Proposal ID")
    decide_p.add_argument("--action", required=True, help="approve or reject")
    decide_p.add_argument("--user", required=True, help="ID of the deciding user")
    decide_p.add_argument("--note", help="Optional reviewer note")

    chain_p = subparsers.add_parser("chain", help="Show a proposal's revision chain")
    chain_p.add_argument("proposal_id", help="Proposal ID")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
