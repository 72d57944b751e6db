"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled.

Shared records (recurring item due dates, proposal decisions) are only
changed through conditional UPDATEs: the caller states what it believes
the current value is, and the write is refused if that is no longer true.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from ledgerline.categorize.base import normalize_description
from ledgerline.errors import ConflictError, FieldError, ValidationError

from .models import (
    PROPOSAL_PROPOSED,
    ClassificationOutcome,
    ClassificationStageOutput,
    EnrichedTransaction,
    RecurringItem,
    ReimbursementProposal,
    TransactionSplit,
    decision_from_row,
)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

SPLIT_SUM_TOLERANCE = 0.005


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path = MIGRATIONS_DIR):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    sql_text = sql_file.read_text()
                    for statement in sql_text.split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Transactions ────────────────────────────────────────

    def insert_transaction(self, txn: EnrichedTransaction) -> EnrichedTransaction:
        """Insert a transaction and its splits atomically.

        normalized_description is derived from raw_description when the
        caller leaves it empty, so history lookups can find the row.

        Raises:
            ValidationError: If splits are present and do not sum to the
                transaction amount, or a split has amortization_months < 1.
        """
        _validate_splits(txn)
        if not txn.normalized_description:
            txn.normalized_description = normalize_description(txn.raw_description or "") or None
        try:
            self.conn.execute("BEGIN")
            self.conn.execute(
                "INSERT INTO transactions"
                " (id, account_id, household_id, transaction_date, amount,"
                "  raw_description, normalized_description, recurring_item_id,"
                "  subcategory_id, review_status, review_reason,"
                "  created_at, updated_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (txn.id, txn.account_id, txn.household_id,
                 txn.transaction_date, txn.amount, txn.raw_description,
                 txn.normalized_description, txn.recurring_item_id,
                 txn.subcategory_id, txn.review_status, txn.review_reason,
                 txn.created_at, txn.updated_at),
            )
            self.conn.executemany(
                "INSERT INTO transaction_splits"
                " (id, parent_transaction_id, subcategory_id, amount,"
                "  amortization_months, notes)"
                " VALUES (?,?,?,?,?,?)",
                [
                    (s.id, txn.id, s.subcategory_id, s.amount,
                     s.amortization_months, s.notes)
                    for s in txn.splits
                ],
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        for split in txn.splits:
            split.parent_transaction_id = txn.id
        return txn

    def get_transaction(self, txn_id: str) -> EnrichedTransaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        if row is None:
            return None
        txn = self._row_to_transaction(row)
        txn.splits = self.get_splits(txn_id)
        return txn

    def get_splits(self, txn_id: str) -> list[TransactionSplit]:
        rows = self.conn.execute(
            "SELECT * FROM transaction_splits WHERE parent_transaction_id = ?"
            " ORDER BY rowid",
            (txn_id,),
        ).fetchall()
        return [self._row_to_split(r) for r in rows]

    def get_split(self, split_id: str) -> TransactionSplit | None:
        row = self.conn.execute(
            "SELECT * FROM transaction_splits WHERE id = ?", (split_id,)
        ).fetchone()
        return self._row_to_split(row) if row else None

    def get_transactions_needing_review(
        self, limit: int = 50
    ) -> list[EnrichedTransaction]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE review_status = 'NeedsReview'"
            " ORDER BY transaction_date DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    _SENTINEL = object()

    def update_transaction_classification(
        self, txn_id: str, review_status: str,
        subcategory_id: str | None = _SENTINEL,
        review_reason: str | None = _SENTINEL,
    ):
        sets = ["review_status = ?", "updated_at = CURRENT_TIMESTAMP"]
        vals: list = [review_status]
        if subcategory_id is not self._SENTINEL:
            sets.append("subcategory_id = ?")
            vals.append(subcategory_id)
        if review_reason is not self._SENTINEL:
            sets.append("review_reason = ?")
            vals.append(review_reason)
        vals.append(txn_id)
        self.conn.execute(
            f"UPDATE transactions SET {', '.join(sets)} WHERE id = ?",
            vals,
        )
        self.conn.commit()

    def get_historical_subcategory_counts(
        self,
        household_id: str,
        normalized_description: str,
        exclude_transaction_id: str | None = None,
    ) -> list[dict]:
        """Count past subcategory assignments for the same description.

        Returns a list of dicts with keys: subcategory_id, amount, cnt,
        reviewed_cnt. Only transactions that carry a subcategory and are
        not waiting for review are counted.
        """
        rows = self.conn.execute(
            "SELECT subcategory_id, amount,"
            "  COUNT(*) AS cnt,"
            "  SUM(CASE WHEN review_status = 'Reviewed' THEN 1 ELSE 0 END) AS reviewed_cnt"
            " FROM transactions"
            " WHERE household_id = ?"
            "   AND normalized_description = ?"
            "   AND subcategory_id IS NOT NULL"
            "   AND review_status != 'NeedsReview'"
            "   AND id != ?"
            " GROUP BY subcategory_id, amount",
            (household_id, normalized_description, exclude_transaction_id or ""),
        ).fetchall()
        return [
            {
                "subcategory_id": r["subcategory_id"],
                "amount": r["amount"],
                "cnt": r["cnt"],
                "reviewed_cnt": r["reviewed_cnt"],
            }
            for r in rows
        ]

    # ── Recurring items ─────────────────────────────────────

    _RECURRING_COLS = (
        "id", "household_id", "merchant_name", "expected_amount",
        "is_variable", "frequency", "next_due_date",
        "due_window_days_before", "due_window_days_after",
        "amount_variance_percent", "amount_variance_absolute",
        "deterministic_match_threshold", "due_date_score_weight",
        "amount_score_weight", "recency_score_weight", "score_version",
        "tie_break_policy", "last_observed_at", "is_active", "user_note",
        "agent_note", "created_at", "updated_at",
    )

    _RECURRING_UPDATE_COLS = frozenset(_RECURRING_COLS) - {
        "id", "household_id", "created_at", "updated_at",
    }

    def insert_recurring_item(self, item: RecurringItem) -> RecurringItem:
        """Insert a recurring item after validating its scoring configuration.

        Raises:
            ValidationError: If weights, threshold, windows, variance,
                frequency or tie-break policy are out of bounds.
        """
        from ledgerline.matching.recurring import validate_recurring_item

        validate_recurring_item(item)
        cols = ", ".join(self._RECURRING_COLS)
        ph = ",".join("?" * len(self._RECURRING_COLS))
        self.conn.execute(
            f"INSERT INTO recurring_items ({cols}) VALUES ({ph})",
            tuple(getattr(item, c) for c in self._RECURRING_COLS),
        )
        self.conn.commit()
        return item

    def update_recurring_item(self, item_id: str, **fields) -> RecurringItem | None:
        """Update configuration columns of a recurring item.

        The merged record is validated before anything is written, so a
        rejected update leaves the stored item untouched.
        """
        from ledgerline.matching.recurring import validate_recurring_item

        unknown = set(fields) - self._RECURRING_UPDATE_COLS
        if unknown:
            raise ValueError(f"Unknown columns for update_recurring_item: {unknown}")

        item = self.get_recurring_item(item_id)
        if item is None:
            return None
        for col, val in fields.items():
            setattr(item, col, val)
        validate_recurring_item(item)

        sets = [f"{col} = ?" for col in fields] + ["updated_at = CURRENT_TIMESTAMP"]
        self.conn.execute(
            f"UPDATE recurring_items SET {', '.join(sets)} WHERE id = ?",
            [*fields.values(), item_id],
        )
        self.conn.commit()
        return self.get_recurring_item(item_id)

    def deactivate_recurring_item(self, item_id: str):
        self.conn.execute(
            "UPDATE recurring_items SET is_active = 0,"
            " updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (item_id,),
        )
        self.conn.commit()

    def get_recurring_item(self, item_id: str) -> RecurringItem | None:
        row = self.conn.execute(
            "SELECT * FROM recurring_items WHERE id = ?", (item_id,)
        ).fetchone()
        return self._row_to_recurring_item(row) if row else None

    def get_active_recurring_items(self, household_id: str) -> list[RecurringItem]:
        rows = self.conn.execute(
            "SELECT * FROM recurring_items"
            " WHERE household_id = ? AND is_active = 1"
            " ORDER BY next_due_date, id",
            (household_id,),
        ).fetchall()
        return [self._row_to_recurring_item(r) for r in rows]

    def confirm_recurring_match(
        self,
        txn_id: str,
        item_id: str,
        expected_next_due_date: str,
        new_next_due_date: str,
        observed_at: str,
    ):
        """Advance an item's due date and link the transaction, atomically.

        The due date only moves if it still equals expected_next_due_date.

        Raises:
            ConflictError: If another run already advanced the due date.
        """
        try:
            self.conn.execute("BEGIN")
            cur = self.conn.execute(
                "UPDATE recurring_items"
                " SET next_due_date = ?, last_observed_at = ?,"
                "     updated_at = CURRENT_TIMESTAMP"
                " WHERE id = ? AND next_due_date = ?",
                (new_next_due_date, observed_at, item_id, expected_next_due_date),
            )
            if cur.rowcount == 0:
                raise ConflictError(
                    "recurring_due_date_conflict",
                    f"Recurring item {item_id} no longer has next_due_date "
                    f"{expected_next_due_date}.",
                )
            self.conn.execute(
                "UPDATE transactions SET recurring_item_id = ?,"
                " updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (item_id, txn_id),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    # ── Classification outcomes ─────────────────────────────

    def insert_outcome(self, outcome: ClassificationOutcome) -> ClassificationOutcome:
        """Append an outcome and its stage outputs atomically."""
        try:
            self.conn.execute("BEGIN")
            self.conn.execute(
                "INSERT INTO classification_outcomes"
                " (id, transaction_id, decision, proposed_subcategory_id,"
                "  final_confidence, review_status, decision_reason_code,"
                "  decision_rationale, agent_note_summary, assignment_source,"
                "  created_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                (outcome.id, outcome.transaction_id, outcome.decision.kind,
                 outcome.proposed_subcategory_id, outcome.final_confidence,
                 outcome.review_status, outcome.decision_reason_code,
                 outcome.decision_rationale, outcome.agent_note_summary,
                 outcome.assignment_source, outcome.created_at),
            )
            self.conn.executemany(
                "INSERT INTO classification_stage_outputs"
                " (outcome_id, stage_name, stage_order, proposed_subcategory_id,"
                "  confidence, rationale_code, rationale,"
                "  escalated_to_next_stage, accepted)"
                " VALUES (?,?,?,?,?,?,?,?,?)",
                [
                    (outcome.id, s.stage_name, s.stage_order,
                     s.proposed_subcategory_id, s.confidence,
                     s.rationale_code, s.rationale,
                     int(s.escalated_to_next_stage), int(s.accepted))
                    for s in outcome.stage_outputs
                ],
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        for stage in outcome.stage_outputs:
            stage.outcome_id = outcome.id
        return outcome

    def get_outcomes(self, txn_id: str) -> list[ClassificationOutcome]:
        """All outcomes for a transaction, oldest first."""
        rows = self.conn.execute(
            "SELECT * FROM classification_outcomes WHERE transaction_id = ?"
            " ORDER BY created_at, rowid",
            (txn_id,),
        ).fetchall()
        return [self._load_outcome(r) for r in rows]

    def get_latest_outcome(self, txn_id: str) -> ClassificationOutcome | None:
        row = self.conn.execute(
            "SELECT * FROM classification_outcomes WHERE transaction_id = ?"
            " ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (txn_id,),
        ).fetchone()
        return self._load_outcome(row) if row else None

    def _load_outcome(self, row: sqlite3.Row) -> ClassificationOutcome:
        stage_rows = self.conn.execute(
            "SELECT * FROM classification_stage_outputs WHERE outcome_id = ?"
            " ORDER BY stage_order",
            (row["id"],),
        ).fetchall()
        return ClassificationOutcome(
            id=row["id"],
            transaction_id=row["transaction_id"],
            decision=decision_from_row(row["decision"], row["proposed_subcategory_id"]),
            final_confidence=row["final_confidence"],
            review_status=row["review_status"],
            decision_reason_code=row["decision_reason_code"],
            decision_rationale=row["decision_rationale"],
            agent_note_summary=row["agent_note_summary"],
            assignment_source=row["assignment_source"],
            stage_outputs=[self._row_to_stage_output(s) for s in stage_rows],
            created_at=row["created_at"],
        )

    # ── Reimbursement proposals ─────────────────────────────

    def insert_proposal(self, proposal: ReimbursementProposal) -> ReimbursementProposal:
        """Insert a proposal, marking the proposal it supersedes in the same transaction.

        Raises:
            ConflictError: If the lifecycle ordinal is taken, or the
                superseded proposal was decided or superseded meanwhile.
        """
        try:
            self.conn.execute("BEGIN")
            self.conn.execute(
                "INSERT INTO reimbursement_proposals"
                " (id, incoming_transaction_id, related_transaction_id,"
                "  related_transaction_split_id, proposed_amount,"
                "  lifecycle_group_id, lifecycle_ordinal, status,"
                "  status_reason_code, status_rationale, needs_review,"
                "  proposal_source, provenance_source, provenance_reference,"
                "  provenance_payload_json, supersedes_proposal_id,"
                "  superseded_by_proposal_id, decided_by_user_id,"
                "  decided_at_utc, user_note, agent_note, created_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (proposal.id, proposal.incoming_transaction_id,
                 proposal.related_transaction_id,
                 proposal.related_transaction_split_id,
                 proposal.proposed_amount, proposal.lifecycle_group_id,
                 proposal.lifecycle_ordinal, proposal.status,
                 proposal.status_reason_code, proposal.status_rationale,
                 int(proposal.needs_review), proposal.proposal_source,
                 proposal.provenance_source, proposal.provenance_reference,
                 proposal.provenance_payload_json,
                 proposal.supersedes_proposal_id,
                 proposal.superseded_by_proposal_id,
                 proposal.decided_by_user_id, proposal.decided_at_utc,
                 proposal.user_note, proposal.agent_note, proposal.created_at),
            )
            if proposal.supersedes_proposal_id is not None:
                cur = self.conn.execute(
                    "UPDATE reimbursement_proposals SET superseded_by_proposal_id = ?"
                    " WHERE id = ?"
                    "   AND superseded_by_proposal_id IS NULL"
                    "   AND decided_at_utc IS NULL"
                    "   AND status = ?",
                    (proposal.id, proposal.supersedes_proposal_id, PROPOSAL_PROPOSED),
                )
                if cur.rowcount == 0:
                    raise ConflictError(
                        "reimbursement_supersede_conflict",
                        f"Proposal {proposal.supersedes_proposal_id} was decided or "
                        "superseded before it could be revised.",
                    )
            self.conn.commit()
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            if "lifecycle_group_id" in str(e) or "supersedes_proposal_id" in str(e):
                raise ConflictError(
                    "reimbursement_lifecycle_conflict",
                    "A proposal already occupies this lifecycle slot.",
                ) from e
            raise
        except Exception:
            self.conn.rollback()
            raise
        return proposal

    def get_proposal(self, proposal_id: str) -> ReimbursementProposal | None:
        row = self.conn.execute(
            "SELECT * FROM reimbursement_proposals WHERE id = ?", (proposal_id,)
        ).fetchone()
        return self._row_to_proposal(row) if row else None

    def get_proposals_in_group(self, group_id: str) -> list[ReimbursementProposal]:
        rows = self.conn.execute(
            "SELECT * FROM reimbursement_proposals WHERE lifecycle_group_id = ?"
            " ORDER BY lifecycle_ordinal",
            (group_id,),
        ).fetchall()
        return [self._row_to_proposal(r) for r in rows]

    def get_proposals_for_incoming(self, txn_id: str) -> list[ReimbursementProposal]:
        rows = self.conn.execute(
            "SELECT * FROM reimbursement_proposals WHERE incoming_transaction_id = ?"
            " ORDER BY created_at, rowid",
            (txn_id,),
        ).fetchall()
        return [self._row_to_proposal(r) for r in rows]

    def decide_proposal(
        self,
        proposal_id: str,
        status: str,
        reason_code: str,
        rationale: str,
        decided_by_user_id: str,
        decided_at_utc: str,
        user_note: str | None = None,
        agent_note: str | None = None,
    ) -> bool:
        """Record a decision if the proposal is still undecided and current.

        Returns False when the conditional write matched no row, i.e. the
        proposal was already decided or has been superseded.
        """
        cur = self.conn.execute(
            "UPDATE reimbursement_proposals"
            " SET status = ?, status_reason_code = ?, status_rationale = ?,"
            "     decided_by_user_id = ?, decided_at_utc = ?,"
            "     user_note = COALESCE(?, user_note),"
            "     agent_note = COALESCE(?, agent_note)"
            " WHERE id = ?"
            "   AND decided_at_utc IS NULL"
            "   AND superseded_by_proposal_id IS NULL"
            "   AND status = ?",
            (status, reason_code, rationale, decided_by_user_id,
             decided_at_utc, user_note, agent_note, proposal_id,
             PROPOSAL_PROPOSED),
        )
        self.conn.commit()
        return cur.rowcount == 1

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> EnrichedTransaction:
        return EnrichedTransaction(
            id=row["id"], account_id=row["account_id"],
            household_id=row["household_id"],
            transaction_date=row["transaction_date"],
            amount=row["amount"],
            raw_description=row["raw_description"],
            normalized_description=row["normalized_description"],
            recurring_item_id=row["recurring_item_id"],
            subcategory_id=row["subcategory_id"],
            review_status=row["review_status"],
            review_reason=row["review_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_split(row: sqlite3.Row) -> TransactionSplit:
        return TransactionSplit(
            id=row["id"],
            parent_transaction_id=row["parent_transaction_id"],
            subcategory_id=row["subcategory_id"],
            amount=row["amount"],
            amortization_months=row["amortization_months"],
            notes=row["notes"],
        )

    @staticmethod
    def _row_to_recurring_item(row: sqlite3.Row) -> RecurringItem:
        return RecurringItem(
            id=row["id"], household_id=row["household_id"],
            merchant_name=row["merchant_name"],
            expected_amount=row["expected_amount"],
            is_variable=bool(row["is_variable"]),
            frequency=row["frequency"],
            next_due_date=row["next_due_date"],
            due_window_days_before=row["due_window_days_before"],
            due_window_days_after=row["due_window_days_after"],
            amount_variance_percent=row["amount_variance_percent"],
            amount_variance_absolute=row["amount_variance_absolute"],
            deterministic_match_threshold=row["deterministic_match_threshold"],
            due_date_score_weight=row["due_date_score_weight"],
            amount_score_weight=row["amount_score_weight"],
            recency_score_weight=row["recency_score_weight"],
            score_version=row["score_version"],
            tie_break_policy=row["tie_break_policy"],
            last_observed_at=row["last_observed_at"],
            is_active=bool(row["is_active"]),
            user_note=row["user_note"], agent_note=row["agent_note"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_stage_output(row: sqlite3.Row) -> ClassificationStageOutput:
        return ClassificationStageOutput(
            outcome_id=row["outcome_id"],
            stage_name=row["stage_name"],
            stage_order=row["stage_order"],
            proposed_subcategory_id=row["proposed_subcategory_id"],
            confidence=row["confidence"],
            rationale_code=row["rationale_code"],
            rationale=row["rationale"],
            escalated_to_next_stage=bool(row["escalated_to_next_stage"]),
            accepted=bool(row["accepted"]),
        )

    @staticmethod
    def _row_to_proposal(row: sqlite3.Row) -> ReimbursementProposal:
        return ReimbursementProposal(
            id=row["id"],
            incoming_transaction_id=row["incoming_transaction_id"],
            related_transaction_id=row["related_transaction_id"],
            related_transaction_split_id=row["related_transaction_split_id"],
            proposed_amount=row["proposed_amount"],
            lifecycle_group_id=row["lifecycle_group_id"],
            lifecycle_ordinal=row["lifecycle_ordinal"],
            status=row["status"],
            status_reason_code=row["status_reason_code"],
            status_rationale=row["status_rationale"],
            needs_review=bool(row["needs_review"]),
            proposal_source=row["proposal_source"],
            provenance_source=row["provenance_source"],
            provenance_reference=row["provenance_reference"],
            provenance_payload_json=row["provenance_payload_json"],
            supersedes_proposal_id=row["supersedes_proposal_id"],
            superseded_by_proposal_id=row["superseded_by_proposal_id"],
            decided_by_user_id=row["decided_by_user_id"],
            decided_at_utc=row["decided_at_utc"],
            user_note=row["user_note"], agent_note=row["agent_note"],
            created_at=row["created_at"],
        )


def _validate_splits(txn: EnrichedTransaction) -> None:
    if not txn.splits:
        return
    errors: list[FieldError] = []
    for i, split in enumerate(txn.splits):
        if split.amortization_months < 1:
            errors.append(FieldError(
                f"splits[{i}].amortization_months",
                "amortization_months must be at least 1.",
            ))
    total = sum(s.amount for s in txn.splits)
    if abs(total - txn.amount) > SPLIT_SUM_TOLERANCE:
        errors.append(FieldError(
            "splits",
            f"Split amounts sum to {total:.2f} but the transaction amount is {txn.amount:.2f}.",
        ))
    if errors:
        raise ValidationError(errors)
