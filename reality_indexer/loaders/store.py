"""
SQLite persistence for indexed proposals, question states, answers, bundles
and sync settings.

Amounts are stored as decimal text since bonds routinely exceed SQLite's
64-bit INTEGER range.
"""
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional

from reality_indexer.models import (
    AnswerEvent,
    ModuleConfig,
    Proposal,
    QuestionState,
    SyncWatermark,
    TxBundle,
)

logger = logging.getLogger(__name__)

WATERMARK_KEY = "sync_watermark"
MODULE_CONFIG_KEY = "module_config"

SCHEMA = """
CREATE TABLE IF NOT EXISTS proposals (
    question_id TEXT PRIMARY KEY,
    proposal_id TEXT,
    tx_hashes TEXT,
    question_text TEXT,
    created_block INTEGER NOT NULL,
    created_tx_hash TEXT NOT NULL,
    created_timestamp INTEGER
);
CREATE INDEX IF NOT EXISTS idx_proposals_proposal_id ON proposals (proposal_id);
CREATE INDEX IF NOT EXISTS idx_proposals_created_block ON proposals (created_block);

CREATE TABLE IF NOT EXISTS question_states (
    question_id TEXT PRIMARY KEY,
    best_answer TEXT NOT NULL,
    bond TEXT NOT NULL,
    min_bond TEXT NOT NULL,
    finalize_ts INTEGER NOT NULL,
    is_finalized INTEGER NOT NULL,
    final_answer TEXT,
    is_pending_arbitration INTEGER NOT NULL,
    history_hash TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    arbitrator TEXT NOT NULL,
    opening_ts INTEGER NOT NULL,
    timeout INTEGER NOT NULL,
    bounty TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS answers (
    id TEXT PRIMARY KEY,
    question_id TEXT NOT NULL,
    answer TEXT NOT NULL,
    user TEXT NOT NULL,
    bond TEXT NOT NULL,
    history_hash TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    block_number INTEGER NOT NULL,
    transaction_index INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    is_commitment INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_answers_question_id ON answers (question_id);

CREATE TABLE IF NOT EXISTS tx_bundles (
    proposal_id TEXT PRIMARY KEY,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
"""


def _proposal_from_row(row: sqlite3.Row) -> Proposal:
    tx_hashes = row["tx_hashes"]
    return Proposal(
        question_id=row["question_id"],
        created_block=row["created_block"],
        created_tx_hash=row["created_tx_hash"],
        proposal_id=row["proposal_id"],
        tx_hashes=json.loads(tx_hashes) if tx_hashes is not None else None,
        question_text=row["question_text"],
        created_timestamp=row["created_timestamp"],
    )


def _state_from_row(row: sqlite3.Row) -> QuestionState:
    return QuestionState(
        question_id=row["question_id"],
        best_answer=row["best_answer"],
        bond=int(row["bond"]),
        min_bond=int(row["min_bond"]),
        finalize_ts=row["finalize_ts"],
        is_finalized=bool(row["is_finalized"]),
        final_answer=row["final_answer"],
        is_pending_arbitration=bool(row["is_pending_arbitration"]),
        history_hash=row["history_hash"],
        content_hash=row["content_hash"],
        arbitrator=row["arbitrator"],
        opening_ts=row["opening_ts"],
        timeout=row["timeout"],
        bounty=int(row["bounty"]),
    )


def _answer_from_row(row: sqlite3.Row) -> AnswerEvent:
    return AnswerEvent(
        question_id=row["question_id"],
        answer=row["answer"],
        user=row["user"],
        bond=int(row["bond"]),
        history_hash=row["history_hash"],
        timestamp=row["timestamp"],
        block_number=row["block_number"],
        log_index=row["log_index"],
        transaction_index=row["transaction_index"],
        is_commitment=bool(row["is_commitment"]),
    )


class Store:
    def __init__(self, path: str = ":memory:") -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._lock = threading.RLock()
        self._depth = 0
        self.conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        with self._lock:
            self.conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group writes atomically; nested blocks join the outermost one."""
        with self._lock:
            if self._depth == 0:
                self.conn.execute("BEGIN")
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self.conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if self._depth == 0:
                self.conn.execute("COMMIT")

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()

    # ------------------------------------------------------------------
    # proposals
    # ------------------------------------------------------------------

    def put_proposal(self, proposal: Proposal) -> bool:
        """Insert if absent. Returns True when the proposal was new."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO proposals (
                    question_id, proposal_id, tx_hashes, question_text,
                    created_block, created_tx_hash, created_timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    proposal.question_id,
                    proposal.proposal_id,
                    json.dumps(proposal.tx_hashes) if proposal.tx_hashes is not None else None,
                    proposal.question_text,
                    proposal.created_block,
                    proposal.created_tx_hash,
                    proposal.created_timestamp,
                ),
            )
            return cursor.rowcount > 0

    def has_proposal(self, question_id: str) -> bool:
        return bool(self._query("SELECT 1 FROM proposals WHERE question_id = ?", [question_id]))

    def get_proposal(self, question_id: str) -> Optional[Proposal]:
        rows = self._query("SELECT * FROM proposals WHERE question_id = ?", [question_id])
        return _proposal_from_row(rows[0]) if rows else None

    def get_proposal_by_proposal_id(self, proposal_id: str) -> Optional[Proposal]:
        rows = self._query(
            "SELECT * FROM proposals WHERE proposal_id = ? ORDER BY created_block LIMIT 1",
            [proposal_id],
        )
        return _proposal_from_row(rows[0]) if rows else None

    def list_proposals(self, from_block: Optional[int] = None) -> List[Proposal]:
        if from_block is None:
            rows = self._query("SELECT * FROM proposals ORDER BY created_block, question_id")
        else:
            rows = self._query(
                "SELECT * FROM proposals WHERE created_block >= ? ORDER BY created_block, question_id",
                [from_block],
            )
        return [_proposal_from_row(row) for row in rows]

    def question_ids(self) -> List[str]:
        return [row["question_id"] for row in self._query("SELECT question_id FROM proposals")]

    # ------------------------------------------------------------------
    # question states
    # ------------------------------------------------------------------

    def put_question_state(self, state: QuestionState) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO question_states (
                    question_id, best_answer, bond, min_bond, finalize_ts, is_finalized,
                    final_answer, is_pending_arbitration, history_hash, content_hash,
                    arbitrator, opening_ts, timeout, bounty
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    state.question_id,
                    state.best_answer,
                    str(state.bond),
                    str(state.min_bond),
                    state.finalize_ts,
                    int(state.is_finalized),
                    state.final_answer,
                    int(state.is_pending_arbitration),
                    state.history_hash,
                    state.content_hash,
                    state.arbitrator,
                    state.opening_ts,
                    state.timeout,
                    str(state.bounty),
                ),
            )

    def get_question_state(self, question_id: str) -> Optional[QuestionState]:
        rows = self._query("SELECT * FROM question_states WHERE question_id = ?", [question_id])
        return _state_from_row(rows[0]) if rows else None

    def list_question_states(self) -> List[QuestionState]:
        return [_state_from_row(row) for row in self._query("SELECT * FROM question_states")]

    # ------------------------------------------------------------------
    # answers
    # ------------------------------------------------------------------

    def upsert_answers(self, answers: Iterable[AnswerEvent]) -> int:
        count = 0
        with self.transaction() as conn:
            for answer in answers:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO answers (
                        id, question_id, answer, user, bond, history_hash, timestamp,
                        block_number, transaction_index, log_index, is_commitment
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        answer.key,
                        answer.question_id,
                        answer.answer,
                        answer.user,
                        str(answer.bond),
                        answer.history_hash,
                        answer.timestamp,
                        answer.block_number,
                        answer.transaction_index,
                        answer.log_index,
                        int(answer.is_commitment),
                    ),
                )
                count += 1
        return count

    def get_answers(self, question_id: str) -> List[AnswerEvent]:
        rows = self._query(
            "SELECT * FROM answers WHERE question_id = ? ORDER BY block_number, log_index",
            [question_id],
        )
        return [_answer_from_row(row) for row in rows]

    def answered_question_ids(self, user: str) -> List[str]:
        rows = self._query(
            "SELECT DISTINCT question_id FROM answers WHERE user = ? ORDER BY question_id",
            [user.lower()],
        )
        return [row["question_id"] for row in rows]

    def count_answers(self) -> int:
        return self._query("SELECT COUNT(*) AS n FROM answers")[0]["n"]

    # ------------------------------------------------------------------
    # bundles
    # ------------------------------------------------------------------

    def put_bundle(self, bundle: TxBundle) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO tx_bundles (proposal_id, payload) VALUES (?, ?)",
                (bundle.proposal_id, json.dumps(bundle.to_dict())),
            )

    def get_bundle(self, proposal_id: str) -> Optional[TxBundle]:
        rows = self._query("SELECT payload FROM tx_bundles WHERE proposal_id = ?", [proposal_id])
        return TxBundle.from_dict(json.loads(rows[0]["payload"])) if rows else None

    # ------------------------------------------------------------------
    # settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str, default: Any = None) -> Any:
        rows = self._query("SELECT value FROM settings WHERE key = ?", [key])
        return json.loads(rows[0]["value"]) if rows else default

    def set_setting(self, key: str, value: Any) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (key, json.dumps(value)),
            )

    def get_watermark(self) -> Optional[SyncWatermark]:
        data = self.get_setting(WATERMARK_KEY)
        if not data:
            return None
        return SyncWatermark(
            last_processed_block=int(data["last_processed_block"]),
            earliest_indexed_block=int(data["earliest_indexed_block"]),
            answer_cache_ready=bool(data.get("answer_cache_ready", False)),
        )

    def set_watermark(self, watermark: SyncWatermark) -> None:
        self.set_setting(
            WATERMARK_KEY,
            {
                "last_processed_block": watermark.last_processed_block,
                "earliest_indexed_block": watermark.earliest_indexed_block,
                "answer_cache_ready": watermark.answer_cache_ready,
            },
        )

    def get_module_config(self) -> Optional[ModuleConfig]:
        data = self.get_setting(MODULE_CONFIG_KEY)
        return ModuleConfig.from_dict(data) if data else None

    def set_module_config(self, config: ModuleConfig) -> None:
        self.set_setting(MODULE_CONFIG_KEY, config.to_dict())

    # ------------------------------------------------------------------
    # reset
    # ------------------------------------------------------------------

    def generation(self) -> int:
        rows = self._query("SELECT value FROM meta WHERE key = 'generation'")
        return rows[0]["value"] if rows else 0

    def clear_all(self) -> None:
        """Drop every cached record and bump the store generation."""
        with self.transaction() as conn:
            for table in ("proposals", "question_states", "answers", "tx_bundles", "settings"):
                conn.execute(f"DELETE FROM {table}")
            conn.execute(
                """
                INSERT INTO meta (key, value) VALUES ('generation', 1)
                ON CONFLICT(key) DO UPDATE SET value = value + 1
                """
            )
        logger.info("Cleared indexed data (generation %d)", self.generation())
