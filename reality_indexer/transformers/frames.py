from typing import Dict, Iterable, List, Optional

import pandas as pd
import pandera as pa
from pandera import Check, Column

from reality_indexer.models import AnswerEvent, Proposal, ProposalStatus, QuestionState

HASH_PATTERN = r"^0x[a-f0-9]{64}$"
ADDRESS_PATTERN = r"^0x[a-f0-9]{40}$"

ANSWER_SCHEMA = pa.DataFrameSchema(
    {
        "question_id": Column(str, Check.str_matches(HASH_PATTERN)),
        "block_number": Column(int, Check.ge(0)),
        "log_index": Column(int, Check.ge(0)),
        "user": Column(str, Check.str_matches(ADDRESS_PATTERN)),
        "answer": Column(str, Check.str_matches(HASH_PATTERN)),
        "bond": Column(str, Check.str_matches(r"^[0-9]+$")),
        "history_hash": Column(str, Check.str_matches(HASH_PATTERN)),
        "timestamp": Column("datetime64[ns]"),
        "is_commitment": Column(bool),
    }
)

PROPOSAL_SCHEMA = pa.DataFrameSchema(
    {
        "question_id": Column(str, Check.str_matches(HASH_PATTERN)),
        "proposal_id": Column(str, nullable=True),
        "tx_count": Column(float, Check.ge(0), nullable=True),
        "created_block": Column(int, Check.ge(0)),
        "created_at": Column("datetime64[ns]", nullable=True),
        "status": Column(str),
        "executable": Column(bool),
        "reason": Column(str),
        "bond": Column(str, nullable=True),
        "best_answer": Column(str, nullable=True),
    }
)


def answers_frame(answers: Iterable[AnswerEvent]) -> pd.DataFrame:
    rows = [
        {
            "question_id": a.question_id,
            "block_number": a.block_number,
            "log_index": a.log_index,
            "user": a.user.lower(),
            "answer": a.answer,
            "bond": str(a.bond),
            "history_hash": a.history_hash,
            "timestamp": a.timestamp,
            "is_commitment": a.is_commitment,
        }
        for a in answers
    ]
    if not rows:
        return pd.DataFrame(columns=list(ANSWER_SCHEMA.columns))
    df = pd.DataFrame(rows)
    df["timestamp"] = pd.to_datetime(df["timestamp"], unit="s").astype("datetime64[ns]")
    return ANSWER_SCHEMA.validate(df)


def proposals_frame(
    proposals: Iterable[Proposal],
    states: Dict[str, QuestionState],
    statuses: Dict[str, ProposalStatus],
) -> pd.DataFrame:
    rows: List[Dict[str, Optional[object]]] = []
    for proposal in proposals:
        state = states.get(proposal.question_id)
        status = statuses[proposal.question_id]
        rows.append(
            {
                "question_id": proposal.question_id,
                "proposal_id": proposal.proposal_id,
                "tx_count": float(len(proposal.tx_hashes)) if proposal.tx_hashes is not None else None,
                "created_block": proposal.created_block,
                "created_at": proposal.created_timestamp,
                "status": status.label.value,
                "executable": status.executable,
                "reason": status.reason,
                "bond": str(state.bond) if state else None,
                "best_answer": state.best_answer if state else None,
            }
        )
    if not rows:
        return pd.DataFrame(columns=list(PROPOSAL_SCHEMA.columns))
    df = pd.DataFrame(rows)
    df["created_at"] = pd.to_datetime(df["created_at"], unit="s").astype("datetime64[ns]")
    df["tx_count"] = df["tx_count"].astype(float)
    return PROPOSAL_SCHEMA.validate(df)
