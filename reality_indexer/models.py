from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

ZERO_HASH = "0x" + "00" * 32


# =============================================================================
# INDEXED RECORDS
# =============================================================================

@dataclass
class Proposal:
    """A module proposal keyed by its Reality.eth question id.

    ``None`` in an optional field means the value could not be recovered;
    an empty string or list means it was recovered and is empty.
    """

    question_id: str
    created_block: int
    created_tx_hash: str
    proposal_id: Optional[str] = None
    tx_hashes: Optional[List[str]] = None
    question_text: Optional[str] = None
    created_timestamp: Optional[int] = None

    @property
    def is_enriched(self) -> bool:
        return self.proposal_id is not None and self.tx_hashes is not None


@dataclass
class QuestionState:
    question_id: str
    best_answer: str = ZERO_HASH
    bond: int = 0
    min_bond: int = 0
    finalize_ts: int = 0
    is_finalized: bool = False
    final_answer: Optional[str] = None
    is_pending_arbitration: bool = False
    history_hash: str = ZERO_HASH
    content_hash: str = ZERO_HASH
    arbitrator: str = ""
    opening_ts: int = 0
    timeout: int = 0
    bounty: int = 0

    @property
    def has_answer(self) -> bool:
        return self.finalize_ts > 0 and not (self.bond == 0 and self.best_answer == ZERO_HASH)

    @property
    def is_active(self) -> bool:
        """Still worth re-fetching during incremental sync."""
        return not self.is_finalized or self.is_pending_arbitration


@dataclass
class AnswerEvent:
    question_id: str
    answer: str
    user: str
    bond: int
    history_hash: str
    timestamp: int
    block_number: int
    log_index: int
    transaction_index: int = 0
    is_commitment: bool = False

    @property
    def key(self) -> str:
        return f"{self.question_id}:{self.block_number}:{self.transaction_index}:{self.log_index}"

    @property
    def sort_key(self):
        return (self.block_number, self.log_index)


@dataclass
class SyncWatermark:
    last_processed_block: int
    earliest_indexed_block: int
    answer_cache_ready: bool = False

    def covers(self, block_number: int) -> bool:
        return self.earliest_indexed_block <= block_number <= self.last_processed_block

    def widened(
        self,
        last_processed_block: Optional[int] = None,
        earliest_indexed_block: Optional[int] = None,
        answer_cache_ready: Optional[bool] = None,
    ) -> "SyncWatermark":
        last = self.last_processed_block
        if last_processed_block is not None:
            last = max(last, last_processed_block)
        earliest = self.earliest_indexed_block
        if earliest_indexed_block is not None:
            earliest = min(earliest, earliest_indexed_block)
        ready = self.answer_cache_ready if answer_cache_ready is None else answer_cache_ready
        return SyncWatermark(last, earliest, ready)


@dataclass
class BundleTransaction:
    to: str
    value: int = 0
    data: str = "0x"
    operation: int = 0
    nonce: int = 0


@dataclass
class TxBundle:
    proposal_id: str
    transactions: List[BundleTransaction] = field(default_factory=list)
    tx_hashes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TxBundle":
        return cls(
            proposal_id=data["proposal_id"],
            transactions=[BundleTransaction(**tx) for tx in data.get("transactions", [])],
            tx_hashes=list(data.get("tx_hashes", [])),
        )


# =============================================================================
# MODULE CONFIG / DERIVED VIEWS
# =============================================================================

@dataclass
class ModuleConfig:
    question_cooldown: int = 0
    answer_expiration: int = 0
    minimum_bond: int = 0
    avatar: str = ""
    target: str = ""
    oracle: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["minimum_bond"] = str(self.minimum_bond)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModuleConfig":
        return cls(
            question_cooldown=int(data.get("question_cooldown", 0)),
            answer_expiration=int(data.get("answer_expiration", 0)),
            minimum_bond=int(data.get("minimum_bond", 0)),
            avatar=data.get("avatar", ""),
            target=data.get("target", ""),
            oracle=data.get("oracle", ""),
        )


class StatusLabel(str, Enum):
    UNKNOWN = "unknown"
    ARBITRATION = "arbitration"
    PENDING = "pending"
    FINALIZED = "finalized"
    EXECUTABLE = "executable"


@dataclass(frozen=True)
class ProposalStatus:
    label: StatusLabel
    executable: bool
    reason: str
