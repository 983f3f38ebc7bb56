import logging
import time
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from reality_indexer.contracts import (
    ANSWER_INVALID,
    ANSWER_NO,
    ANSWER_YES,
    MODULE_ABI,
    ORACLE_ABI,
)
from reality_indexer.errors import CallReverted, IndexerError, StateLoadFailed
from reality_indexer.extractors.rpc import EthRpc
from reality_indexer.handlers.dlq import DeadLetterQueue
from reality_indexer.loaders.store import Store
from reality_indexer.models import (
    ModuleConfig,
    Proposal,
    ProposalStatus,
    QuestionState,
    StatusLabel,
)

logger = logging.getLogger(__name__)

WEI_PER_ETH = 10**18
MIN_SUGGESTED_BOND = 10**16  # 0.01 ETH

# Fields whose change is worth notifying a caller about
STATE_FIELDS = (
    "best_answer",
    "bond",
    "finalize_ts",
    "is_finalized",
    "final_answer",
    "is_pending_arbitration",
    "history_hash",
    "min_bond",
)


def load_module_config(rpc: EthRpc, module_address: str) -> ModuleConfig:
    def read(function_name: str):
        data = rpc.call(module_address, MODULE_ABI.encode_call(function_name))
        return MODULE_ABI.decode_output(function_name, data)[0]

    return ModuleConfig(
        question_cooldown=int(read("questionCooldown")),
        answer_expiration=int(read("answerExpiration")),
        minimum_bond=int(read("minimumBond")),
        avatar=read("avatar"),
        target=read("target"),
        oracle=read("oracle"),
    )


class QuestionStateLoader:
    def __init__(self, rpc: EthRpc, store: Store, oracle_address: str) -> None:
        self.rpc = rpc
        self.store = store
        self.oracle_address = oracle_address

    def _read(self, function_name: str, question_id: str) -> Tuple:
        data = self.rpc.call(self.oracle_address, ORACLE_ABI.encode_call(function_name, [question_id]))
        return ORACLE_ABI.decode_output(function_name, data)

    def fetch(self, question_id: str) -> QuestionState:
        """Read live oracle state without persisting it."""
        try:
            (
                content_hash,
                arbitrator,
                opening_ts,
                timeout,
                finalize_ts,
                is_pending_arbitration,
                bounty,
                best_answer,
                history_hash,
                bond,
                min_bond,
            ) = self._read("questions", question_id)
            is_finalized = bool(self._read("isFinalized", question_id)[0])
        except IndexerError as exc:
            raise StateLoadFailed(question_id, exc) from exc

        final_answer = None
        if is_finalized:
            try:
                final_answer = self._read("getFinalAnswer", question_id)[0]
            except CallReverted:
                logger.debug("getFinalAnswer reverted for %s", question_id)
            except IndexerError as exc:
                raise StateLoadFailed(question_id, exc) from exc

        return QuestionState(
            question_id=question_id,
            best_answer=best_answer,
            bond=int(bond),
            min_bond=int(min_bond),
            finalize_ts=int(finalize_ts),
            is_finalized=is_finalized,
            final_answer=final_answer,
            is_pending_arbitration=bool(is_pending_arbitration),
            history_hash=history_hash,
            content_hash=content_hash,
            arbitrator=arbitrator,
            opening_ts=int(opening_ts),
            timeout=int(timeout),
            bounty=int(bounty),
        )

    def load(self, question_id: str) -> QuestionState:
        state = self.fetch(question_id)
        self.store.put_question_state(state)
        return state

    def fetch_many(
        self, question_ids: Iterable[str], dlq: Optional[DeadLetterQueue] = None
    ) -> Dict[str, QuestionState]:
        """Fetch several states; a failing question is reported and skipped."""
        states: Dict[str, QuestionState] = {}
        for question_id in question_ids:
            try:
                states[question_id] = self.fetch(question_id)
            except StateLoadFailed as exc:
                logger.warning("Skipping question %s: %s", question_id, exc)
                if dlq is not None:
                    dlq.send({"question_id": question_id}, exc, {"stage": "state_load"})
        return states

    def load_many(
        self, question_ids: Iterable[str], dlq: Optional[DeadLetterQueue] = None
    ) -> Dict[str, QuestionState]:
        states = self.fetch_many(question_ids, dlq)
        with self.store.transaction():
            for state in states.values():
                self.store.put_question_state(state)
        return states


def state_changed(old: Optional[QuestionState], new: QuestionState) -> bool:
    if old is None:
        return True
    return any(getattr(old, name) != getattr(new, name) for name in STATE_FIELDS)


# =============================================================================
# STATUS
# =============================================================================

def format_duration(seconds: int) -> str:
    seconds = max(0, int(seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m"
    return f"{secs}s"


def format_answer(answer: Optional[str]) -> str:
    if answer is None:
        return "unresolved"
    value = answer.lower()
    if value == ANSWER_YES:
        return "Yes"
    if value == ANSWER_NO:
        return "No"
    if value == ANSWER_INVALID:
        return "Invalid"
    return answer


def format_wei(amount: int) -> str:
    eth = Decimal(amount) / Decimal(WEI_PER_ETH)
    text = format(eth.normalize(), "f")
    return f"{text} ETH"


def suggested_bond(current_bond: int, minimum_bond: int = 0) -> int:
    """Smallest bond worth proposing to outbid ``current_bond``.

    Falls back to ``MIN_SUGGESTED_BOND`` only when there is neither a bond to
    double nor a module minimum.
    """
    suggested = max(current_bond * 2, minimum_bond)
    return suggested if suggested > 0 else MIN_SUGGESTED_BOND


def derive_status(
    state: Optional[QuestionState],
    config: ModuleConfig,
    now: Optional[int] = None,
) -> ProposalStatus:
    """
    Classify a proposal from its question state and the module parameters.

    The checks run in a fixed order: arbitration masks everything finalize
    related, and nothing that is not finalized on-chain is ever executable.
    """
    if now is None:
        now = int(time.time())

    if state is None:
        return ProposalStatus(StatusLabel.UNKNOWN, False, "Question state not loaded")

    if state.is_pending_arbitration:
        return ProposalStatus(StatusLabel.ARBITRATION, False, "Pending arbitration")

    if not state.is_finalized:
        if not state.has_answer:
            return ProposalStatus(StatusLabel.PENDING, False, "No answers yet")
        if state.finalize_ts > now:
            return ProposalStatus(
                StatusLabel.PENDING,
                False,
                f"Finalizes in {format_duration(state.finalize_ts - now)}",
            )
        return ProposalStatus(StatusLabel.PENDING, False, "Awaiting finalization call")

    answer = state.final_answer if state.final_answer is not None else state.best_answer
    if answer.lower() != ANSWER_YES:
        return ProposalStatus(
            StatusLabel.FINALIZED, False, f"Resolved {format_answer(answer)}"
        )

    if state.bond < config.minimum_bond:
        return ProposalStatus(
            StatusLabel.FINALIZED,
            False,
            f"Bond {format_wei(state.bond)} below minimum {format_wei(config.minimum_bond)}",
        )

    cooldown_ends = state.finalize_ts + config.question_cooldown
    if cooldown_ends > now:
        return ProposalStatus(
            StatusLabel.FINALIZED,
            False,
            f"Cooldown ends in {format_duration(cooldown_ends - now)}",
        )

    if config.answer_expiration > 0 and now > state.finalize_ts + config.answer_expiration:
        return ProposalStatus(StatusLabel.FINALIZED, False, "Answer expired")

    return ProposalStatus(StatusLabel.EXECUTABLE, True, "Ready to execute")


def filter_proposals(
    proposals: Iterable[Proposal],
    states: Dict[str, QuestionState],
    config: ModuleConfig,
    search: str = "",
    status: Optional[str] = None,
    now: Optional[int] = None,
) -> List[Proposal]:
    needle = search.strip().lower()
    selected = []
    for proposal in proposals:
        if needle:
            haystack = " ".join(
                filter(None, [proposal.question_id, proposal.proposal_id, proposal.question_text])
            ).lower()
            if needle not in haystack:
                continue
        if status:
            label = derive_status(states.get(proposal.question_id), config, now).label
            if label.value != status:
                continue
        selected.append(proposal)
    return selected
