import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from reality_indexer.errors import IndexerError
from reality_indexer.loaders.store import Store
from reality_indexer.models import AnswerEvent, QuestionState

logger = logging.getLogger(__name__)

HistoryLoader = Callable[[str], List[AnswerEvent]]


@dataclass
class ClaimEntry:
    index: int
    answer: str
    bond: int
    timestamp: int
    history_hash: str
    user: str
    claimable: bool
    reason: str
    is_last_answer: bool


@dataclass
class ClaimArrays:
    history_hashes: List[str] = field(default_factory=list)
    addrs: List[str] = field(default_factory=list)
    bonds: List[int] = field(default_factory=list)
    answers: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.history_hashes)


@dataclass
class QuestionClaim:
    question_id: str
    history: List[AnswerEvent]
    entries: List[ClaimEntry] = field(default_factory=list)
    proposal_id: Optional[str] = None
    state: Optional[QuestionState] = None

    @property
    def total_claimable(self) -> int:
        return estimate_claimable_amount(self.entries)


@dataclass
class MultiClaimArrays:
    question_ids: List[str] = field(default_factory=list)
    lengths: List[int] = field(default_factory=list)
    history_hashes: List[str] = field(default_factory=list)
    addrs: List[str] = field(default_factory=list)
    bonds: List[int] = field(default_factory=list)
    answers: List[str] = field(default_factory=list)


def finalization_reached(state: Optional[QuestionState], now: int) -> bool:
    if state is None:
        return False
    return state.is_finalized or (state.finalize_ts > 0 and now >= state.finalize_ts)


def compute_claimable(
    history: Sequence[AnswerEvent],
    state: Optional[QuestionState],
    user: str,
    now: Optional[int] = None,
) -> List[ClaimEntry]:
    """
    Classify each of ``user``'s answers in the question history.

    Outbid and leading answers both become claimable once finalization is
    reached. While arbitration is pending nothing is claimable.
    """
    if not history or not user:
        return []
    if now is None:
        now = int(time.time())

    ordered = sorted(history, key=lambda a: a.sort_key)
    user_lower = user.lower()
    pending_arbitration = bool(state and state.is_pending_arbitration)
    ready = finalization_reached(state, now)
    finalize_ts = state.finalize_ts if state else 0

    entries = []
    for i, entry in enumerate(ordered):
        if entry.user.lower() != user_lower:
            continue
        is_last = i == len(ordered) - 1

        claimable = False
        if pending_arbitration:
            reason = "Pending arbitration, cannot claim yet"
        elif not is_last:
            claimable = ready
            reason = "Outbid, claimable (finalized)" if ready else "Outbid, waiting for finalization"
        elif ready:
            claimable = True
            reason = "Final answer, claimable"
        elif finalize_ts > 0:
            reason = f"Final answer, finalizes at {finalize_ts}"
        else:
            reason = "Final answer, not yet finalizable"

        entries.append(
            ClaimEntry(
                index=i,
                answer=entry.answer,
                bond=entry.bond,
                timestamp=entry.timestamp,
                history_hash=entry.history_hash,
                user=entry.user,
                claimable=claimable,
                reason=reason,
                is_last_answer=is_last,
            )
        )
    return entries


def estimate_claimable_amount(entries: Sequence[ClaimEntry]) -> int:
    return sum(entry.bond for entry in entries if entry.claimable)


def build_claim_arrays(history: Sequence[AnswerEvent]) -> ClaimArrays:
    """Parallel ``claimWinnings`` arrays, newest answer first."""
    arrays = ClaimArrays()
    for entry in reversed(list(history)):
        arrays.history_hashes.append(entry.history_hash)
        arrays.addrs.append(entry.user)
        arrays.bonds.append(entry.bond)
        arrays.answers.append(entry.answer)
    return arrays


def build_multi_claim_arrays(claims: Sequence[QuestionClaim]) -> MultiClaimArrays:
    multi = MultiClaimArrays()
    for claim in claims:
        arrays = build_claim_arrays(claim.history)
        multi.question_ids.append(claim.question_id)
        multi.lengths.append(len(arrays))
        multi.history_hashes.extend(arrays.history_hashes)
        multi.addrs.extend(arrays.addrs)
        multi.bonds.extend(arrays.bonds)
        multi.answers.extend(arrays.answers)
    return multi


def scan_claimable_bonds(
    store: Store,
    user: str,
    now: Optional[int] = None,
    history_loader: Optional[HistoryLoader] = None,
) -> List[QuestionClaim]:
    """Find every cached question where ``user`` has bonds ready to claim."""
    if now is None:
        now = int(time.time())
    load_history = history_loader or store.get_answers

    claims = []
    for proposal in store.list_proposals():
        state = store.get_question_state(proposal.question_id)
        if state is None:
            continue
        if not finalization_reached(state, now) and not state.is_pending_arbitration:
            continue
        try:
            history = load_history(proposal.question_id)
        except IndexerError as exc:
            logger.warning("Claim scan skipped %s: %s", proposal.question_id, exc)
            continue
        if not any(a.user.lower() == user.lower() for a in history):
            continue

        entries = [e for e in compute_claimable(history, state, user, now) if e.claimable]
        if entries:
            claims.append(
                QuestionClaim(
                    question_id=proposal.question_id,
                    history=sorted(history, key=lambda a: a.sort_key),
                    entries=entries,
                    proposal_id=proposal.proposal_id,
                    state=state,
                )
            )
    return claims
