import pytest

from reality_indexer.contracts import ANSWER_INVALID, ANSWER_NO, ANSWER_YES
from reality_indexer.errors import StateLoadFailed
from reality_indexer.handlers.dlq import DeadLetterQueue
from reality_indexer.models import ModuleConfig, Proposal, QuestionState, StatusLabel, ZERO_HASH
from reality_indexer.oracle.state import (
    QuestionStateLoader,
    derive_status,
    filter_proposals,
    format_answer,
    format_duration,
    format_wei,
    load_module_config,
    state_changed,
    suggested_bond,
)

from conftest import MODULE, ORACLE, qid

NOW = 1_800_000_000
CONFIG = ModuleConfig(question_cooldown=3600, answer_expiration=7 * 86400, minimum_bond=10**17)


def finalized_yes(**overrides):
    values = dict(
        best_answer=ANSWER_YES,
        final_answer=ANSWER_YES,
        bond=10**18,
        finalize_ts=NOW - 2 * 3600,
        is_finalized=True,
    )
    values.update(overrides)
    return QuestionState(qid(1), **values)


class TestDeriveStatus:
    def test_unknown_without_state(self):
        status = derive_status(None, CONFIG, NOW)
        assert status.label == StatusLabel.UNKNOWN
        assert not status.executable

    def test_arbitration_masks_finalize_reasoning(self):
        status = derive_status(finalized_yes(is_pending_arbitration=True), CONFIG, NOW)
        assert status.label == StatusLabel.ARBITRATION
        assert not status.executable

    def test_no_answers_yet(self):
        status = derive_status(QuestionState(qid(1)), CONFIG, NOW)
        assert status.label == StatusLabel.PENDING
        assert status.reason == "No answers yet"

    def test_finalizes_in_future(self):
        state = QuestionState(qid(1), best_answer=ANSWER_YES, bond=10**18, finalize_ts=NOW + 5400)
        status = derive_status(state, CONFIG, NOW)
        assert status.label == StatusLabel.PENDING
        assert status.reason == "Finalizes in 1h 30m"

    def test_awaiting_finalization_call(self):
        state = QuestionState(qid(1), best_answer=ANSWER_YES, bond=10**18, finalize_ts=NOW - 10)
        status = derive_status(state, CONFIG, NOW)
        assert status.label == StatusLabel.PENDING
        assert status.reason == "Awaiting finalization call"

    def test_answered_no_with_bond_is_not_no_answers(self):
        state = QuestionState(qid(1), best_answer=ANSWER_NO, bond=10**17, finalize_ts=NOW + 60)
        assert derive_status(state, CONFIG, NOW).reason.startswith("Finalizes in")

    @pytest.mark.parametrize("answer, label", [(ANSWER_NO, "No"), (ANSWER_INVALID, "Invalid")])
    def test_finalized_not_yes(self, answer, label):
        status = derive_status(finalized_yes(best_answer=answer, final_answer=answer), CONFIG, NOW)
        assert status.label == StatusLabel.FINALIZED
        assert not status.executable
        assert label in status.reason

    def test_bond_below_minimum(self):
        status = derive_status(finalized_yes(bond=10**16), CONFIG, NOW)
        assert status.label == StatusLabel.FINALIZED
        assert "below minimum" in status.reason

    def test_within_cooldown(self):
        status = derive_status(finalized_yes(finalize_ts=NOW - 600), CONFIG, NOW)
        assert status.label == StatusLabel.FINALIZED
        assert status.reason == "Cooldown ends in 50m"

    def test_expired(self):
        status = derive_status(finalized_yes(finalize_ts=NOW - 8 * 86400), CONFIG, NOW)
        assert status.label == StatusLabel.FINALIZED
        assert status.reason == "Answer expired"

    def test_zero_expiration_never_expires(self):
        config = ModuleConfig(question_cooldown=3600, answer_expiration=0, minimum_bond=0)
        status = derive_status(finalized_yes(finalize_ts=NOW - 400 * 86400), config, NOW)
        assert status.label == StatusLabel.EXECUTABLE

    def test_executable(self):
        status = derive_status(finalized_yes(), CONFIG, NOW)
        assert status.label == StatusLabel.EXECUTABLE
        assert status.executable

    def test_pure_and_never_executable_when_not_finalized(self):
        states = [
            QuestionState(qid(1), best_answer=ANSWER_YES, bond=b, finalize_ts=ts)
            for b in (0, 10**16, 10**18)
            for ts in (0, NOW - 10**6, NOW + 10)
        ]
        for state in states:
            first = derive_status(state, CONFIG, NOW)
            assert derive_status(state, CONFIG, NOW) == first
            assert not first.executable


class TestFormatting:
    def test_format_duration(self):
        assert format_duration(45) == "45s"
        assert format_duration(125) == "2m"
        assert format_duration(3 * 86400 + 7200) == "3d 2h"
        assert format_duration(-5) == "0s"

    def test_format_answer(self):
        assert format_answer(ANSWER_YES) == "Yes"
        assert format_answer(ANSWER_NO) == "No"
        assert format_answer(None) == "unresolved"
        assert format_answer("0x" + "00" * 31 + "07") == "0x" + "00" * 31 + "07"

    def test_format_wei(self):
        assert format_wei(10**18) == "1 ETH"
        assert format_wei(15 * 10**16) == "0.15 ETH"
        assert format_wei(0) == "0 ETH"

    def test_suggested_bond(self):
        assert suggested_bond(0) == 10**16
        assert suggested_bond(10**18) == 2 * 10**18
        assert suggested_bond(10**16, minimum_bond=10**18) == 10**18

    def test_suggested_bond_floor_only_without_bond_or_minimum(self):
        assert suggested_bond(10**15) == 2 * 10**15
        assert suggested_bond(0, minimum_bond=10**15) == 10**15


class TestStateChanged:
    def test_detects_tracked_fields_only(self):
        old = QuestionState(qid(1), bond=1)
        assert not state_changed(old, QuestionState(qid(1), bond=1, bounty=99, opening_ts=5))
        assert state_changed(old, QuestionState(qid(1), bond=2))
        assert state_changed(old, QuestionState(qid(1), bond=1, final_answer=ZERO_HASH))
        assert state_changed(None, old)


class TestQuestionStateLoader:
    def test_load_persists_state(self, chain, rpc, store):
        chain.questions[qid(1)] = finalized_yes(min_bond=5, arbitrator="0x" + "33" * 20, timeout=86400)

        state = QuestionStateLoader(rpc, store, ORACLE).load(qid(1))

        assert state.is_finalized
        assert state.final_answer == ANSWER_YES
        assert state.bond == 10**18
        assert state.min_bond == 5
        assert state.arbitrator == "0x" + "33" * 20
        assert store.get_question_state(qid(1)) == state

    def test_final_answer_revert_is_tolerated(self, chain, rpc, store):
        chain.questions[qid(1)] = finalized_yes()
        chain.final_answer_reverts.add(qid(1))

        state = QuestionStateLoader(rpc, store, ORACLE).load(qid(1))

        assert state.is_finalized
        assert state.final_answer is None

    def test_unfinalized_skips_final_answer(self, chain, rpc, store):
        chain.questions[qid(1)] = QuestionState(qid(1), best_answer=ANSWER_YES, bond=1, finalize_ts=NOW)

        state = QuestionStateLoader(rpc, store, ORACLE).load(qid(1))

        assert state.final_answer is None
        assert len(chain.method_calls("eth_call")) == 2

    def test_rpc_failure_raises_state_load_failed(self, chain, rpc, store):
        chain.failing["eth_call"] = 1
        with pytest.raises(StateLoadFailed) as excinfo:
            QuestionStateLoader(rpc, store, ORACLE).load(qid(1))
        assert excinfo.value.retryable
        assert store.get_question_state(qid(1)) is None

    def test_load_many_isolates_failures(self, chain, rpc, store):
        chain.questions[qid(1)] = finalized_yes()
        chain.questions[qid(2)] = QuestionState(qid(2), bond=3)
        chain.failing["eth_call"] = 1
        dlq = DeadLetterQueue(None)

        states = QuestionStateLoader(rpc, store, ORACLE).load_many([qid(1), qid(2)], dlq)

        assert list(states) == [qid(2)]
        assert store.get_question_state(qid(2)).bond == 3
        assert dlq.entries[0]["record"] == {"question_id": qid(1)}
        assert dlq.entries[0]["error_type"] == "StateLoadFailed"


class TestModuleConfig:
    def test_load_module_config(self, chain, rpc):
        config = load_module_config(rpc, MODULE)
        assert config.question_cooldown == 3600
        assert config.answer_expiration == 0
        assert config.minimum_bond == 10**17
        assert config.oracle == ORACLE


class TestFilterProposals:
    def test_search_and_status(self):
        proposals = [
            Proposal(qid(1), 1, "0x01", proposal_id="QmGrants", question_text="Fund grants"),
            Proposal(qid(2), 2, "0x02", proposal_id="QmTreasury"),
        ]
        states = {qid(1): finalized_yes()}

        assert [p.question_id for p in filter_proposals(proposals, states, CONFIG, "grants", now=NOW)] == [qid(1)]
        assert [p.question_id for p in filter_proposals(proposals, states, CONFIG, status="unknown", now=NOW)] == [qid(2)]
        assert len(filter_proposals(proposals, states, CONFIG, now=NOW)) == 2
