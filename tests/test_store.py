import pytest

from reality_indexer.loaders.store import Store
from reality_indexer.models import (
    AnswerEvent,
    BundleTransaction,
    ModuleConfig,
    Proposal,
    QuestionState,
    SyncWatermark,
    TxBundle,
)

from conftest import ALICE, BOB, qid


def _answer(question_id, user, bond, block, log_index=0):
    return AnswerEvent(
        question_id=question_id,
        answer="0x" + "00" * 31 + "01",
        user=user,
        bond=bond,
        history_hash="0x" + f"{block:064x}",
        timestamp=1000 + block,
        block_number=block,
        log_index=log_index,
    )


class TestProposals:
    def test_insert_if_absent(self, store):
        first = Proposal(qid(1), 10, "0x01", proposal_id="QmA", tx_hashes=["0xaa"])
        assert store.put_proposal(first) is True
        assert store.put_proposal(Proposal(qid(1), 99, "0x02", proposal_id="QmB")) is False

        stored = store.get_proposal(qid(1))
        assert stored.created_block == 10
        assert stored.proposal_id == "QmA"
        assert stored.tx_hashes == ["0xaa"]

    def test_unavailable_and_empty_are_distinct(self, store):
        store.put_proposal(Proposal(qid(1), 10, "0x01"))
        store.put_proposal(Proposal(qid(2), 11, "0x02", proposal_id="QmB", tx_hashes=[], question_text=""))

        unavailable = store.get_proposal(qid(1))
        empty = store.get_proposal(qid(2))
        assert unavailable.tx_hashes is None
        assert unavailable.question_text is None
        assert unavailable.created_timestamp is None
        assert empty.tx_hashes == []
        assert empty.question_text == ""

    def test_lookup_by_proposal_id_and_order(self, store):
        store.put_proposal(Proposal(qid(2), 20, "0x02", proposal_id="QmB"))
        store.put_proposal(Proposal(qid(1), 10, "0x01", proposal_id="QmA"))

        assert store.get_proposal_by_proposal_id("QmB").question_id == qid(2)
        assert store.get_proposal_by_proposal_id("missing") is None
        assert [p.question_id for p in store.list_proposals()] == [qid(1), qid(2)]
        assert [p.question_id for p in store.list_proposals(from_block=15)] == [qid(2)]


class TestQuestionStates:
    def test_full_replace_and_big_numbers(self, store):
        big = 2**200
        store.put_question_state(QuestionState(qid(1), bond=big, final_answer="0x01", is_finalized=True))
        store.put_question_state(QuestionState(qid(1), bond=5))

        state = store.get_question_state(qid(1))
        assert state.bond == 5
        assert state.final_answer is None
        assert state.is_finalized is False

        store.put_question_state(QuestionState(qid(2), bond=big, bounty=big))
        assert store.get_question_state(qid(2)).bond == big
        assert store.get_question_state(qid(2)).bounty == big


class TestAnswers:
    def test_upsert_is_idempotent_and_ordered(self, store):
        batch = [_answer(qid(1), BOB, 20, 105), _answer(qid(1), ALICE, 10, 100)]
        store.upsert_answers(batch)
        store.upsert_answers(batch + [_answer(qid(1), ALICE, 40, 105, log_index=3)])

        history = store.get_answers(qid(1))
        assert [(a.block_number, a.log_index) for a in history] == [(100, 0), (105, 0), (105, 3)]
        assert store.count_answers() == 3

    def test_answered_question_ids(self, store):
        store.upsert_answers([_answer(qid(1), ALICE, 1, 1), _answer(qid(2), BOB, 1, 2)])
        assert store.answered_question_ids(ALICE.upper().replace("0X", "0x")) == [qid(1)]


class TestSettingsAndReset:
    def test_watermark_roundtrip(self, store):
        assert store.get_watermark() is None
        store.set_watermark(SyncWatermark(200, 100, True))
        assert store.get_watermark() == SyncWatermark(200, 100, True)

    def test_module_config_keeps_large_bond(self, store):
        config = ModuleConfig(question_cooldown=60, minimum_bond=10**30, oracle="0xabc")
        store.set_module_config(config)
        assert store.get_module_config() == config

    def test_bundle_replaced_wholesale(self, store):
        store.put_bundle(TxBundle("QmA", [BundleTransaction("0x01"), BundleTransaction("0x02", nonce=1)], ["0xa", "0xb"]))
        store.put_bundle(TxBundle("QmA", [BundleTransaction("0x03")], ["0xc"]))

        bundle = store.get_bundle("QmA")
        assert [tx.to for tx in bundle.transactions] == ["0x03"]
        assert bundle.tx_hashes == ["0xc"]

    def test_clear_all_bumps_generation(self, store):
        store.put_proposal(Proposal(qid(1), 10, "0x01"))
        store.set_watermark(SyncWatermark(200, 100))
        before = store.generation()

        store.clear_all()

        assert store.generation() == before + 1
        assert store.list_proposals() == []
        assert store.get_watermark() is None

    def test_transaction_rolls_back(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.put_proposal(Proposal(qid(1), 10, "0x01"))
                store.set_watermark(SyncWatermark(200, 100))
                raise RuntimeError("boom")

        assert store.get_proposal(qid(1)) is None
        assert store.get_watermark() is None

    def test_file_backed_store(self, tmp_path):
        path = str(tmp_path / "nested" / "cache.db")
        db = Store(path)
        db.put_proposal(Proposal(qid(1), 10, "0x01"))
        db.close()

        reopened = Store(path)
        assert reopened.has_proposal(qid(1))
        reopened.close()
