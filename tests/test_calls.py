from eth_abi import encode as abi_encode

from reality_indexer.contracts import ANSWER_YES, MODULE_ABI, ORACLE_ABI, hash_string, to_hex
from reality_indexer.models import AnswerEvent, BundleTransaction
from reality_indexer.oracle.calls import (
    claim_multiple_call,
    claim_winnings_call,
    execute_call,
    read_transaction_executed,
    read_unclaimed_balance,
    submit_answer_call,
    withdraw_call,
)
from reality_indexer.oracle.claims import QuestionClaim

from conftest import ALICE, BOB, MODULE, ORACLE, qid

HISTORY = [
    AnswerEvent(qid(1), ANSWER_YES, ALICE, 10, "0x" + "01" * 32, 1, 100, 0),
    AnswerEvent(qid(1), ANSWER_YES, BOB, 20, "0x" + "02" * 32, 2, 105, 0),
]


def test_submit_answer_call():
    call = submit_answer_call(ORACLE, qid(1), True, bond=10**17, max_previous=5)

    name, args = ORACLE_ABI.decode_input(call.data)
    assert name == "submitAnswer"
    assert args == {"question_id": qid(1), "answer": ANSWER_YES, "max_previous": 5}
    assert call.value == 10**17
    assert call.to_dict()["value"] == hex(10**17)
    assert call.preview["params"]["answer"] == "Yes"


def test_claim_winnings_call_uses_reversed_arrays():
    call = claim_winnings_call(ORACLE, qid(1), HISTORY)

    name, args = ORACLE_ABI.decode_input(call.data)
    assert name == "claimWinnings"
    assert args["addrs"] == [BOB, ALICE]
    assert args["bonds"] == [20, 10]
    assert args["history_hashes"] == ["0x" + "02" * 32, "0x" + "01" * 32]
    assert call.preview["params"]["history_hashes_count"] == 2


def test_claim_multiple_call():
    call = claim_multiple_call(ORACLE, [QuestionClaim(qid(1), HISTORY)])

    name, args = ORACLE_ABI.decode_input(call.data)
    assert name == "claimMultipleAndWithdrawBalance"
    assert args["lengths"] == [2]


def test_withdraw_and_execute():
    assert ORACLE_ABI.decode_input(withdraw_call(ORACLE).data)[0] == "withdraw"

    tx = BundleTransaction(to=BOB, value=3, data="0xdeadbeef", operation=0, nonce=1)
    call = execute_call(MODULE, "QmA", ["0x" + "aa" * 32, "0x" + "bb" * 32], tx, 1)

    name, args = MODULE_ABI.decode_input(call.data)
    assert name == "executeProposalWithIndex"
    assert args["proposalId"] == "QmA"
    assert args["to"] == BOB
    assert args["data"] == "0xdeadbeef"
    assert args["txIndex"] == 1
    assert call.to == MODULE


def test_read_unclaimed_balance(chain, rpc):
    original = chain._oracle_call

    def oracle_call(data):
        if data.startswith(ORACLE_ABI.encode_call("balanceOf", [ALICE])[:10]):
            return to_hex(abi_encode(["uint256"], [123]))
        return original(data)

    chain._oracle_call = oracle_call

    assert read_unclaimed_balance(rpc, ORACLE, ALICE) == 123


def test_read_transaction_executed_is_keyed_by_question_text(chain, rpc):
    text = "QmA␟0x" + "aa" * 32
    chain.executed.add((hash_string(text), "0x" + "aa" * 32))

    assert read_transaction_executed(rpc, MODULE, text, "0x" + "aa" * 32)
    assert not read_transaction_executed(rpc, MODULE, text, "0x" + "bb" * 32)
    assert not read_transaction_executed(rpc, MODULE, "other question", "0x" + "aa" * 32)
