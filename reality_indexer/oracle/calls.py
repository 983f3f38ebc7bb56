"""Unsigned call payloads for the oracle and the execution module.

Each builder returns the calldata a wallet would send plus a preview dict the
caller can show before asking for a signature. Nothing here signs or
broadcasts.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from reality_indexer.contracts import ANSWER_NO, ANSWER_YES, MODULE_ABI, ORACLE_ABI, hash_string
from reality_indexer.extractors.rpc import EthRpc
from reality_indexer.models import AnswerEvent, BundleTransaction
from reality_indexer.oracle.claims import (
    QuestionClaim,
    build_claim_arrays,
    build_multi_claim_arrays,
)

ORACLE_NAME = "Reality.eth v3.0"
MODULE_NAME = "Reality Module"


@dataclass
class CallRequest:
    to: str
    data: str
    value: int = 0
    preview: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"to": self.to, "data": self.data, "value": hex(self.value)}


def submit_answer_call(
    oracle_address: str,
    question_id: str,
    answer_yes: bool,
    bond: int,
    max_previous: int = 0,
) -> CallRequest:
    answer = ANSWER_YES if answer_yes else ANSWER_NO
    return CallRequest(
        to=oracle_address,
        data=ORACLE_ABI.encode_call("submitAnswer", [question_id, answer, max_previous]),
        value=bond,
        preview={
            "contract": ORACLE_NAME,
            "method": "submitAnswer(bytes32,bytes32,uint256)",
            "params": {
                "question_id": question_id,
                "answer": "Yes" if answer_yes else "No",
                "max_previous": str(max_previous),
            },
            "value": str(bond),
        },
    )


def claim_winnings_call(
    oracle_address: str, question_id: str, history: Sequence[AnswerEvent]
) -> CallRequest:
    arrays = build_claim_arrays(history)
    return CallRequest(
        to=oracle_address,
        data=ORACLE_ABI.encode_call(
            "claimWinnings",
            [question_id, arrays.history_hashes, arrays.addrs, arrays.bonds, arrays.answers],
        ),
        preview={
            "contract": ORACLE_NAME,
            "method": "claimWinnings(bytes32,bytes32[],address[],uint256[],bytes32[])",
            "params": {
                "question_id": question_id,
                "history_hashes_count": len(arrays),
            },
        },
    )


def claim_multiple_call(oracle_address: str, claims: Sequence[QuestionClaim]) -> CallRequest:
    multi = build_multi_claim_arrays(claims)
    return CallRequest(
        to=oracle_address,
        data=ORACLE_ABI.encode_call(
            "claimMultipleAndWithdrawBalance",
            [
                multi.question_ids,
                multi.lengths,
                multi.history_hashes,
                multi.addrs,
                multi.bonds,
                multi.answers,
            ],
        ),
        preview={
            "contract": ORACLE_NAME,
            "method": "claimMultipleAndWithdrawBalance(bytes32[],uint256[],bytes32[],address[],uint256[],bytes32[])",
            "params": {
                "question_ids": multi.question_ids,
                "lengths": multi.lengths,
            },
        },
    )


def withdraw_call(oracle_address: str) -> CallRequest:
    return CallRequest(
        to=oracle_address,
        data=ORACLE_ABI.encode_call("withdraw"),
        preview={"contract": ORACLE_NAME, "method": "withdraw()", "params": {}},
    )


def execute_call(
    module_address: str,
    proposal_id: str,
    tx_hashes: List[str],
    tx: BundleTransaction,
    tx_index: int,
) -> CallRequest:
    return CallRequest(
        to=module_address,
        data=MODULE_ABI.encode_call(
            "executeProposalWithIndex",
            [proposal_id, tx_hashes, tx.to, tx.value, tx.data, tx.operation, tx_index],
        ),
        preview={
            "contract": MODULE_NAME,
            "method": "executeProposalWithIndex(string,bytes32[],address,uint256,bytes,uint8,uint256)",
            "params": {
                "proposalId": proposal_id,
                "txHashes": list(tx_hashes),
                "to": tx.to,
                "value": str(tx.value),
                "data": tx.data,
                "operation": tx.operation,
                "txIndex": tx_index,
            },
        },
    )


def read_unclaimed_balance(rpc: EthRpc, oracle_address: str, user: str) -> int:
    data = rpc.call(oracle_address, ORACLE_ABI.encode_call("balanceOf", [user]))
    return int(ORACLE_ABI.decode_output("balanceOf", data)[0])


def read_transaction_executed(
    rpc: EthRpc, module_address: str, question_text: str, tx_hash: str
) -> bool:
    """Whether the module already executed ``tx_hash``; keyed by the question text hash."""
    data = rpc.call(
        module_address,
        MODULE_ABI.encode_call(
            "executedProposalTransactions", [hash_string(question_text), tx_hash]
        ),
    )
    return bool(MODULE_ABI.decode_output("executedProposalTransactions", data)[0])
