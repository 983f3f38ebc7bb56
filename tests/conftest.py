"""Shared fixtures: an in-memory chain that answers the JSON-RPC calls the indexer makes."""
from typing import Any, Dict, List, Optional

import pytest
from eth_abi import encode as abi_encode
from eth_utils import to_bytes

from reality_indexer.config import Settings
from reality_indexer.contracts import MODULE_ABI, ORACLE_ABI, hash_string, to_hex
from reality_indexer.errors import CallReverted, RpcExhausted
from reality_indexer.extractors.rpc import EthRpc
from reality_indexer.loaders.store import Store
from reality_indexer.models import ZERO_HASH, QuestionState

MODULE = "0xa62d2a75eb39c12e908e9f6bf50f189641692f2e"
ORACLE = "0x5b7dd1e86623548af054a4985f7fc8ccbb554e2c"
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20
GENESIS_TS = 1_700_000_000
BLOCK_TIME = 12


def qid(n: int) -> str:
    return "0x" + f"{n:064x}"


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}".replace("0", "e", 1)


def pad_address(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


class FakeChain:
    """Stands in for JsonRpcClient; methods are served from in-memory state."""

    def __init__(self, head: int = 1000, chain_id: int = 1) -> None:
        self.url = "http://fake-node"
        self.head = head
        self.chain_id = chain_id
        self.logs: List[Dict[str, Any]] = []
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.code: Dict[str, str] = {MODULE: "0x6080", ORACLE: "0x6080"}
        self.missing_blocks: set = set()
        self.failing: Dict[str, int] = {}
        self.calls: List[tuple] = []
        self.questions: Dict[str, QuestionState] = {}
        self.final_answer_reverts: set = set()
        self.executed: set = set()
        self.module_params = {
            "questionCooldown": 3600,
            "answerExpiration": 0,
            "minimumBond": 10**17,
            "avatar": "0x" + "11" * 20,
            "target": "0x" + "22" * 20,
            "oracle": ORACLE,
        }

    # -- JsonRpcClient surface -------------------------------------------

    def set_endpoint(self, url: str) -> None:
        self.url = url

    def call(self, method: str, params=()):
        params = list(params)
        self.calls.append((method, params))
        if self.failing.get(method, 0) > 0:
            self.failing[method] -= 1
            raise RpcExhausted(method, 3, ConnectionError("boom"))
        return getattr(self, "_" + method)(*params)

    # -- method handlers -------------------------------------------------

    def _eth_chainId(self):
        return hex(self.chain_id)

    def _eth_blockNumber(self):
        return hex(self.head)

    def _eth_getBlockByNumber(self, block, _full):
        number = self.head if block == "latest" else int(block, 16)
        if number > self.head or number in self.missing_blocks:
            return None
        return {"number": hex(number), "timestamp": hex(GENESIS_TS + number * BLOCK_TIME)}

    def _eth_getLogs(self, log_filter):
        start, end = int(log_filter["fromBlock"], 16), int(log_filter["toBlock"], 16)
        wanted_topics = log_filter.get("topics", [])
        result = []
        for log in self.logs:
            if log["address"].lower() != log_filter["address"].lower():
                continue
            if not start <= int(log["blockNumber"], 16) <= end:
                continue
            if any(
                want is not None and (i >= len(log["topics"]) or log["topics"][i].lower() != want.lower())
                for i, want in enumerate(wanted_topics)
            ):
                continue
            result.append(log)
        return result

    def _eth_getTransactionByHash(self, h):
        return self.transactions.get(h)

    def _eth_getCode(self, address, _block):
        return self.code.get(address.lower(), "0x")

    def _eth_call(self, request, _block):
        to, data = request["to"].lower(), request["data"]
        if to == MODULE:
            return self._module_call(data)
        if to == ORACLE:
            return self._oracle_call(data)
        raise CallReverted("no contract")

    def _module_call(self, data: str) -> str:
        for name, value in self.module_params.items():
            if data == MODULE_ABI.encode_call(name):
                out_type = MODULE_ABI.functions[name]["outputs"][0]["type"]
                return to_hex(abi_encode([out_type], [value]))
        name, args = MODULE_ABI.decode_input(data)
        if name == "buildQuestion":
            text = args["proposalId"] + "␟" + ",".join(args["txHashes"])
            return to_hex(abi_encode(["string"], [text]))
        if name == "executedProposalTransactions":
            executed = (args["questionHash"], args["txHash"]) in self.executed
            return to_hex(abi_encode(["bool"], [executed]))
        raise CallReverted(name)

    def _oracle_call(self, data: str) -> str:
        name, args = ORACLE_ABI.decode_input(data)
        question_id = next(iter(args.values()))
        state = self.questions.get(question_id, QuestionState(question_id))
        if name == "questions":
            return to_hex(
                abi_encode(
                    ["bytes32", "address", "uint32", "uint32", "uint32", "bool",
                     "uint256", "bytes32", "bytes32", "uint256", "uint256"],
                    [
                        to_bytes(hexstr=state.content_hash),
                        state.arbitrator or "0x" + "00" * 20,
                        state.opening_ts,
                        state.timeout,
                        state.finalize_ts,
                        state.is_pending_arbitration,
                        state.bounty,
                        to_bytes(hexstr=state.best_answer),
                        to_bytes(hexstr=state.history_hash),
                        state.bond,
                        state.min_bond,
                    ],
                )
            )
        if name == "isFinalized":
            return to_hex(abi_encode(["bool"], [state.is_finalized]))
        if name == "getFinalAnswer":
            if question_id in self.final_answer_reverts:
                raise CallReverted("question must be finalized")
            return to_hex(abi_encode(["bytes32"], [to_bytes(hexstr=state.best_answer)]))
        raise CallReverted(name)

    # -- builders --------------------------------------------------------

    def add_proposal(
        self,
        question_id: str,
        proposal_id: str,
        tx_hashes: List[str],
        block: int,
        log_index: int = 0,
        txh: Optional[str] = None,
        tx_input: Optional[str] = None,
    ) -> Dict[str, Any]:
        txh = txh or tx_hash(block * 100 + log_index)
        log = {
            "address": MODULE,
            "topics": [MODULE_ABI.topic("ProposalQuestionCreated"), question_id, hash_string(proposal_id)],
            "data": "0x",
            "blockNumber": hex(block),
            "logIndex": hex(log_index),
            "transactionIndex": "0x0",
            "transactionHash": txh,
        }
        self.logs.append(log)
        if tx_input is None:
            tx_input = MODULE_ABI.encode_call("addProposal", [proposal_id, tx_hashes])
        self.transactions[txh] = {"hash": txh, "input": tx_input}
        self.questions.setdefault(question_id, QuestionState(question_id))
        return log

    def add_answer(
        self,
        question_id: str,
        user: str,
        bond: int,
        block: int,
        log_index: int = 1,
        answer: str = "0x" + "00" * 31 + "01",
        history_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        history_hash = history_hash or "0x" + f"{block:02x}{log_index:02x}".rjust(64, "c")
        data = abi_encode(
            ["bytes32", "bytes32", "uint256", "uint256", "bool"],
            [
                to_bytes(hexstr=answer),
                to_bytes(hexstr=history_hash),
                bond,
                GENESIS_TS + block * BLOCK_TIME,
                False,
            ],
        )
        log = {
            "address": ORACLE,
            "topics": [ORACLE_ABI.topic("LogNewAnswer"), question_id, pad_address(user)],
            "data": to_hex(data),
            "blockNumber": hex(block),
            "logIndex": hex(log_index),
            "transactionIndex": "0x1",
            "transactionHash": tx_hash(block * 100 + log_index + 50),
        }
        self.logs.append(log)
        state = self.questions.setdefault(question_id, QuestionState(question_id))
        state.best_answer = answer
        state.bond = bond
        state.history_hash = history_hash
        state.finalize_ts = GENESIS_TS + block * BLOCK_TIME + 86400
        return log

    def method_calls(self, method: str) -> List[list]:
        return [params for name, params in self.calls if name == method]


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def rpc(chain) -> EthRpc:
    return EthRpc(chain)


@pytest.fixture
def store() -> Store:
    db = Store(":memory:")
    yield db
    db.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        rpc_url="http://fake-node",
        module_address=MODULE,
        oracle_address=ORACLE,
        backfill_days=1.0,
        log_chunk_size=100,
        dlq_path=None,
        db_path=":memory:",
    )


def make_state(question_id: str = ZERO_HASH, **kwargs) -> QuestionState:
    return QuestionState(question_id=question_id, **kwargs)
