import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from reality_indexer.contracts import ORACLE_ABI
from reality_indexer.extractors.logs import LogRangeScanner, ProgressCallback
from reality_indexer.extractors.rpc import EthRpc
from reality_indexer.loaders.store import Store
from reality_indexer.models import AnswerEvent
from reality_indexer.transformers.decoded_logs import Malformed, parse_log

logger = logging.getLogger(__name__)

ANSWER_EVENT = "LogNewAnswer"
DEFAULT_LOOKBACK_BLOCKS = 100_000


def parse_answer_log(log: Dict[str, Any]) -> Union[AnswerEvent, Malformed]:
    parsed = parse_log(ORACLE_ABI, ANSWER_EVENT, log)
    if isinstance(parsed, Malformed):
        return parsed
    args = parsed.args
    return AnswerEvent(
        question_id=args["question_id"],
        answer=args["answer"],
        user=args["user"],
        bond=args["bond"],
        history_hash=args["history_hash"],
        timestamp=args["ts"],
        block_number=parsed.block_number,
        log_index=parsed.log_index,
        transaction_index=parsed.transaction_index,
        is_commitment=bool(args["is_commitment"]),
    )


def parse_answer_logs(logs: Iterable[Dict[str, Any]]) -> List[AnswerEvent]:
    answers = []
    for log in logs:
        result = parse_answer_log(log)
        if isinstance(result, Malformed):
            logger.debug("Skipping malformed answer log: %s", result.reason)
            continue
        answers.append(result)
    return sorted(answers, key=lambda a: a.sort_key)


class AnswerIndexer:
    def __init__(
        self,
        rpc: EthRpc,
        scanner: LogRangeScanner,
        store: Store,
        oracle_address: str,
        default_lookback: int = DEFAULT_LOOKBACK_BLOCKS,
    ) -> None:
        self.rpc = rpc
        self.scanner = scanner
        self.store = store
        self.oracle_address = oracle_address
        self.default_lookback = default_lookback

    def answer_filter(self, question_id: Optional[str] = None) -> Dict[str, Any]:
        topics: List[Any] = [ORACLE_ABI.topic(ANSWER_EVENT)]
        if question_id is not None:
            topics.append(question_id)
        return {"address": self.oracle_address, "topics": topics}

    def fetch_range(
        self,
        from_block: int,
        to_block: int,
        question_ids: Optional[Iterable[str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[AnswerEvent]:
        """Scan and parse answers without persisting them."""
        logs = self.scanner.scan(self.answer_filter(), from_block, to_block, on_progress)
        answers = parse_answer_logs(logs)
        if question_ids is not None:
            wanted = set(question_ids)
            answers = [a for a in answers if a.question_id in wanted]
        return answers

    def index_range(
        self,
        from_block: int,
        to_block: int,
        question_ids: Optional[Iterable[str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        answers = self.fetch_range(from_block, to_block, question_ids, on_progress)
        return self.store.upsert_answers(answers)

    def fetch_question(self, question_id: str, from_block: int, to_block: int) -> List[AnswerEvent]:
        logs = self.scanner.scan(self.answer_filter(question_id), from_block, to_block)
        return [a for a in parse_answer_logs(logs) if a.question_id == question_id]

    def index_question(self, question_id: str, from_block: Optional[int] = None) -> List[AnswerEvent]:
        to_block = self.rpc.get_safe_block_number()
        if from_block is None:
            proposal = self.store.get_proposal(question_id)
            if proposal is not None:
                from_block = proposal.created_block
            else:
                from_block = max(0, to_block - self.default_lookback)

        answers = self.fetch_question(question_id, from_block, to_block)
        self.store.upsert_answers(answers)
        logger.info("Indexed %d answers for question %s", len(answers), question_id)
        return self.store.get_answers(question_id)
