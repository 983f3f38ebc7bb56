import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from reality_indexer.contracts import MODULE_ABI, hash_string
from reality_indexer.errors import DecodeFailed, IndexerError
from reality_indexer.extractors.rpc import EthRpc
from reality_indexer.models import Proposal
from reality_indexer.transformers.decoded_logs import Malformed, parse_log

logger = logging.getLogger(__name__)

PROPOSAL_EVENT = "ProposalQuestionCreated"
PROPOSAL_FUNCTIONS = {"addProposal", "addProposalWithNonce"}

# Reality.eth separates template fields with U+241F
QUESTION_SEPARATORS = ("␟", "\x1f")


@dataclass
class QuestionText:
    raw: str
    parts: List[str] = field(default_factory=list)
    data: Any = None


def parse_question_text(text: Optional[str]) -> Optional[QuestionText]:
    if text is None:
        return None
    stripped = text.strip()
    if stripped[:1] in ("{", "["):
        try:
            return QuestionText(raw=text, parts=[text], data=json.loads(stripped))
        except json.JSONDecodeError:
            pass
    for separator in QUESTION_SEPARATORS:
        if separator in text:
            return QuestionText(raw=text, parts=text.split(separator))
    return QuestionText(raw=text, parts=[text])


def proposal_filter(module_address: str) -> Dict[str, Any]:
    return {"address": module_address, "topics": [MODULE_ABI.topic(PROPOSAL_EVENT)]}


class ProposalDecoder:
    def __init__(self, rpc: EthRpc, module_address: str) -> None:
        self.rpc = rpc
        self.module_address = module_address

    def decode(self, log: Dict[str, Any]) -> Proposal:
        """
        Build a Proposal from its creation log.

        Only the question id comes from the log itself. The proposal id and tx
        hashes are recovered from the originating transaction input, the
        question text from ``buildQuestion``. Each enrichment step degrades to
        ``None`` on failure; only a malformed creation log raises.
        """
        parsed = parse_log(MODULE_ABI, PROPOSAL_EVENT, log)
        if isinstance(parsed, Malformed):
            raise DecodeFailed(parsed.reason, {"log": log})

        question_id = parsed.args["questionId"]
        proposal = Proposal(
            question_id=question_id,
            created_block=parsed.block_number,
            created_tx_hash=parsed.tx_hash,
        )

        proposal.proposal_id, proposal.tx_hashes = self._recover_call(
            parsed.tx_hash, parsed.args["proposalId"]
        )
        if proposal.proposal_id is not None and proposal.tx_hashes:
            proposal.question_text = self._build_question(proposal.proposal_id, proposal.tx_hashes)
        proposal.created_timestamp = self._block_timestamp(parsed.block_number)
        return proposal

    def _recover_call(
        self, tx_hash: str, proposal_topic: str
    ) -> Tuple[Optional[str], Optional[List[str]]]:
        try:
            tx = self.rpc.get_transaction(tx_hash)
            if not tx:
                raise DecodeFailed("transaction not found", {"tx_hash": tx_hash})
            function_name, args = MODULE_ABI.decode_input(tx.get("input", "0x"))
            if function_name not in PROPOSAL_FUNCTIONS:
                raise DecodeFailed(f"{function_name} is not a proposal call", {"tx_hash": tx_hash})
        except IndexerError as exc:
            logger.debug("Proposal call for %s not recoverable: %s", tx_hash, exc)
            return None, None

        proposal_id = args["proposalId"]
        if hash_string(proposal_id) != proposal_topic.lower():
            # Batched or proxied creation; the decoded call belongs to another proposal
            logger.debug("Proposal id in %s does not match log topic", tx_hash)
            return None, None
        return proposal_id, [h.lower() for h in args["txHashes"]]

    def _build_question(self, proposal_id: str, tx_hashes: List[str]) -> Optional[str]:
        try:
            data = self.rpc.call(
                self.module_address, MODULE_ABI.encode_call("buildQuestion", [proposal_id, tx_hashes])
            )
            return MODULE_ABI.decode_output("buildQuestion", data)[0]
        except IndexerError as exc:
            logger.debug("buildQuestion failed for %s: %s", proposal_id, exc)
            return None

    def _block_timestamp(self, block_number: int) -> Optional[int]:
        try:
            return self.rpc.get_block_timestamp(block_number)
        except IndexerError as exc:
            logger.debug("Timestamp lookup failed for block %d: %s", block_number, exc)
            return None
