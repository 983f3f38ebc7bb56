from dataclasses import dataclass, field
from typing import Any, Dict, Union

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_bytes

from reality_indexer.contracts import ContractAbi, is_dynamic_type, normalize_value
from reality_indexer.extractors.rpc import hex_int


@dataclass
class DecodedLog:
    event: str
    args: Dict[str, Any]
    address: str
    block_number: int
    log_index: int
    transaction_index: int
    tx_hash: str


@dataclass
class Malformed:
    reason: str
    log: Dict[str, Any] = field(repr=False, default_factory=dict)


ParsedLog = Union[DecodedLog, Malformed]


def _decode_args(event_abi: Dict[str, Any], topics, data: str) -> Dict[str, Any]:
    inputs = event_abi.get("inputs", [])
    indexed_inputs = [inp for inp in inputs if inp.get("indexed")]
    non_indexed_inputs = [inp for inp in inputs if not inp.get("indexed")]

    if len(topics) != len(indexed_inputs) + 1:
        raise ValueError(
            f"expected {len(indexed_inputs) + 1} topics, got {len(topics)}"
        )

    args: Dict[str, Any] = {}
    for topic_value, input_abi in zip(topics[1:], indexed_inputs):
        # Indexed dynamic values are only present as their keccak hash
        if is_dynamic_type(input_abi["type"]):
            args[input_abi["name"]] = topic_value.lower()
            continue
        value = abi_decode([input_abi["type"]], to_bytes(hexstr=topic_value))[0]
        args[input_abi["name"]] = normalize_value(value, input_abi["type"])

    if non_indexed_inputs:
        types = [inp["type"] for inp in non_indexed_inputs]
        values = abi_decode(types, to_bytes(hexstr=data or "0x"))
        for input_abi, value in zip(non_indexed_inputs, values):
            args[input_abi["name"]] = normalize_value(value, input_abi["type"])
    return args


def parse_log(abi: ContractAbi, event_name: str, log: Dict[str, Any]) -> ParsedLog:
    """
    Parse a raw ``eth_getLogs`` entry as ``event_name``.

    Fields are taken by ABI position only. Any shape problem (wrong topic0,
    topic count, undecodable data, missing positional metadata) yields
    ``Malformed`` with a reason instead of a partially filled record.
    """
    event_abi = abi.events.get(event_name)
    if event_abi is None:
        return Malformed(f"unknown event {event_name}", log)

    topics = log.get("topics") or []
    if not topics:
        return Malformed("log has no topics", log)
    if topics[0].lower() != abi.topic(event_name):
        return Malformed(f"topic0 is not {event_name}", log)

    try:
        args = _decode_args(event_abi, topics, log.get("data", "0x"))
        return DecodedLog(
            event=event_name,
            args=args,
            address=str(log.get("address", "")).lower(),
            block_number=hex_int(log["blockNumber"]),
            log_index=hex_int(log["logIndex"]),
            transaction_index=hex_int(log.get("transactionIndex", "0x0")),
            tx_hash=str(log["transactionHash"]).lower(),
        )
    except (DecodingError, ValueError, KeyError, TypeError) as exc:
        return Malformed(f"{type(exc).__name__}: {exc}", log)
