import json
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import keccak, to_bytes, to_checksum_address

from reality_indexer.errors import DecodeFailed

ABI_DIR = Path(__file__).parent / "abi"

DEFAULT_MODULE_ADDRESS = "0xa62D2a75eb39C12e908e9F6BF50f189641692F2E"
DEFAULT_ORACLE_ADDRESS = "0x5b7dD1E86623548AF054A4985F7fc8Ccbb554E2c"

# Boolean answer encoding used by Reality.eth
ANSWER_NO = "0x" + "00" * 32
ANSWER_YES = "0x" + "00" * 31 + "01"
ANSWER_INVALID = "0x" + "ff" * 32

DOMAIN_TYPE = "EIP712Domain(uint256 chainId,address verifyingContract)"
TRANSACTION_TYPE = "Transaction(address to,uint256 value,bytes data,uint8 operation,uint256 nonce)"
DOMAIN_TYPEHASH = keccak(text=DOMAIN_TYPE)
TRANSACTION_TYPEHASH = keccak(text=TRANSACTION_TYPE)


def to_hex(value: bytes) -> str:
    return f"0x{bytes(value).hex()}"


def is_dynamic_type(type_str: str) -> bool:
    if type_str in {"string", "bytes"}:
        return True
    if type_str.endswith("[]"):
        return True
    if "[" in type_str and "]" in type_str:
        return True
    return False


def normalize_value(value: Any, type_str: str) -> Any:
    """Map eth_abi output onto plain Python: hex strings, lowercase addresses, ints."""
    if type_str.endswith("[]"):
        return [normalize_value(item, type_str[:-2]) for item in value]
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value)
    if type_str == "address":
        return value.lower()
    return value


def _coerce_arg(type_str: str, value: Any) -> Any:
    if type_str.endswith("[]"):
        return [_coerce_arg(type_str[:-2], item) for item in value]
    if type_str.startswith("bytes") and isinstance(value, str):
        return to_bytes(hexstr=value)
    if type_str == "address":
        return to_checksum_address(value)
    return value


def signature(entry: Dict[str, Any]) -> str:
    types = ",".join(input_abi["type"] for input_abi in entry.get("inputs", []))
    return f"{entry['name']}({types})"


def event_topic0(event_abi: Dict[str, Any]) -> str:
    return to_hex(keccak(text=signature(event_abi))).lower()


def function_selector(function_abi: Dict[str, Any]) -> str:
    return to_hex(keccak(text=signature(function_abi))[:4])


def load_abi(path: Path) -> List[Dict[str, Any]]:
    content = json.loads(path.read_text())
    if isinstance(content, dict) and "abi" in content:
        content = content["abi"]
    if not isinstance(content, list):
        raise ValueError(f"Unsupported ABI format in {path}")
    return content


class ContractAbi:
    def __init__(self, name: str, entries: List[Dict[str, Any]]) -> None:
        self.name = name
        self.events: Dict[str, Dict[str, Any]] = {}
        self.functions: Dict[str, Dict[str, Any]] = {}
        self._functions_by_selector: Dict[str, Dict[str, Any]] = {}
        for entry in entries:
            if entry.get("type") == "event":
                self.events[entry["name"]] = entry
            elif entry.get("type") == "function":
                self.functions[entry["name"]] = entry
                self._functions_by_selector[function_selector(entry)] = entry

    @classmethod
    def load(cls, name: str, abi_dir: Path = ABI_DIR) -> "ContractAbi":
        return cls(name, load_abi(abi_dir / f"{name}.json"))

    def topic(self, event_name: str) -> str:
        return event_topic0(self.events[event_name])

    def encode_call(self, function_name: str, args: Sequence[Any] = ()) -> str:
        function_abi = self.functions[function_name]
        types = [input_abi["type"] for input_abi in function_abi["inputs"]]
        coerced = [_coerce_arg(t, v) for t, v in zip(types, args)]
        try:
            encoded = abi_encode(types, coerced)
        except EncodingError as exc:
            raise ValueError(f"Cannot encode {self.name}.{function_name}: {exc}") from exc
        return function_selector(function_abi) + encoded.hex()

    def decode_output(self, function_name: str, data: str) -> Tuple[Any, ...]:
        function_abi = self.functions[function_name]
        types = [output["type"] for output in function_abi["outputs"]]
        raw = to_bytes(hexstr=data) if data else b""
        try:
            values = abi_decode(types, raw)
        except (DecodingError, ValueError) as exc:
            raise DecodeFailed(
                f"{self.name}.{function_name} returned undecodable data",
                {"data": data, "error": str(exc)},
            ) from exc
        return tuple(normalize_value(v, t) for v, t in zip(values, types))

    def decode_input(self, data: str) -> Tuple[str, Dict[str, Any]]:
        """Decode transaction input into ``(function_name, named_args)``."""
        if not data or len(data) < 10:
            raise DecodeFailed("call input too short", {"data": data})
        function_abi = self._functions_by_selector.get(data[:10].lower())
        if function_abi is None:
            raise DecodeFailed(f"unknown selector {data[:10]} for {self.name}", {"data": data[:10]})
        inputs = function_abi["inputs"]
        types = [input_abi["type"] for input_abi in inputs]
        try:
            values = abi_decode(types, to_bytes(hexstr=data[10:]))
        except (DecodingError, ValueError) as exc:
            raise DecodeFailed(
                f"malformed {function_abi['name']} input", {"error": str(exc)}
            ) from exc
        args = {
            input_abi["name"]: normalize_value(value, input_abi["type"])
            for input_abi, value in zip(inputs, values)
        }
        return function_abi["name"], args


MODULE_ABI = ContractAbi.load("RealityModule")
ORACLE_ABI = ContractAbi.load("Realitio")


def hash_string(text: str) -> str:
    """Topic value Solidity emits for an indexed ``string`` argument."""
    return to_hex(keccak(text=text))


def module_tx_hash(
    chain_id: int,
    module_address: str,
    to: str,
    value: int,
    data: str,
    operation: int,
    nonce: int,
) -> str:
    """EIP-712 commitment hash the module records for one proposal transaction."""
    domain_separator = keccak(
        abi_encode(
            ["bytes32", "uint256", "address"],
            [DOMAIN_TYPEHASH, int(chain_id), to_checksum_address(module_address)],
        )
    )
    struct_hash = keccak(
        abi_encode(
            ["bytes32", "address", "uint256", "bytes32", "uint8", "uint256"],
            [
                TRANSACTION_TYPEHASH,
                to_checksum_address(to),
                int(value),
                keccak(to_bytes(hexstr=data or "0x")),
                int(operation),
                int(nonce),
            ],
        )
    )
    return to_hex(keccak(b"\x19\x01" + domain_separator + struct_hash))
