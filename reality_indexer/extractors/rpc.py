from typing import Any, Dict, List, Optional, Union

from reality_indexer.config import Settings
from reality_indexer.utils.http import ExhaustedHandler, JsonRpcClient, fallback_handler

BlockTag = Union[int, str]


def _block_param(block: BlockTag) -> str:
    if isinstance(block, int):
        return hex(block)
    return block


def hex_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise ValueError(f"not an integer quantity: {value!r}")


class EthRpc:
    """Typed read access to an Ethereum JSON-RPC node."""

    def __init__(self, client: JsonRpcClient, confirmations: int = 0) -> None:
        self.client = client
        self.confirmations = confirmations

    @classmethod
    def from_settings(
        cls, settings: Settings, on_exhausted: Optional[ExhaustedHandler] = None
    ) -> "EthRpc":
        if on_exhausted is None and settings.rpc_fallback:
            on_exhausted = fallback_handler(settings.rpc_fallback)
        client = JsonRpcClient(
            settings.rpc_url,
            rate_limit_per_second=settings.rate_limit_per_second,
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            timeout=settings.request_timeout,
            on_exhausted=on_exhausted,
        )
        return cls(client, confirmations=settings.confirmations)

    @property
    def endpoint(self) -> str:
        return self.client.url

    def chain_id(self) -> int:
        return hex_int(self.client.call("eth_chainId"))

    def block_number(self) -> int:
        return hex_int(self.client.call("eth_blockNumber"))

    def get_safe_block_number(self) -> int:
        return max(0, self.block_number() - self.confirmations)

    def get_block(self, block: BlockTag = "latest") -> Optional[Dict[str, Any]]:
        return self.client.call("eth_getBlockByNumber", [_block_param(block), False])

    def get_block_timestamp(self, block: BlockTag) -> Optional[int]:
        data = self.get_block(block)
        if not data:
            return None
        return hex_int(data["timestamp"])

    def get_logs(self, log_filter: Dict[str, Any], from_block: int, to_block: int) -> List[Dict[str, Any]]:
        params = dict(log_filter)
        params["fromBlock"] = hex(from_block)
        params["toBlock"] = hex(to_block)
        return self.client.call("eth_getLogs", [params]) or []

    def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.client.call("eth_getTransactionByHash", [tx_hash])

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.client.call("eth_getTransactionReceipt", [tx_hash])

    def call(self, to: str, data: str, block: BlockTag = "latest") -> str:
        return self.client.call("eth_call", [{"to": to, "data": data}, _block_param(block)])

    def get_code(self, address: str, block: BlockTag = "latest") -> str:
        return self.client.call("eth_getCode", [address, _block_param(block)]) or "0x"
