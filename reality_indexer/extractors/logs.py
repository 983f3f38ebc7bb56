import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from reality_indexer.errors import RangeScanFailed, RpcExhausted
from reality_indexer.extractors.rpc import EthRpc, hex_int

logger = logging.getLogger(__name__)

LOG_CHUNK_SIZE = 5000  # blocks per eth_getLogs request

ProgressCallback = Callable[[int, int], None]


def log_sort_key(log: Dict[str, Any]) -> Tuple[int, int]:
    return hex_int(log["blockNumber"]), hex_int(log["logIndex"])


class LogRangeScanner:
    def __init__(self, rpc: EthRpc, chunk_size: int = LOG_CHUNK_SIZE) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.rpc = rpc
        self.chunk_size = chunk_size

    def chunks(self, from_block: int, to_block: int) -> Iterator[Tuple[int, int]]:
        for start in range(from_block, to_block + 1, self.chunk_size):
            yield start, min(start + self.chunk_size - 1, to_block)

    def scan(
        self,
        log_filter: Dict[str, Any],
        from_block: int,
        to_block: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch logs for ``[from_block, to_block]`` one chunk at a time.

        Chunks are requested sequentially and concatenated in block order;
        ``on_progress(percent, log_count)`` is called after every chunk. A chunk
        whose retries are exhausted aborts the whole scan with RangeScanFailed.
        """
        if from_block > to_block:
            return []

        total = to_block - from_block + 1
        all_logs: List[Dict[str, Any]] = []
        for start, end in self.chunks(from_block, to_block):
            try:
                logs = self.rpc.get_logs(log_filter, start, end)
            except RpcExhausted as exc:
                logger.error("Log scan aborted at blocks %d-%d: %s", start, end, exc)
                raise RangeScanFailed(start, end, exc) from exc
            live = [log for log in logs if not log.get("removed")]
            all_logs.extend(sorted(live, key=log_sort_key))

            if on_progress:
                pct = min(100, (end - from_block + 1) * 100 // total)
                on_progress(pct, len(all_logs))

        logger.info("Scanned blocks %d-%d: %d logs", from_block, to_block, len(all_logs))
        return all_logs
