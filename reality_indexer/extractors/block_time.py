import logging
import math

from reality_indexer.errors import IndexerError
from reality_indexer.extractors.rpc import EthRpc, hex_int

logger = logging.getLogger(__name__)

NOMINAL_BLOCK_TIME = 12
MAX_SEARCH_STEPS = 15


def estimate_block(
    rpc: EthRpc,
    seconds_ago: int,
    block_time: int = NOMINAL_BLOCK_TIME,
    max_steps: int = MAX_SEARCH_STEPS,
) -> int:
    """
    Estimate the first block produced at or after ``now - seconds_ago``.

    The search window starts at twice the nominal block count behind head, then
    narrows by binary search on block timestamps. Blocks the node returns as
    null are stepped over instead of failing the estimate.
    """
    latest = rpc.get_block("latest")
    if not latest:
        raise IndexerError("Node returned no latest block", retryable=True)
    head = hex_int(latest["number"])
    if seconds_ago <= 0:
        return head
    target_ts = hex_int(latest["timestamp"]) - seconds_ago

    estimated_blocks = math.ceil(seconds_ago / max(block_time, 1))
    lo = max(0, head - estimated_blocks * 2)
    hi = head

    for _ in range(max_steps):
        if lo >= hi:
            break
        mid = (lo + hi) // 2
        block = rpc.get_block(mid)
        if not block:
            lo = mid + 1
            continue
        if hex_int(block["timestamp"]) < target_ts:
            lo = mid + 1
        else:
            hi = mid

    logger.debug("Estimated block %d for %ds ago (head %d)", lo, seconds_ago, head)
    return lo
