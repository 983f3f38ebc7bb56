from typing import Any, Optional


class IndexerError(RuntimeError):
    """Base class for failures surfaced to callers.

    ``retryable`` separates transient conditions (try again later, maybe on
    another endpoint) from structural ones that need new input.
    """

    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable

    @property
    def reason(self) -> str:
        kind = "transient, retry later" if self.retryable else "needs new input"
        return f"{self} ({kind})"


class RpcExhausted(IndexerError):
    retryable = True

    def __init__(self, method: str, attempts: int, last_error: Optional[BaseException]) -> None:
        super().__init__(f"RPC {method} failed after {attempts} attempts: {last_error}")
        self.method = method
        self.attempts = attempts
        self.last_error = last_error


class CallReverted(IndexerError):
    """eth_call reverted on-chain. Deterministic, never retried."""

    def __init__(self, message: str, data: Any = None) -> None:
        super().__init__(f"Call reverted: {message}")
        self.data = data


class RangeScanFailed(IndexerError):
    retryable = True

    def __init__(self, from_block: int, to_block: int, cause: BaseException) -> None:
        super().__init__(f"Log scan failed for blocks {from_block}-{to_block}: {cause}")
        self.from_block = from_block
        self.to_block = to_block
        self.cause = cause


class DecodeFailed(IndexerError):
    def __init__(self, message: str, context: Optional[dict] = None) -> None:
        super().__init__(f"Decode failed: {message}")
        self.context = context or {}


class StateLoadFailed(IndexerError):
    retryable = True

    def __init__(self, question_id: str, cause: BaseException) -> None:
        super().__init__(f"Could not load question state for {question_id}: {cause}")
        self.question_id = question_id
        self.cause = cause


class ContractNotFound(IndexerError):
    def __init__(self, address: str, chain_id: int, label: str) -> None:
        super().__init__(f"No contract found at {label} address {address} on chain {chain_id}")
        self.address = address
        self.chain_id = chain_id


class BundleError(IndexerError):
    pass


class InvalidBundle(BundleError):
    def __init__(self, message: str, index: Optional[int] = None) -> None:
        prefix = f"Transaction {index}: " if index is not None else ""
        super().__init__(f"Invalid bundle: {prefix}{message}")
        self.index = index


class BundleMismatch(BundleError):
    def __init__(
        self,
        message: str,
        index: Optional[int] = None,
        expected_count: Optional[int] = None,
        actual_count: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.index = index
        self.expected_count = expected_count
        self.actual_count = actual_count

    @property
    def count_delta(self) -> Optional[int]:
        if self.expected_count is None or self.actual_count is None:
            return None
        return self.actual_count - self.expected_count
