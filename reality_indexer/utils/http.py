import itertools
import logging
import random
import time
from typing import Any, Callable, Optional, Sequence

import requests

from reality_indexer.errors import CallReverted, RpcExhausted

logger = logging.getLogger(__name__)

# Receives the last error once retries are exhausted; may return a replacement endpoint.
ExhaustedHandler = Callable[[BaseException], Optional[str]]


class JsonRpcError(Exception):
    def __init__(self, error: Any) -> None:
        if isinstance(error, dict):
            self.code = error.get("code")
            self.message = str(error.get("message", ""))
            self.data = error.get("data")
        else:
            self.code = None
            self.message = str(error)
            self.data = None
        super().__init__(f"JSON-RPC error {self.code}: {self.message}")

    @property
    def is_revert(self) -> bool:
        return self.code == 3 or "revert" in self.message.lower()


class JsonRpcClient:
    def __init__(
        self,
        url: str,
        rate_limit_per_second: float = 5.0,
        max_retries: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 20.0,
        timeout: float = 30.0,
        on_exhausted: Optional[ExhaustedHandler] = None,
        sleep: Callable[[float], None] = time.sleep,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.rate_limit_per_second = rate_limit_per_second
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self.on_exhausted = on_exhausted
        self._sleep = sleep
        self._last_request_at = 0.0
        self._ids = itertools.count(1)
        self.session = session or requests.Session()

    def set_endpoint(self, url: str) -> None:
        logger.warning("Switching RPC endpoint %s -> %s", self.url, url)
        self.url = url

    def _sleep_for_rate_limit(self) -> None:
        if self.rate_limit_per_second <= 0:
            return
        min_interval = 1.0 / max(self.rate_limit_per_second, 0.1)
        elapsed = time.time() - self._last_request_at
        if elapsed < min_interval:
            self._sleep(min_interval - elapsed)

    def _backoff(self, attempt: int) -> float:
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        return delay * (0.5 + random.random())

    def _post(self, payload: Any) -> Any:
        response = self.session.post(
            self.url,
            json=payload,
            headers={"content-type": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def call(self, method: str, params: Sequence[Any] = ()) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        last_exc: Optional[BaseException] = None
        for attempt in range(self.max_retries):
            self._sleep_for_rate_limit()
            self._last_request_at = time.time()
            try:
                body = self._post(payload)
                if not isinstance(body, dict):
                    raise JsonRpcError(f"unexpected response body {body!r}")
                if body.get("error"):
                    raise JsonRpcError(body["error"])
                return body.get("result")
            except JsonRpcError as exc:
                if exc.is_revert:
                    raise CallReverted(exc.message, exc.data) from exc
                last_exc = exc
            except (requests.RequestException, ValueError) as exc:
                last_exc = exc
            logger.warning(
                "RPC %s failed (attempt %d/%d): %s", method, attempt + 1, self.max_retries, last_exc
            )
            if attempt < self.max_retries - 1:
                self._sleep(self._backoff(attempt))
        self._exhausted(method, last_exc)

    def _exhausted(self, method: str, last_exc: Optional[BaseException]) -> None:
        if self.on_exhausted is not None:
            replacement = self.on_exhausted(last_exc)
            if replacement and replacement != self.url:
                self.set_endpoint(replacement)
        raise RpcExhausted(method, self.max_retries, last_exc)


def fallback_handler(fallback_url: str) -> ExhaustedHandler:
    """Exhaustion handler that offers ``fallback_url`` once."""
    offered = False

    def handler(last_error: BaseException) -> Optional[str]:
        nonlocal offered
        if offered or not fallback_url:
            return None
        offered = True
        logger.warning("Primary RPC exhausted (%s); failing over to fallback", last_error)
        return fallback_url

    return handler
