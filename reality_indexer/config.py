import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from reality_indexer.contracts import DEFAULT_MODULE_ADDRESS, DEFAULT_ORACLE_ADDRESS

ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_CONFIG_PATH = "config/settings.yaml"
DEFAULT_RPC = "https://ethereum-rpc.publicnode.com"
SECONDS_PER_DAY = 86400


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        def replace(match: re.Match) -> str:
            key = match.group(1)
            return os.environ.get(key, "")

        return ENV_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_yaml(path: str) -> Dict[str, Any]:
    data = yaml.safe_load(Path(path).read_text())
    return _expand_env(data) or {}


@dataclass
class Settings:
    rpc_url: str = DEFAULT_RPC
    rpc_fallback: str = ""
    chain_id: Optional[int] = None
    module_address: str = DEFAULT_MODULE_ADDRESS
    oracle_address: str = DEFAULT_ORACLE_ADDRESS
    backfill_days: float = 7.0
    poll_interval_sec: float = 30.0
    log_chunk_size: int = 5000
    max_retries: int = 3
    base_delay: float = 2.0
    max_delay: float = 20.0
    rate_limit_per_second: float = 5.0
    request_timeout: float = 30.0
    confirmations: int = 0
    block_time: int = 12
    answer_lookback_blocks: int = 100000
    db_path: str = "reality_indexer.db"
    dlq_path: Optional[str] = "./dlq"

    @property
    def backfill_seconds(self) -> int:
        return int(self.backfill_days * SECONDS_PER_DAY)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """Build settings from a mapping, ignoring unknown keys and blank values."""
        kwargs: Dict[str, Any] = {}
        for spec in fields(cls):
            value = data.get(spec.name)
            if value is None or value == "":
                continue
            default = spec.default
            if isinstance(default, int):
                value = int(value)
            elif isinstance(default, float):
                value = float(value)
            elif spec.name == "chain_id":
                value = int(value)
            kwargs[spec.name] = value
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str = DEFAULT_CONFIG_PATH) -> "Settings":
        if not Path(path).exists():
            return cls()
        data = load_yaml(path)
        # Both a flat file and a file with a top-level "indexer" section are accepted
        if isinstance(data.get("indexer"), dict):
            data = data["indexer"]
        return cls.from_dict(data)
