import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class DeadLetterQueue:
    """Collects items that failed in isolation so a batch can continue."""

    def __init__(self, local_path: Optional[str] = "./dlq") -> None:
        self.local_path = Path(local_path) if local_path else None
        if self.local_path is not None:
            self.local_path.mkdir(parents=True, exist_ok=True)
        self.entries: List[Dict[str, Any]] = []

    def send(
        self,
        record: Dict[str, Any],
        error: Exception,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        payload = {
            "timestamp": now.isoformat(),
            "record": record,
            "error_type": type(error).__name__,
            "error_message": str(error),
            "retryable": bool(getattr(error, "retryable", False)),
            "context": context or {},
        }
        self.entries.append(payload)
        logger.warning("Dead-lettered %s: %s", type(error).__name__, error)
        if self.local_path is None:
            return
        filename = self.local_path / f"{now.strftime('%Y%m%d_%H%M%S_%f')}_{len(self.entries)}.json"
        filename.write_text(json.dumps(payload, default=str))
