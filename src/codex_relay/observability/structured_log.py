import json
import logging
from datetime import datetime, timezone
from logging import Logger
from typing import Any, Dict

from codex_relay.util import redact


def log_json(logger: Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    payload: Dict[str, Any] = {"ts": datetime.now(timezone.utc).isoformat(), "event": event}
    for key, value in fields.items():
        payload[key] = redact(value) if isinstance(value, str) else value
    logger.log(level, json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str))
