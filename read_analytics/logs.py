# read_analytics/logs.py
import json
import logging
from datetime import datetime, timezone

from read_analytics.config import LOG_LEVEL

logger = logging.getLogger("read_analytics")
if not logger.handlers:
    logger.setLevel(LOG_LEVEL)
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(_handler)


def log_event(event: str, level: int = logging.INFO, **fields: object) -> None:
    """Satu baris JSON per event (observability sink)."""
    payload = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
        **fields,
    }
    logger.log(level, json.dumps(payload, default=str))
