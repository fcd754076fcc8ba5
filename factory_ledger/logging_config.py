"""JSON-line logging for the factory_ledger logger hierarchy."""
from __future__ import annotations

import json
import logging
import sys
import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

LOGGER_NAME = 'factory_ledger'

_STDLIB_KEYS: frozenset[str] = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None)).keys()) | {
    'message',
    'taskName',
}

_configured = False
_lock = threading.Lock()


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return str(value)


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            'ts': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = val
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc_type'] = type(record.exc_info[1]).__name__
            payload['exc_message'] = str(record.exc_info[1])
            payload['traceback'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_default)


def configure_logging(*, level: int | str = logging.INFO, handler: logging.Handler | None = None) -> None:
    """Install one JSON handler on the package logger. Safe to call more than once."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(LOGGER_NAME)
    root_logger.setLevel(level.upper() if isinstance(level, str) else level)
    root_logger.propagate = False

    h = handler or logging.StreamHandler(sys.stderr)
    h.setFormatter(JsonLineFormatter())
    root_logger.addHandler(h)


def reset_logging() -> None:
    global _configured
    with _lock:
        _configured = False
    root_logger = logging.getLogger(LOGGER_NAME)
    root_logger.handlers.clear()
    root_logger.setLevel(logging.WARNING)
    root_logger.propagate = True
