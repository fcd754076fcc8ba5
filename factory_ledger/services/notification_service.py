from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from itertools import count

from factory_ledger.models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notice:
    level: str
    message: str
    seq: int = 0
    created_at: datetime = field(default_factory=utcnow)


class Notifier:
    """User-facing message sink. Keeps the most recent notices for the API to surface."""

    def __init__(self, max_notices: int = 100) -> None:
        self._notices: deque[Notice] = deque(maxlen=max_notices)
        self._seq = count(1)
        self._last_seq = 0

    def _push(self, level: str, message: str) -> None:
        self._last_seq = next(self._seq)
        self._notices.append(Notice(level=level, message=message, seq=self._last_seq))
        logger.log(
            logging.ERROR if level == 'error' else logging.INFO,
            message,
            extra={'notice_level': level},
        )

    def success(self, message: str) -> None:
        self._push('success', message)

    def info(self, message: str) -> None:
        self._push('info', message)

    def error(self, message: str) -> None:
        self._push('error', message)

    def mark(self) -> int:
        """Position to pass to errors_since() to see only notices pushed after this call."""
        return self._last_seq

    def errors_since(self, mark: int) -> list[str]:
        return [notice.message for notice in self._notices if notice.level == 'error' and notice.seq > mark]

    @property
    def notices(self) -> list[Notice]:
        return list(self._notices)

    def drain(self) -> list[Notice]:
        items = list(self._notices)
        self._notices.clear()
        return items


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    return Notifier()
