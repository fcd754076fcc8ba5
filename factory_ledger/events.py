from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

PRODUCTION_ORDER_STATUS_CHANGE = 'production-order-status-change'
PACKAGING_ORDER_STATUS_CHANGE = 'packaging-order-status-change'
INVOICE_STATUS_CHANGE = 'invoice-status-change'
RETURN_STATUS_CHANGE = 'return-status-change'
FINANCIAL_DATA_CHANGE = 'financial-data-change'

EVENT_NAMES = (
    PRODUCTION_ORDER_STATUS_CHANGE,
    PACKAGING_ORDER_STATUS_CHANGE,
    INVOICE_STATUS_CHANGE,
    RETURN_STATUS_CHANGE,
    FINANCIAL_DATA_CHANGE,
)


@dataclass(frozen=True)
class StatusChange:
    entity_id: str
    status: str
    previous_status: str | None = None
    actor_id: str | None = None

    def crossed_into(self, boundary: str) -> bool:
        return self.status == boundary and self.previous_status != boundary

    def crossed_out_of(self, boundary: str) -> bool:
        return self.previous_status == boundary and self.status != boundary


@dataclass(frozen=True)
class FinancialDataChange:
    source: str
    reference_id: str | None = None


Handler = Callable[[Any], Any]


class EventBus:
    """Explicit publish/subscribe dispatcher owned by the application.

    Handlers run synchronously in registration order. A failing handler is logged
    and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Handler) -> None:
        if event_name not in EVENT_NAMES:
            raise ValueError(f'Unknown event: {event_name}')
        self._handlers[event_name].append(handler)

    def handlers_for(self, event_name: str) -> list[Handler]:
        return list(self._handlers.get(event_name, []))

    def publish(self, event_name: str, payload: Any) -> list[Any]:
        results: list[Any] = []
        for handler in self.handlers_for(event_name):
            try:
                results.append(handler(payload))
            except Exception:
                logger.exception('Event handler failed', extra={'event_name': event_name})
                results.append(None)
        return results
