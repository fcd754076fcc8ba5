from collections.abc import Callable

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from factory_ledger.config import settings
from factory_ledger.db import SessionLocal
from factory_ledger.events import EventBus
from factory_ledger.logging_config import configure_logging
from factory_ledger.routers import backup, events, finance, inventory
from factory_ledger.services.financial_commercial_bridge import CommercialEventDispatcher
from factory_ledger.services.inventory_event_service import InventoryEventDispatcher
from factory_ledger.services.notification_service import Notifier, get_notifier


def create_app(
    *,
    session_factory: Callable[[], Session] | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    configure_logging(level=settings.log_level)

    session_factory = session_factory or SessionLocal
    notifier = notifier or get_notifier()

    bus = EventBus()
    # stock first, then the financial mirror
    InventoryEventDispatcher(session_factory, notifier).register(bus)
    CommercialEventDispatcher(session_factory, notifier, bus).register(bus)

    app = FastAPI(title=settings.app_name)
    app.state.bus = bus
    app.state.notifier = notifier

    app.include_router(inventory.router)
    app.include_router(events.router)
    app.include_router(finance.router)
    app.include_router(backup.router)

    @app.get('/health', response_class=PlainTextResponse)
    def health() -> str:
        return 'ok'

    return app


app = create_app()
