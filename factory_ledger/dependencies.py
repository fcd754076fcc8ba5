from fastapi import Request

from factory_ledger.config import settings
from factory_ledger.events import EventBus
from factory_ledger.services.notification_service import Notifier


def get_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_app_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def current_actor_id(request: Request) -> str | None:
    actor_id = request.headers.get('x-user-id')
    if actor_id and actor_id.strip():
        return actor_id.strip()
    return settings.default_actor_id
