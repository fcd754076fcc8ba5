from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from factory_ledger.events import (
    INVOICE_STATUS_CHANGE,
    PACKAGING_ORDER_STATUS_CHANGE,
    PRODUCTION_ORDER_STATUS_CHANGE,
    RETURN_STATUS_CHANGE,
    StatusChange,
)
from factory_ledger.models import DocumentStatus, Invoice, OrderStatus, PackagingOrder, ProductionOrder, Return


@dataclass(frozen=True)
class StatusTarget:
    model: type
    status_field: str
    status_enum: type
    event_name: str
    integer_id: bool


STATUS_TARGETS = {
    'production-orders': StatusTarget(ProductionOrder, 'status', OrderStatus, PRODUCTION_ORDER_STATUS_CHANGE, True),
    'packaging-orders': StatusTarget(PackagingOrder, 'status', OrderStatus, PACKAGING_ORDER_STATUS_CHANGE, True),
    'invoices': StatusTarget(Invoice, 'payment_status', DocumentStatus, INVOICE_STATUS_CHANGE, False),
    'returns': StatusTarget(Return, 'payment_status', DocumentStatus, RETURN_STATUS_CHANGE, False),
}


def change_status(db: Session, *, entity: str, entity_id: str, status: str) -> tuple[str, StatusChange]:
    """Set a document's status and describe the transition for the event bus.

    Raises LookupError for an unknown entity or id and ValueError for an unknown status.
    """
    target = STATUS_TARGETS.get(entity)
    if target is None:
        raise LookupError(f'Unknown entity: {entity}')
    try:
        new_status = target.status_enum(status)
    except ValueError as exc:
        raise ValueError(f'Unsupported status: {status}') from exc

    key: int | str = entity_id
    if target.integer_id:
        if not str(entity_id).isdigit():
            raise LookupError(f'{entity} {entity_id} not found')
        key = int(entity_id)
    row = db.get(target.model, key)
    if row is None:
        raise LookupError(f'{entity} {entity_id} not found')

    previous = getattr(row, target.status_field)
    setattr(row, target.status_field, new_status)
    db.flush()
    change = StatusChange(
        entity_id=str(row.id),
        status=new_status.value,
        previous_status=previous.value if previous is not None else None,
    )
    return target.event_name, change
