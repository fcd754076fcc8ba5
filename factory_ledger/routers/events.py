from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from factory_ledger.db import get_db
from factory_ledger.dependencies import current_actor_id, get_bus
from factory_ledger.events import EventBus, StatusChange
from factory_ledger.services.inventory_event_service import BatchReport
from factory_ledger.services.status_service import change_status

router = APIRouter(prefix='/events', tags=['events'])


class StatusChangeIn(BaseModel):
    status: str


def _report_to_dict(report: BatchReport) -> dict:
    return {
        'reference_type': report.reference_type,
        'reference_id': report.reference_id,
        'direction': report.direction.value if report.direction else None,
        'applied': report.applied,
        'partial': report.partial,
        'error': report.error,
        'skipped_reason': report.skipped_reason,
        'results': [
            {
                'item_type': result.item_type.value,
                'item_key': result.item_key,
                'movement_type': result.movement_type.value,
                'quantity': result.quantity,
                'ok': result.ok,
                'balance_after': result.balance_after,
                'message': result.message,
            }
            for result in report.results
        ],
    }


def _handler_outcome(result):
    if isinstance(result, BatchReport):
        return _report_to_dict(result)
    return result


@router.post('/{entity}/{entity_id}/status')
def set_status(
    entity: str,
    entity_id: str,
    payload: StatusChangeIn,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_bus),
    actor_id: str | None = Depends(current_actor_id),
):
    try:
        event_name, change = change_status(db, entity=entity, entity_id=entity_id, status=payload.status)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()

    # handlers open their own sessions, so the status must be committed first
    change = StatusChange(
        entity_id=change.entity_id,
        status=change.status,
        previous_status=change.previous_status,
        actor_id=actor_id,
    )
    results = bus.publish(event_name, change)
    return {
        'event': event_name,
        'entity_id': change.entity_id,
        'status': change.status,
        'previous_status': change.previous_status,
        'handlers': [_handler_outcome(result) for result in results],
    }
