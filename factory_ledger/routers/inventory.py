from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from factory_ledger.db import get_db
from factory_ledger.dependencies import current_actor_id, get_app_notifier
from factory_ledger.models import ItemType, MovementType
from factory_ledger.services.cost_service import (
    finished_product_unit_cost,
    update_all_semi_finished_costs,
    update_finished_costs_for_packaging_material,
    update_finished_costs_for_semi_finished,
    update_semi_finished_cost,
    update_semi_finished_costs_for_raw_material,
)
from factory_ledger.services.movement_query_service import (
    PERIOD_LENGTHS,
    MovementFilters,
    get_item_movements,
    get_item_summary,
    get_statistics,
    list_movements,
    movement_to_dict,
)
from factory_ledger.services.movement_service import initialize_opening_movements, record_manual_movement
from factory_ledger.services.notification_service import Notifier

router = APIRouter(prefix='/inventory', tags=['inventory'])


class ManualMovementIn(BaseModel):
    item_id: int
    item_type: str
    movement_type: str
    quantity: Decimal
    reason: str | None = None


def _item_type(raw: str) -> ItemType:
    try:
        return ItemType(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f'Unknown item type: {raw}') from exc


@router.get('/movements')
def movements(
    item_type: str | None = None,
    movement_type: str | None = None,
    item_id: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int | None = None,
    offset: int = 0,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
):
    try:
        filters = MovementFilters(
            item_type=ItemType(item_type) if item_type else None,
            movement_type=MovementType(movement_type) if movement_type else None,
            item_id=item_id,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Invalid movement filter') from exc
    return [movement_to_dict(movement) for movement in list_movements(db, filters, notifier=notifier)]


@router.post('/movements', status_code=201)
def create_movement(
    payload: ManualMovementIn,
    db: Session = Depends(get_db),
    actor_id: str | None = Depends(current_actor_id),
    notifier: Notifier = Depends(get_app_notifier),
):
    since = notifier.mark()
    movement = record_manual_movement(
        db,
        item_id=payload.item_id,
        item_type=_item_type(payload.item_type),
        movement_type=payload.movement_type,
        quantity=payload.quantity,
        reason=payload.reason,
        user_id=actor_id,
        notifier=notifier,
    )
    if movement is None:
        db.rollback()
        messages = notifier.errors_since(since)
        raise HTTPException(status_code=400, detail=messages[-1] if messages else 'Movement rejected')
    db.commit()
    return movement_to_dict(movement)


@router.get('/movements/statistics')
def movement_statistics(
    period: str | None = None,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
):
    if period is not None and period.strip().lower() not in PERIOD_LENGTHS:
        raise HTTPException(status_code=400, detail=f'Unsupported period: {period}')
    stats = get_statistics(db, period=period, notifier=notifier)
    return {
        'period': period,
        'total_in': stats.total_in,
        'total_out': stats.total_out,
        'total_adjustments': stats.total_adjustments,
        'movements_by_type': stats.movements_by_type,
    }


@router.post('/movements/opening-balances')
def opening_balances(
    db: Session = Depends(get_db),
    actor_id: str | None = Depends(current_actor_id),
):
    recorded = initialize_opening_movements(db, user_id=actor_id)
    db.commit()
    return {'recorded': recorded}


@router.get('/items/{item_type}/{item_id}/movements')
def item_movements(
    item_type: str,
    item_id: int,
    limit: int | None = None,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
):
    rows = get_item_movements(db, item_id=item_id, item_type=_item_type(item_type), limit=limit, notifier=notifier)
    return [movement_to_dict(movement) for movement in rows]


@router.get('/items/{item_type}/{item_id}/summary')
def item_summary(item_type: str, item_id: int, db: Session = Depends(get_db)):
    summary = get_item_summary(db, item_id=item_id, item_type=_item_type(item_type))
    return {
        'item_id': summary.item_id,
        'item_type': summary.item_type.value,
        'total_in': summary.total_in,
        'total_out': summary.total_out,
        'total_adjustments': summary.total_adjustments,
        'movement_count': summary.movement_count,
        'last_balance': summary.last_balance,
    }


@router.post('/costs/semi-finished/{semi_finished_id}')
def recalculate_semi_finished(semi_finished_id: int, db: Session = Depends(get_db)):
    if not update_semi_finished_cost(db, semi_finished_id=semi_finished_id):
        raise HTTPException(status_code=404, detail='Semi-finished product not found or has no ingredients')
    finished_updated = update_finished_costs_for_semi_finished(db, semi_finished_id=semi_finished_id)
    db.commit()
    return {'semi_finished_id': semi_finished_id, 'finished_updated': finished_updated}


@router.post('/costs/raw-materials/{raw_material_id}')
def propagate_raw_material_cost(raw_material_id: int, db: Session = Depends(get_db)):
    updated = update_semi_finished_costs_for_raw_material(db, raw_material_id=raw_material_id)
    db.commit()
    return {'raw_material_id': raw_material_id, 'semi_finished_updated': updated}


@router.post('/costs/packaging-materials/{packaging_material_id}')
def propagate_packaging_cost(packaging_material_id: int, db: Session = Depends(get_db)):
    updated = update_finished_costs_for_packaging_material(db, packaging_material_id=packaging_material_id)
    db.commit()
    return {'packaging_material_id': packaging_material_id, 'finished_updated': updated}


@router.post('/costs/recalculate')
def recalculate_all(db: Session = Depends(get_db)):
    updated = update_all_semi_finished_costs(db)
    db.commit()
    return {'semi_finished_updated': updated}


@router.get('/costs/finished/{finished_id}')
def finished_cost(finished_id: int, db: Session = Depends(get_db)):
    check = finished_product_unit_cost(db, finished_id=finished_id)
    if check is None:
        raise HTTPException(status_code=404, detail='Finished product not found')
    return {
        'finished_id': check.finished_id,
        'stored_cost': check.stored_cost,
        'computed_cost': check.computed_cost,
        'effective_cost': check.effective_cost,
        'is_stale': check.is_stale,
    }
