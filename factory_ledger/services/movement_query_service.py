from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from factory_ledger.config import settings
from factory_ledger.models import InventoryMovement, ItemType, MovementType, utcnow
from factory_ledger.services.notification_service import Notifier, get_notifier

logger = logging.getLogger(__name__)

PERIOD_LENGTHS = {
    'day': timedelta(days=1),
    'week': timedelta(days=7),
    'month': timedelta(days=30),
    'year': timedelta(days=365),
}


@dataclass(frozen=True)
class MovementFilters:
    item_type: ItemType | None = None
    movement_type: MovementType | None = None
    item_id: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    limit: int | None = None
    offset: int = 0


@dataclass(frozen=True)
class MovementStatistics:
    total_in: Decimal = Decimal('0')
    total_out: Decimal = Decimal('0')
    total_adjustments: Decimal = Decimal('0')
    movements_by_type: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ItemMovementSummary:
    item_id: str
    item_type: ItemType
    total_in: Decimal
    total_out: Decimal
    total_adjustments: Decimal
    movement_count: int
    last_balance: Decimal | None


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def movement_to_dict(movement: InventoryMovement) -> dict:
    return {
        'id': movement.id,
        'item_id': movement.item_id,
        'item_type': movement.item_type.value,
        'movement_type': movement.movement_type.value,
        'quantity': movement.quantity,
        'balance_after': movement.balance_after,
        'reason': movement.reason,
        'user_id': movement.user_id,
        'reference_type': movement.reference_type,
        'reference_id': movement.reference_id,
        'direction': movement.direction.value if movement.direction else None,
        'created_at': movement.created_at,
    }


def _filter_conditions(filters: MovementFilters) -> list:
    conditions = []
    if filters.item_type is not None:
        conditions.append(InventoryMovement.item_type == ItemType(filters.item_type))
    if filters.movement_type is not None:
        conditions.append(InventoryMovement.movement_type == MovementType(filters.movement_type))
    if filters.item_id is not None:
        conditions.append(InventoryMovement.item_id == str(filters.item_id))
    if filters.date_from is not None:
        conditions.append(InventoryMovement.created_at >= _day_start(filters.date_from))
    if filters.date_to is not None:
        # inclusive end date
        conditions.append(InventoryMovement.created_at < _day_start(filters.date_to + timedelta(days=1)))
    return conditions


def list_movements(
    db: Session,
    filters: MovementFilters | None = None,
    *,
    notifier: Notifier | None = None,
) -> list[InventoryMovement]:
    filters = filters or MovementFilters()
    limit = filters.limit if filters.limit and filters.limit > 0 else settings.movement_page_size
    conditions = _filter_conditions(filters)
    stmt = select(InventoryMovement)
    if conditions:
        stmt = stmt.where(and_(*conditions))
    stmt = (
        stmt.order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
        .offset(max(filters.offset, 0))
        .limit(limit)
    )
    try:
        return list(db.execute(stmt).scalars())
    except SQLAlchemyError:
        logger.exception('Failed to list inventory movements')
        (notifier or get_notifier()).error('Failed to load inventory movements')
        return []


def get_item_movements(
    db: Session,
    *,
    item_id: int | str,
    item_type: ItemType | str,
    limit: int | None = None,
    notifier: Notifier | None = None,
) -> list[InventoryMovement]:
    return list_movements(
        db,
        MovementFilters(item_type=ItemType(item_type), item_id=str(item_id), limit=limit),
        notifier=notifier,
    )


def get_statistics(
    db: Session,
    *,
    period: str | None = None,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> MovementStatistics:
    """Sum movement magnitudes per movement type.

    ``period`` selects a trailing window ending now; without one every movement counts.
    An unknown period yields zeroed statistics and an error notice.
    """
    window_start = None
    if period is not None:
        period = period.strip().lower()
        if period not in PERIOD_LENGTHS:
            logger.warning('Unsupported statistics period', extra={'period': period})
            (notifier or get_notifier()).error(f'Unsupported period: {period}')
            return MovementStatistics()
        window_start = (now or utcnow()) - PERIOD_LENGTHS[period]

    totals_stmt = select(InventoryMovement.movement_type, func.sum(func.abs(InventoryMovement.quantity)))
    by_item_stmt = select(InventoryMovement.item_type, func.count(InventoryMovement.id))
    if window_start is not None:
        totals_stmt = totals_stmt.where(InventoryMovement.created_at >= window_start)
        by_item_stmt = by_item_stmt.where(InventoryMovement.created_at >= window_start)
    totals_stmt = totals_stmt.group_by(InventoryMovement.movement_type)
    by_item_stmt = by_item_stmt.group_by(InventoryMovement.item_type)
    try:
        totals = {MovementType(row[0]): Decimal(str(row[1] or 0)) for row in db.execute(totals_stmt).all()}
        by_item = {ItemType(row[0]).value: int(row[1] or 0) for row in db.execute(by_item_stmt).all()}
    except SQLAlchemyError:
        logger.exception('Failed to compute movement statistics', extra={'period': period})
        (notifier or get_notifier()).error('Failed to load inventory movement statistics')
        return MovementStatistics()

    return MovementStatistics(
        total_in=totals.get(MovementType.IN, Decimal('0')),
        total_out=totals.get(MovementType.OUT, Decimal('0')),
        total_adjustments=totals.get(MovementType.ADJUSTMENT, Decimal('0')),
        movements_by_type=by_item,
    )


def get_item_summary(db: Session, *, item_id: int | str, item_type: ItemType | str) -> ItemMovementSummary:
    item_type = ItemType(item_type)
    item_key = str(item_id)
    rows = db.execute(
        select(
            InventoryMovement.movement_type,
            func.sum(InventoryMovement.quantity),
            func.count(InventoryMovement.id),
        )
        .where(InventoryMovement.item_type == item_type, InventoryMovement.item_id == item_key)
        .group_by(InventoryMovement.movement_type)
    ).all()
    totals = {MovementType(row[0]): Decimal(str(row[1] or 0)) for row in rows}
    count = sum(int(row[2] or 0) for row in rows)
    last_balance = db.execute(
        select(InventoryMovement.balance_after)
        .where(InventoryMovement.item_type == item_type, InventoryMovement.item_id == item_key)
        .order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    return ItemMovementSummary(
        item_id=item_key,
        item_type=item_type,
        total_in=totals.get(MovementType.IN, Decimal('0')),
        total_out=totals.get(MovementType.OUT, Decimal('0')),
        total_adjustments=totals.get(MovementType.ADJUSTMENT, Decimal('0')),
        movement_count=count,
        last_balance=last_balance,
    )
