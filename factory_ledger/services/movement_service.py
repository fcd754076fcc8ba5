from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from factory_ledger.errors import LedgerError
from factory_ledger.models import InventoryMovement, ItemType, MovementDirection, MovementType
from factory_ledger.services.item_repository import all_repositories, repository_for
from factory_ledger.services.notification_service import Notifier, get_notifier

logger = logging.getLogger(__name__)

OPENING_BALANCE_REASON = 'opening balance'
ADJUSTMENT_REASON = 'inventory adjustment'


def _to_decimal(value, *, field_name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f'{field_name} must be numeric') from exc


def append_movement(
    db: Session,
    *,
    item_id: int | str,
    item_type: ItemType | str,
    movement_type: MovementType | str,
    quantity,
    balance_after,
    reason: str | None = None,
    user_id: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    direction: MovementDirection | None = None,
) -> InventoryMovement:
    """Append one movement row. Quantity is stored as a magnitude; direction lives in movement_type."""
    movement = InventoryMovement(
        item_id=str(item_id),
        item_type=ItemType(item_type),
        movement_type=MovementType(movement_type),
        quantity=abs(_to_decimal(quantity, field_name='quantity')),
        balance_after=_to_decimal(balance_after, field_name='balance_after'),
        reason=reason,
        user_id=user_id,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        direction=direction,
    )
    db.add(movement)
    db.flush()
    return movement


def record_movement(
    db: Session,
    *,
    item_id: int | str,
    item_type: ItemType | str,
    movement_type: MovementType | str,
    quantity,
    balance_after,
    reason: str | None = None,
    user_id: str | None = None,
    notifier: Notifier | None = None,
) -> bool:
    notifier = notifier or get_notifier()
    try:
        with db.begin_nested():
            append_movement(
                db,
                item_id=item_id,
                item_type=item_type,
                movement_type=movement_type,
                quantity=quantity,
                balance_after=balance_after,
                reason=reason,
                user_id=user_id,
            )
    except ValueError as exc:
        logger.warning('Rejected inventory movement: %s', exc, extra={'item_id': str(item_id)})
        notifier.error(f'Invalid inventory movement: {exc}')
        return False
    except SQLAlchemyError:
        logger.exception(
            'Failed to record inventory movement',
            extra={'item_id': str(item_id), 'item_type': str(item_type)},
        )
        notifier.error('Failed to record inventory movement')
        return False
    return True


def record_incoming(
    db: Session,
    *,
    item_id: int | str,
    item_type: ItemType | str,
    quantity,
    balance_after,
    reason: str | None = None,
    user_id: str | None = None,
    notifier: Notifier | None = None,
) -> bool:
    return record_movement(
        db,
        item_id=item_id,
        item_type=item_type,
        movement_type=MovementType.IN,
        quantity=quantity,
        balance_after=balance_after,
        reason=reason,
        user_id=user_id,
        notifier=notifier,
    )


def record_outgoing(
    db: Session,
    *,
    item_id: int | str,
    item_type: ItemType | str,
    quantity,
    balance_after,
    reason: str | None = None,
    user_id: str | None = None,
    notifier: Notifier | None = None,
) -> bool:
    return record_movement(
        db,
        item_id=item_id,
        item_type=item_type,
        movement_type=MovementType.OUT,
        quantity=quantity,
        balance_after=balance_after,
        reason=reason,
        user_id=user_id,
        notifier=notifier,
    )


def record_adjustment(
    db: Session,
    *,
    item_id: int | str,
    item_type: ItemType | str,
    quantity,
    balance_after,
    reason: str | None = None,
    user_id: str | None = None,
    notifier: Notifier | None = None,
) -> bool:
    return record_movement(
        db,
        item_id=item_id,
        item_type=item_type,
        movement_type=MovementType.ADJUSTMENT,
        quantity=quantity,
        balance_after=balance_after,
        reason=reason or ADJUSTMENT_REASON,
        user_id=user_id,
        notifier=notifier,
    )


def record_manual_movement(
    db: Session,
    *,
    item_id: int,
    item_type: ItemType | str,
    movement_type: MovementType | str,
    quantity,
    reason: str | None = None,
    user_id: str | None = None,
    notifier: Notifier | None = None,
) -> InventoryMovement | None:
    """Operator-entered movement: applies the stock change and records it together.

    ``in`` adds, ``out`` subtracts, ``adjustment`` applies the signed quantity.
    """
    notifier = notifier or get_notifier()
    try:
        movement_type = MovementType(movement_type)
        amount = _to_decimal(quantity, field_name='quantity')
        if movement_type != MovementType.ADJUSTMENT and amount <= 0:
            raise ValueError('quantity must be greater than 0')
        if amount == 0:
            raise ValueError('adjustment quantity cannot be 0')
        if movement_type == MovementType.IN:
            delta = amount
        elif movement_type == MovementType.OUT:
            delta = -amount
        else:
            delta = amount
        repo = repository_for(item_type)
        with db.begin_nested():
            new_quantity = repo.apply_delta(db, item_id, delta)
            movement = append_movement(
                db,
                item_id=item_id,
                item_type=repo.item_type,
                movement_type=movement_type,
                quantity=amount,
                balance_after=new_quantity,
                reason=reason or (ADJUSTMENT_REASON if movement_type == MovementType.ADJUSTMENT else None),
                user_id=user_id,
                reference_type='manual',
            )
    except (ValueError, LookupError, LedgerError) as exc:
        logger.warning('Manual movement rejected: %s', exc, extra={'item_id': str(item_id)})
        notifier.error(str(exc))
        return None
    except SQLAlchemyError:
        logger.exception('Failed to record manual movement', extra={'item_id': str(item_id)})
        notifier.error('Failed to record inventory movement')
        return None
    notifier.success('Inventory movement recorded')
    return movement


def has_movements(db: Session) -> bool:
    return (db.execute(select(func.count(InventoryMovement.id))).scalar_one() or 0) > 0


def initialize_opening_movements(db: Session, *, user_id: str | None = None) -> int:
    """Seed one opening-balance movement per stocked item when the ledger is still empty."""
    if has_movements(db):
        return 0

    recorded = 0
    for repo in all_repositories():
        for item in repo.list_all(db):
            if item.quantity is None or item.quantity <= 0:
                continue
            append_movement(
                db,
                item_id=item.id,
                item_type=repo.item_type,
                movement_type=MovementType.IN,
                quantity=item.quantity,
                balance_after=item.quantity,
                reason=OPENING_BALANCE_REASON,
                user_id=user_id,
                reference_type='opening_balance',
            )
            recorded += 1
    logger.info('Initialized opening inventory movements', extra={'recorded': recorded})
    return recorded
