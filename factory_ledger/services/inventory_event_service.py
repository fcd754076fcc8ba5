from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from factory_ledger.errors import InsufficientStockError
from factory_ledger.events import (
    INVOICE_STATUS_CHANGE,
    PACKAGING_ORDER_STATUS_CHANGE,
    PRODUCTION_ORDER_STATUS_CHANGE,
    RETURN_STATUS_CHANGE,
    EventBus,
    StatusChange,
)
from factory_ledger.models import (
    DocumentStatus,
    InventoryMovement,
    Invoice,
    InvoiceItem,
    InvoiceType,
    ItemType,
    MovementDirection,
    MovementType,
    OrderStatus,
    PackagingOrder,
    PackagingOrderMaterial,
    ProductionOrder,
    ProductionOrderIngredient,
    Return,
    ReturnItem,
    ReturnType,
)
from factory_ledger.services.item_repository import repository_for
from factory_ledger.services.movement_service import append_movement
from factory_ledger.services.notification_service import Notifier, get_notifier

logger = logging.getLogger(__name__)

REF_PRODUCTION_ORDER = 'production_order'
REF_PACKAGING_ORDER = 'packaging_order'
REF_INVOICE = 'invoice'
REF_RETURN = 'return'

_OPPOSITE = {
    MovementType.IN: MovementType.OUT,
    MovementType.OUT: MovementType.IN,
}


@dataclass(frozen=True)
class PlannedLine:
    item_type: ItemType
    movement_type: MovementType
    quantity: Decimal
    reason: str
    item_id: int | None = None
    item_code: str | None = None

    @property
    def item_key(self) -> str:
        return str(self.item_id) if self.item_id is not None else f'code:{self.item_code}'


@dataclass(frozen=True)
class ItemResult:
    item_type: ItemType
    item_key: str
    movement_type: MovementType
    quantity: Decimal
    ok: bool
    balance_after: Decimal | None = None
    message: str | None = None


@dataclass
class BatchReport:
    reference_type: str
    reference_id: str
    direction: MovementDirection | None = None
    results: list[ItemResult] = field(default_factory=list)
    error: str | None = None
    skipped_reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def applied(self) -> bool:
        return self.direction is not None and self.error is None and self.skipped_reason is None

    @property
    def recorded(self) -> list[ItemResult]:
        return [result for result in self.results if result.ok]

    @property
    def skipped(self) -> list[ItemResult]:
        return [result for result in self.results if not result.ok]

    @property
    def partial(self) -> bool:
        """Some lines were recorded and some skipped.

        A partial reverse leaves the skipped lines unmirrored: the reference now reads as
        reversed, so those lines are not retried and a later forward run replans in full.
        """
        return bool(self.recorded) and bool(self.skipped)


def _last_direction(db: Session, reference_type: str, reference_id: str) -> MovementDirection | None:
    return db.execute(
        select(InventoryMovement.direction)
        .where(
            InventoryMovement.reference_type == reference_type,
            InventoryMovement.reference_id == reference_id,
            InventoryMovement.direction.is_not(None),
        )
        .order_by(InventoryMovement.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def _latest_forward_movements(db: Session, reference_type: str, reference_id: str) -> list[InventoryMovement]:
    last_reverse_id = db.execute(
        select(func.max(InventoryMovement.id)).where(
            InventoryMovement.reference_type == reference_type,
            InventoryMovement.reference_id == reference_id,
            InventoryMovement.direction == MovementDirection.REVERSE,
        )
    ).scalar_one_or_none()
    stmt = select(InventoryMovement).where(
        InventoryMovement.reference_type == reference_type,
        InventoryMovement.reference_id == reference_id,
        InventoryMovement.direction == MovementDirection.FORWARD,
    )
    if last_reverse_id is not None:
        stmt = stmt.where(InventoryMovement.id > last_reverse_id)
    return list(db.execute(stmt.order_by(InventoryMovement.id.asc())).scalars())


def _apply_line(
    db: Session,
    line: PlannedLine,
    *,
    reference_type: str,
    reference_id: str,
    direction: MovementDirection,
    user_id: str | None,
) -> ItemResult:
    repo = repository_for(line.item_type)
    quantity = abs(line.quantity)

    def _fail(message: str) -> ItemResult:
        logger.warning(
            'Skipped inventory movement: %s',
            message,
            extra={'reference_type': reference_type, 'reference_id': reference_id, 'item_key': line.item_key},
        )
        return ItemResult(
            item_type=line.item_type,
            item_key=line.item_key,
            movement_type=line.movement_type,
            quantity=quantity,
            ok=False,
            message=message,
        )

    item = repo.get(db, line.item_id) if line.item_id is not None else repo.get_by_code(db, line.item_code or '')
    if item is None:
        return _fail(f'{line.item_type.value} item {line.item_key} not found')

    delta = quantity if line.movement_type == MovementType.IN else -quantity
    try:
        with db.begin_nested():
            balance_after = repo.apply_delta(db, item.id, delta)
            append_movement(
                db,
                item_id=item.id,
                item_type=line.item_type,
                movement_type=line.movement_type,
                quantity=quantity,
                balance_after=balance_after,
                reason=line.reason,
                user_id=user_id,
                reference_type=reference_type,
                reference_id=reference_id,
                direction=direction,
            )
    except InsufficientStockError as exc:
        return _fail(str(exc))
    except SQLAlchemyError:
        logger.exception('Failed to apply inventory movement', extra={'item_key': line.item_key})
        return _fail('database error while recording movement')

    return ItemResult(
        item_type=line.item_type,
        item_key=str(item.id),
        movement_type=line.movement_type,
        quantity=quantity,
        ok=True,
        balance_after=balance_after,
    )


def apply_event_lines(
    db: Session,
    *,
    reference_type: str,
    reference_id: str,
    direction: MovementDirection,
    plan: Callable[[], list[PlannedLine]],
    reverse_reason: str,
    user_id: str | None = None,
) -> BatchReport:
    """Apply one business event's stock movements.

    Forward applications are skipped when the reference was already applied forward.
    Reverse applications mirror the latest forward batch recorded for the reference.
    """
    report = BatchReport(reference_type=reference_type, reference_id=reference_id, direction=direction)
    last = _last_direction(db, reference_type, reference_id)

    if direction == MovementDirection.FORWARD:
        if last == MovementDirection.FORWARD:
            report.skipped_reason = 'already applied'
            return report
        lines = plan()
    else:
        if last != MovementDirection.FORWARD:
            report.skipped_reason = 'nothing to reverse'
            return report
        lines = [
            PlannedLine(
                item_type=movement.item_type,
                item_id=int(movement.item_id),
                movement_type=_OPPOSITE.get(movement.movement_type, movement.movement_type),
                quantity=movement.quantity,
                reason=reverse_reason,
            )
            for movement in _latest_forward_movements(db, reference_type, reference_id)
        ]

    for line in lines:
        report.results.append(
            _apply_line(
                db,
                line,
                reference_type=reference_type,
                reference_id=reference_id,
                direction=direction,
                user_id=user_id,
            )
        )
    logger.info(
        'Applied inventory event',
        extra={
            'reference_type': reference_type,
            'reference_id': reference_id,
            'direction': direction.value,
            'recorded': len(report.recorded),
            'skipped': len(report.skipped),
        },
    )
    if report.partial and direction == MovementDirection.REVERSE:
        logger.warning(
            'Reverse left movements unmirrored',
            extra={
                'reference_type': reference_type,
                'reference_id': reference_id,
                'unmirrored': [result.item_key for result in report.skipped],
            },
        )
    return report


def _direction_for(change: StatusChange, boundary: str) -> MovementDirection | None:
    if change.crossed_into(boundary):
        return MovementDirection.FORWARD
    if change.crossed_out_of(boundary):
        return MovementDirection.REVERSE
    return None


def _int_id(raw: str) -> int | None:
    text = str(raw).strip()
    return int(text) if text.isdigit() else None


def _noop(reference_type: str, change: StatusChange) -> BatchReport:
    return BatchReport(
        reference_type=reference_type,
        reference_id=str(change.entity_id),
        skipped_reason='no boundary crossing',
    )


def _missing(reference_type: str, change: StatusChange, direction: MovementDirection, label: str) -> BatchReport:
    logger.warning('%s not found', label, extra={'reference_id': str(change.entity_id)})
    return BatchReport(
        reference_type=reference_type,
        reference_id=str(change.entity_id),
        direction=direction,
        error=f'{label} {change.entity_id} not found',
    )


def handle_production_order_status_change(
    db: Session, change: StatusChange, *, user_id: str | None = None
) -> BatchReport:
    direction = _direction_for(change, OrderStatus.COMPLETED.value)
    if direction is None:
        return _noop(REF_PRODUCTION_ORDER, change)

    order_id = _int_id(change.entity_id)
    order = db.get(ProductionOrder, order_id) if order_id is not None else None
    if order is None:
        return _missing(REF_PRODUCTION_ORDER, change, direction, 'Production order')

    def plan() -> list[PlannedLine]:
        ingredients = db.execute(
            select(ProductionOrderIngredient)
            .where(ProductionOrderIngredient.production_order_id == order.id)
            .order_by(ProductionOrderIngredient.id.asc())
        ).scalars()
        lines = [
            PlannedLine(
                item_type=ItemType.RAW,
                item_code=ingredient.raw_material_code,
                movement_type=MovementType.OUT,
                quantity=ingredient.required_quantity,
                reason=f'Consumed by production order {order.code}',
            )
            for ingredient in ingredients
        ]
        lines.append(
            PlannedLine(
                item_type=ItemType.SEMI,
                item_code=order.product_code,
                movement_type=MovementType.IN,
                quantity=order.quantity,
                reason=f'Produced by production order {order.code}',
            )
        )
        return lines

    return apply_event_lines(
        db,
        reference_type=REF_PRODUCTION_ORDER,
        reference_id=str(order.id),
        direction=direction,
        plan=plan,
        reverse_reason=f'Reversal of production order {order.code}',
        user_id=user_id,
    )


def handle_packaging_order_status_change(
    db: Session, change: StatusChange, *, user_id: str | None = None
) -> BatchReport:
    direction = _direction_for(change, OrderStatus.COMPLETED.value)
    if direction is None:
        return _noop(REF_PACKAGING_ORDER, change)

    order_id = _int_id(change.entity_id)
    order = db.get(PackagingOrder, order_id) if order_id is not None else None
    if order is None:
        return _missing(REF_PACKAGING_ORDER, change, direction, 'Packaging order')

    def plan() -> list[PlannedLine]:
        lines = [
            PlannedLine(
                item_type=ItemType.SEMI,
                item_code=order.semi_finished_code,
                movement_type=MovementType.OUT,
                quantity=order.semi_finished_quantity,
                reason=f'Consumed by packaging order {order.code}',
            )
        ]
        materials = db.execute(
            select(PackagingOrderMaterial)
            .where(PackagingOrderMaterial.packaging_order_id == order.id)
            .order_by(PackagingOrderMaterial.id.asc())
        ).scalars()
        lines.extend(
            PlannedLine(
                item_type=ItemType.PACKAGING,
                item_code=material.packaging_material_code,
                movement_type=MovementType.OUT,
                quantity=material.required_quantity,
                reason=f'Consumed by packaging order {order.code}',
            )
            for material in materials
        )
        lines.append(
            PlannedLine(
                item_type=ItemType.FINISHED,
                item_code=order.product_code,
                movement_type=MovementType.IN,
                quantity=order.quantity,
                reason=f'Produced by packaging order {order.code}',
            )
        )
        return lines

    return apply_event_lines(
        db,
        reference_type=REF_PACKAGING_ORDER,
        reference_id=str(order.id),
        direction=direction,
        plan=plan,
        reverse_reason=f'Reversal of packaging order {order.code}',
        user_id=user_id,
    )


def _document_lines(rows, *, movement_type: MovementType, reason: str) -> list[PlannedLine]:
    lines = []
    for row in rows:
        try:
            item_type = ItemType(row.item_type)
        except ValueError:
            logger.warning('Unknown item type on document line', extra={'item_type': str(row.item_type)})
            continue
        lines.append(
            PlannedLine(
                item_type=item_type,
                item_id=int(row.item_id),
                movement_type=movement_type,
                quantity=row.quantity,
                reason=reason,
            )
        )
    return lines


def handle_invoice_status_change(db: Session, change: StatusChange, *, user_id: str | None = None) -> BatchReport:
    direction = _direction_for(change, DocumentStatus.CONFIRMED.value)
    if direction is None:
        return _noop(REF_INVOICE, change)

    invoice = db.get(Invoice, str(change.entity_id))
    if invoice is None:
        return _missing(REF_INVOICE, change, direction, 'Invoice')

    is_sale = invoice.invoice_type == InvoiceType.SALE
    label = 'sales' if is_sale else 'purchase'

    def plan() -> list[PlannedLine]:
        items = db.execute(select(InvoiceItem).where(InvoiceItem.invoice_id == invoice.id)).scalars()
        return _document_lines(
            items,
            movement_type=MovementType.OUT if is_sale else MovementType.IN,
            reason=f'{label.capitalize()} invoice {invoice.id[:8]}',
        )

    return apply_event_lines(
        db,
        reference_type=REF_INVOICE,
        reference_id=invoice.id,
        direction=direction,
        plan=plan,
        reverse_reason=f'Cancellation of {label} invoice {invoice.id[:8]}',
        user_id=user_id,
    )


def handle_return_status_change(db: Session, change: StatusChange, *, user_id: str | None = None) -> BatchReport:
    direction = _direction_for(change, DocumentStatus.CONFIRMED.value)
    if direction is None:
        return _noop(REF_RETURN, change)

    return_doc = db.get(Return, str(change.entity_id))
    if return_doc is None:
        return _missing(REF_RETURN, change, direction, 'Return')

    is_sales_return = return_doc.return_type == ReturnType.SALES_RETURN
    label = 'sales return' if is_sales_return else 'purchase return'

    def plan() -> list[PlannedLine]:
        items = db.execute(select(ReturnItem).where(ReturnItem.return_id == return_doc.id)).scalars()
        return _document_lines(
            items,
            movement_type=MovementType.IN if is_sales_return else MovementType.OUT,
            reason=f'{label.capitalize()} {return_doc.id[:8]}',
        )

    return apply_event_lines(
        db,
        reference_type=REF_RETURN,
        reference_id=return_doc.id,
        direction=direction,
        plan=plan,
        reverse_reason=f'Cancellation of {label} {return_doc.id[:8]}',
        user_id=user_id,
    )


HANDLERS: dict[str, Callable[..., BatchReport]] = {
    PRODUCTION_ORDER_STATUS_CHANGE: handle_production_order_status_change,
    PACKAGING_ORDER_STATUS_CHANGE: handle_packaging_order_status_change,
    INVOICE_STATUS_CHANGE: handle_invoice_status_change,
    RETURN_STATUS_CHANGE: handle_return_status_change,
}


class InventoryEventDispatcher:
    """Runs each status-change handler in its own session and transaction."""

    def __init__(self, session_factory: Callable[[], Session], notifier: Notifier | None = None) -> None:
        self.session_factory = session_factory
        self.notifier = notifier or get_notifier()

    def handle(self, event_name: str, change: StatusChange, *, user_id: str | None = None) -> BatchReport:
        handler = HANDLERS[event_name]
        with self.session_factory() as db:
            try:
                report = handler(db, change, user_id=user_id or change.actor_id)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception('Inventory event failed', extra={'event_name': event_name})
                self.notifier.error('Failed to update inventory movements')
                return BatchReport(
                    reference_type=event_name,
                    reference_id=str(change.entity_id),
                    error='database error',
                )
        if report.error:
            self.notifier.error(report.error)
        elif report.skipped and report.direction == MovementDirection.REVERSE:
            self.notifier.error(f'{len(report.skipped)} inventory movement(s) could not be reversed')
        elif report.skipped:
            self.notifier.error(f'{len(report.skipped)} inventory movement(s) were skipped')
        return report

    def register(self, bus: EventBus) -> None:
        for event_name in HANDLERS:
            bus.subscribe(event_name, lambda change, _name=event_name: self.handle(_name, change))
