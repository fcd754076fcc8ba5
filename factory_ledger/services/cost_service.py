from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from factory_ledger.models import (
    FinishedProduct,
    FinishedProductPackaging,
    PackagingMaterial,
    RawMaterial,
    SemiFinishedIngredient,
    SemiFinishedProduct,
    utcnow,
)

logger = logging.getLogger(__name__)

COST_QUANT = Decimal('0.0001')
_NUMBER_RE = re.compile(r'-?\d+(?:\.\d+)?')
_LEADING_NUMBER_RE = re.compile(r'^\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)')

FIELD_PRIORITIES: dict[str, tuple[str, ...]] = {
    'sales_price': ('sales_price', 'price'),
    'unit_cost': ('unit_cost', 'cost', 'cost_price'),
    'cost_price': ('cost_price', 'unit_cost', 'cost'),
    'quantity': ('quantity', 'qty'),
    'total_amount': ('total_amount', 'amount', 'total'),
    'amount': ('amount', 'total_amount', 'total'),
}
DEFAULT_FIELDS = ('value', 'amount', 'total', 'price', 'unit_cost', 'quantity')


@dataclass(frozen=True)
class IngredientCost:
    unit_cost: Decimal
    percentage: Decimal


@dataclass(frozen=True)
class PackagingCost:
    unit_cost: Decimal
    quantity: Decimal


@dataclass(frozen=True)
class FinishedCostCheck:
    finished_id: int
    stored_cost: Decimal
    computed_cost: Decimal
    effective_cost: Decimal

    @property
    def is_stale(self) -> bool:
        return self.computed_cost != 0 and self.computed_cost != self.stored_cost


def _dec(value) -> Decimal:
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal(str(ensure_numeric_value(value)))


def semi_finished_cost(ingredients, quantity=1) -> Decimal:
    """Σ(percentage / 100 * unit_cost) * quantity."""
    per_unit = sum(
        (_dec(ingredient.percentage) / Decimal('100') * _dec(ingredient.unit_cost) for ingredient in ingredients),
        Decimal('0'),
    )
    return per_unit * _dec(quantity)


def finished_product_cost(semi_finished, packaging_materials, semi_finished_qty_per_unit) -> Decimal:
    semi_cost = _dec(semi_finished.unit_cost if semi_finished is not None else None) * _dec(semi_finished_qty_per_unit)
    packaging_cost = sum(
        (_dec(material.unit_cost) * _dec(material.quantity) for material in packaging_materials),
        Decimal('0'),
    )
    return semi_cost + packaging_cost


def _finite(number: float) -> float:
    return number if math.isfinite(number) else 0.0


def _parse_leading_float(text: str) -> float:
    match = _LEADING_NUMBER_RE.match(text)
    if not match:
        return 0.0
    return _finite(float(match.group(1)))


def ensure_numeric_value(value, field_key: str | None = None) -> float:
    """Coerce inconsistently shaped upstream values (rows, joins, aggregates) to a float."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float, Decimal)):
        return _finite(float(value))
    if isinstance(value, str):
        return _parse_leading_float(value)
    if isinstance(value, dict):
        for key in FIELD_PRIORITIES.get(field_key or '', DEFAULT_FIELDS):
            candidate = value.get(key)
            if candidate is not None and not isinstance(candidate, dict):
                return ensure_numeric_value(candidate)
        try:
            serialized = json.dumps(value, default=str)
        except (TypeError, ValueError):
            serialized = str(value)
        match = _NUMBER_RE.search(serialized)
        if match:
            return _finite(float(match.group(0)))
        return 0.0
    return _parse_leading_float(str(value))


def _ingredient_costs(db: Session, semi_finished_id: int) -> list[IngredientCost]:
    rows = db.execute(
        select(SemiFinishedIngredient.percentage, RawMaterial.unit_cost)
        .join(RawMaterial, RawMaterial.id == SemiFinishedIngredient.raw_material_id)
        .where(SemiFinishedIngredient.semi_finished_id == semi_finished_id)
    ).all()
    return [IngredientCost(unit_cost=_dec(row.unit_cost), percentage=_dec(row.percentage)) for row in rows]


def _packaging_costs(db: Session, finished_id: int) -> list[PackagingCost]:
    rows = db.execute(
        select(FinishedProductPackaging.quantity, PackagingMaterial.unit_cost)
        .join(PackagingMaterial, PackagingMaterial.id == FinishedProductPackaging.packaging_material_id)
        .where(FinishedProductPackaging.finished_product_id == finished_id)
    ).all()
    return [PackagingCost(unit_cost=_dec(row.unit_cost), quantity=_dec(row.quantity)) for row in rows]


def compute_finished_product_cost(db: Session, finished: FinishedProduct) -> Decimal:
    semi = db.get(SemiFinishedProduct, finished.semi_finished_id) if finished.semi_finished_id else None
    return finished_product_cost(semi, _packaging_costs(db, finished.id), finished.semi_finished_quantity)


def update_semi_finished_cost(db: Session, *, semi_finished_id: int) -> bool:
    semi = db.get(SemiFinishedProduct, semi_finished_id)
    if semi is None:
        logger.warning('Semi-finished product not found', extra={'semi_finished_id': semi_finished_id})
        return False
    ingredients = _ingredient_costs(db, semi_finished_id)
    if not ingredients:
        logger.warning('Semi-finished product has no ingredients', extra={'semi_finished_id': semi_finished_id})
        return False

    old_cost = semi.unit_cost
    semi.unit_cost = semi_finished_cost(ingredients).quantize(COST_QUANT)
    semi.updated_at = utcnow()
    db.flush()
    logger.info(
        'Semi-finished cost updated',
        extra={'semi_finished_id': semi_finished_id, 'old_cost': old_cost, 'new_cost': semi.unit_cost},
    )
    return True


def update_finished_product_cost(db: Session, *, finished_id: int) -> bool:
    finished = db.get(FinishedProduct, finished_id)
    if finished is None:
        logger.warning('Finished product not found', extra={'finished_id': finished_id})
        return False
    finished.unit_cost = compute_finished_product_cost(db, finished).quantize(COST_QUANT)
    finished.updated_at = utcnow()
    db.flush()
    return True


def update_finished_costs_for_semi_finished(db: Session, *, semi_finished_id: int) -> int:
    finished_ids = db.execute(
        select(FinishedProduct.id).where(FinishedProduct.semi_finished_id == semi_finished_id)
    ).scalars()
    return sum(1 for finished_id in list(finished_ids) if update_finished_product_cost(db, finished_id=finished_id))


def update_finished_costs_for_packaging_material(db: Session, *, packaging_material_id: int) -> int:
    finished_ids = sorted(
        set(
            db.execute(
                select(FinishedProductPackaging.finished_product_id).where(
                    FinishedProductPackaging.packaging_material_id == packaging_material_id
                )
            ).scalars()
        )
    )
    return sum(1 for finished_id in finished_ids if update_finished_product_cost(db, finished_id=finished_id))


def update_semi_finished_costs_for_raw_material(db: Session, *, raw_material_id: int, cascade: bool = True) -> int:
    """Recompute every semi-finished product that uses the raw material, then their finished products."""
    semi_ids = sorted(
        set(
            db.execute(
                select(SemiFinishedIngredient.semi_finished_id).where(
                    SemiFinishedIngredient.raw_material_id == raw_material_id
                )
            ).scalars()
        )
    )
    updated = 0
    for semi_id in semi_ids:
        if update_semi_finished_cost(db, semi_finished_id=semi_id):
            updated += 1
            if cascade:
                update_finished_costs_for_semi_finished(db, semi_finished_id=semi_id)
    return updated


def update_all_semi_finished_costs(db: Session) -> int:
    try:
        semi_ids = list(db.execute(select(SemiFinishedProduct.id).order_by(SemiFinishedProduct.id.asc())).scalars())
        return sum(1 for semi_id in semi_ids if update_semi_finished_cost(db, semi_finished_id=semi_id))
    except SQLAlchemyError:
        logger.exception('Failed to update semi-finished costs')
        return 0


def finished_product_unit_cost(db: Session, *, finished_id: int) -> FinishedCostCheck | None:
    """Read path: recompute and compare, keeping the stored cost only when the recompute is 0."""
    finished = db.get(FinishedProduct, finished_id)
    if finished is None:
        return None
    stored = _dec(finished.unit_cost)
    computed = compute_finished_product_cost(db, finished)
    return FinishedCostCheck(
        finished_id=finished_id,
        stored_cost=stored,
        computed_cost=computed,
        effective_cost=computed if computed != 0 else stored,
    )
