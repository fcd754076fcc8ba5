from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from factory_ledger.errors import InsufficientStockError
from factory_ledger.models import (
    FinishedProduct,
    ItemType,
    PackagingMaterial,
    RawMaterial,
    SemiFinishedProduct,
    utcnow,
)

InventoryItem = RawMaterial | SemiFinishedProduct | PackagingMaterial | FinishedProduct


@dataclass(frozen=True)
class ItemRepository:
    item_type: ItemType
    model: type[InventoryItem]

    def get(self, db: Session, item_id: int) -> InventoryItem | None:
        return db.get(self.model, item_id)

    def get_by_code(self, db: Session, code: str) -> InventoryItem | None:
        return db.execute(select(self.model).where(self.model.code == code)).scalar_one_or_none()

    def list_all(self, db: Session) -> list[InventoryItem]:
        return list(db.execute(select(self.model).order_by(self.model.id.asc())).scalars())

    def current_quantity(self, db: Session, item_id: int) -> Decimal | None:
        return db.execute(select(self.model.quantity).where(self.model.id == item_id)).scalar_one_or_none()

    def apply_delta(self, db: Session, item_id: int, delta: Decimal) -> Decimal:
        """Add ``delta`` to on-hand stock in one conditional UPDATE and return the new quantity.

        Raises InsufficientStockError when the result would be negative and
        LookupError when the item does not exist.
        """
        delta = Decimal(delta)
        result = db.execute(
            update(self.model)
            .where(self.model.id == item_id, self.model.quantity + delta >= 0)
            .values(quantity=self.model.quantity + delta, updated_at=utcnow())
        )
        new_quantity = self.current_quantity(db, item_id)
        if result.rowcount == 0:
            if new_quantity is None:
                raise LookupError(f'{self.item_type.value} item {item_id} not found')
            raise InsufficientStockError(
                f'Insufficient stock for {self.item_type.value} item {item_id}: '
                f'available {new_quantity}, requested {-delta}'
            )
        return new_quantity

    def set_unit_cost(self, db: Session, item_id: int, unit_cost: Decimal) -> bool:
        result = db.execute(
            update(self.model)
            .where(self.model.id == item_id)
            .values(unit_cost=unit_cost, updated_at=utcnow())
        )
        return result.rowcount > 0


_REPOSITORIES = {
    ItemType.RAW: ItemRepository(ItemType.RAW, RawMaterial),
    ItemType.SEMI: ItemRepository(ItemType.SEMI, SemiFinishedProduct),
    ItemType.PACKAGING: ItemRepository(ItemType.PACKAGING, PackagingMaterial),
    ItemType.FINISHED: ItemRepository(ItemType.FINISHED, FinishedProduct),
}


def repository_for(item_type: ItemType | str) -> ItemRepository:
    return _REPOSITORIES[ItemType(item_type)]


def all_repositories() -> list[ItemRepository]:
    return list(_REPOSITORIES.values())
