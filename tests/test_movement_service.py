from __future__ import annotations

import unittest
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from factory_ledger.db import build_engine
from factory_ledger.models import Base, FinishedProduct, InventoryMovement, ItemType, MovementType, RawMaterial
from factory_ledger.services.movement_service import (
    initialize_opening_movements,
    record_adjustment,
    record_incoming,
    record_manual_movement,
    record_movement,
    record_outgoing,
)
from factory_ledger.services.notification_service import Notifier


class MovementServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = build_engine('sqlite://')
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, expire_on_commit=False)()
        self.addCleanup(self.db.close)
        self.notifier = Notifier()

    def _movements(self) -> list[InventoryMovement]:
        return list(self.db.execute(select(InventoryMovement).order_by(InventoryMovement.id.asc())).scalars())

    def test_negative_quantity_is_stored_as_magnitude(self) -> None:
        ok = record_outgoing(
            self.db,
            item_id=7,
            item_type=ItemType.RAW,
            quantity=Decimal('-5'),
            balance_after=Decimal('15'),
            notifier=self.notifier,
        )

        self.assertTrue(ok)
        movement = self._movements()[0]
        self.assertEqual(movement.quantity, Decimal('5'))
        self.assertEqual(movement.movement_type, MovementType.OUT)
        self.assertEqual(movement.item_id, '7')
        self.assertEqual(movement.balance_after, Decimal('15'))

    def test_wrappers_set_movement_type(self) -> None:
        record_incoming(self.db, item_id=1, item_type='raw', quantity=2, balance_after=2, notifier=self.notifier)
        record_adjustment(self.db, item_id=1, item_type='raw', quantity=-1, balance_after=1, notifier=self.notifier)

        incoming, adjustment = self._movements()
        self.assertEqual(incoming.movement_type, MovementType.IN)
        self.assertEqual(adjustment.movement_type, MovementType.ADJUSTMENT)
        self.assertEqual(adjustment.quantity, Decimal('1'))
        self.assertEqual(adjustment.reason, 'inventory adjustment')

    def test_invalid_input_returns_false_and_notifies(self) -> None:
        ok = record_movement(
            self.db,
            item_id=1,
            item_type='raw',
            movement_type='sideways',
            quantity=1,
            balance_after=1,
            notifier=self.notifier,
        )

        self.assertFalse(ok)
        self.assertEqual(self._movements(), [])
        self.assertEqual(self.notifier.notices[-1].level, 'error')

    def test_non_numeric_quantity_returns_false(self) -> None:
        ok = record_incoming(
            self.db, item_id=1, item_type='raw', quantity='lots', balance_after=1, notifier=self.notifier
        )
        self.assertFalse(ok)

    @patch('factory_ledger.services.movement_service.append_movement')
    def test_storage_failure_returns_false(self, append_mock) -> None:
        append_mock.side_effect = SQLAlchemyError('disk full')

        ok = record_incoming(self.db, item_id=1, item_type='raw', quantity=3, balance_after=3, notifier=self.notifier)

        self.assertFalse(ok)
        self.assertIn('Failed to record inventory movement', self.notifier.notices[-1].message)

    def test_manual_movement_applies_stock_change(self) -> None:
        flour = RawMaterial(code='RM-1', name='Flour', quantity=Decimal('10'))
        self.db.add(flour)
        self.db.flush()

        movement = record_manual_movement(
            self.db,
            item_id=flour.id,
            item_type=ItemType.RAW,
            movement_type='out',
            quantity=4,
            reason='damaged',
            user_id='u-1',
            notifier=self.notifier,
        )

        self.assertIsNotNone(movement)
        self.assertEqual(movement.balance_after, Decimal('6'))
        self.assertEqual(movement.reference_type, 'manual')
        self.db.refresh(flour)
        self.assertEqual(flour.quantity, Decimal('6'))

    def test_manual_movement_rejects_overdraw(self) -> None:
        flour = RawMaterial(code='RM-1', name='Flour', quantity=Decimal('3'))
        self.db.add(flour)
        self.db.flush()

        movement = record_manual_movement(
            self.db,
            item_id=flour.id,
            item_type=ItemType.RAW,
            movement_type='out',
            quantity=4,
            notifier=self.notifier,
        )

        self.assertIsNone(movement)
        self.db.refresh(flour)
        self.assertEqual(flour.quantity, Decimal('3'))
        self.assertEqual(self._movements(), [])
        self.assertIn('Insufficient stock', self.notifier.notices[-1].message)

    def test_manual_adjustment_uses_signed_quantity(self) -> None:
        flour = RawMaterial(code='RM-1', name='Flour', quantity=Decimal('3'))
        self.db.add(flour)
        self.db.flush()

        movement = record_manual_movement(
            self.db,
            item_id=flour.id,
            item_type=ItemType.RAW,
            movement_type='adjustment',
            quantity=-2,
            notifier=self.notifier,
        )

        self.assertEqual(movement.quantity, Decimal('2'))
        self.assertEqual(movement.balance_after, Decimal('1'))

    def test_opening_movements_seed_stocked_items_once(self) -> None:
        self.db.add_all(
            [
                RawMaterial(code='RM-1', name='Flour', quantity=Decimal('10')),
                RawMaterial(code='RM-2', name='Salt', quantity=Decimal('0')),
                FinishedProduct(code='FP-1', name='Box', quantity=Decimal('4')),
            ]
        )
        self.db.flush()

        self.assertEqual(initialize_opening_movements(self.db), 2)
        self.assertEqual(initialize_opening_movements(self.db), 0)

        movements = self._movements()
        self.assertEqual({movement.item_type for movement in movements}, {ItemType.RAW, ItemType.FINISHED})
        self.assertTrue(all(movement.reason == 'opening balance' for movement in movements))
        self.assertTrue(all(movement.movement_type == MovementType.IN for movement in movements))


if __name__ == '__main__':
    unittest.main()
