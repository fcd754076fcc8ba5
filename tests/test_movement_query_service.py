from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from factory_ledger.db import build_engine
from factory_ledger.models import Base, ItemType, MovementType
from factory_ledger.services.movement_query_service import (
    MovementFilters,
    get_item_movements,
    get_item_summary,
    get_statistics,
    list_movements,
    movement_to_dict,
)
from factory_ledger.services.movement_service import append_movement
from factory_ledger.services.notification_service import Notifier

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class MovementQueryServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = build_engine('sqlite://')
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, expire_on_commit=False)()
        self.addCleanup(self.db.close)
        self.notifier = Notifier()

    def _add(self, item_id, item_type, movement_type, quantity, balance_after, created_at):
        movement = append_movement(
            self.db,
            item_id=item_id,
            item_type=item_type,
            movement_type=movement_type,
            quantity=quantity,
            balance_after=balance_after,
        )
        movement.created_at = created_at
        self.db.flush()
        return movement

    def _seed(self) -> None:
        self._add(1, ItemType.RAW, MovementType.IN, 10, 10, NOW - timedelta(days=40))
        self._add(1, ItemType.RAW, MovementType.OUT, 4, 6, NOW - timedelta(days=3))
        self._add(2, ItemType.SEMI, MovementType.IN, 3, 3, NOW - timedelta(days=2))
        self._add(1, ItemType.RAW, MovementType.ADJUSTMENT, 1, 7, NOW - timedelta(hours=2))

    def test_newest_first_with_limit_and_offset(self) -> None:
        self._seed()

        first_page = list_movements(self.db, MovementFilters(limit=2), notifier=self.notifier)
        second_page = list_movements(self.db, MovementFilters(limit=2, offset=2), notifier=self.notifier)

        self.assertEqual([m.movement_type for m in first_page], [MovementType.ADJUSTMENT, MovementType.IN])
        self.assertEqual([m.movement_type for m in second_page], [MovementType.OUT, MovementType.IN])

    def test_filters_by_item_type_and_movement_type(self) -> None:
        self._seed()

        rows = list_movements(
            self.db,
            MovementFilters(item_type=ItemType.RAW, movement_type=MovementType.IN),
            notifier=self.notifier,
        )

        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].quantity, Decimal('10'))

    def test_date_to_is_inclusive(self) -> None:
        self._seed()

        rows = list_movements(
            self.db,
            MovementFilters(date_from=date(2024, 3, 12), date_to=date(2024, 3, 13)),
            notifier=self.notifier,
        )

        self.assertEqual(len(rows), 2)

    def test_item_movements_and_summary(self) -> None:
        self._seed()

        rows = get_item_movements(self.db, item_id=1, item_type='raw', notifier=self.notifier)
        summary = get_item_summary(self.db, item_id=1, item_type='raw')

        self.assertEqual(len(rows), 3)
        self.assertEqual(summary.total_in, Decimal('10'))
        self.assertEqual(summary.total_out, Decimal('4'))
        self.assertEqual(summary.total_adjustments, Decimal('1'))
        self.assertEqual(summary.movement_count, 3)
        self.assertEqual(summary.last_balance, Decimal('7'))

    def test_statistics_for_trailing_week(self) -> None:
        self._seed()

        stats = get_statistics(self.db, period='week', now=NOW, notifier=self.notifier)

        self.assertEqual(stats.total_in, Decimal('3'))
        self.assertEqual(stats.total_out, Decimal('4'))
        self.assertEqual(stats.total_adjustments, Decimal('1'))
        self.assertEqual(stats.movements_by_type, {'raw': 2, 'semi': 1})

    def test_statistics_without_period_cover_all_movements(self) -> None:
        self._seed()

        stats = get_statistics(self.db, now=NOW, notifier=self.notifier)

        self.assertEqual(stats.total_in, Decimal('13'))
        self.assertEqual(stats.total_out, Decimal('4'))
        self.assertEqual(stats.movements_by_type, {'raw': 3, 'semi': 1})

    def test_unknown_period_yields_zeroed_statistics(self) -> None:
        self._seed()

        stats = get_statistics(self.db, period='fortnight', now=NOW, notifier=self.notifier)

        self.assertEqual(stats.total_in, Decimal('0'))
        self.assertEqual(stats.movements_by_type, {})
        self.assertEqual(self.notifier.notices[-1].message, 'Unsupported period: fortnight')

    def test_query_failure_returns_empty_and_notifies(self) -> None:
        with patch.object(self.db, 'execute', side_effect=SQLAlchemyError('gone')):
            rows = list_movements(self.db, notifier=self.notifier)
            stats = get_statistics(self.db, period='day', now=NOW, notifier=self.notifier)

        self.assertEqual(rows, [])
        self.assertEqual(stats.total_in, Decimal('0'))
        self.assertEqual(stats.movements_by_type, {})
        self.assertEqual([notice.level for notice in self.notifier.notices], ['error', 'error'])

    def test_movement_to_dict(self) -> None:
        movement = self._add(5, ItemType.PACKAGING, MovementType.OUT, 2, 8, NOW)

        data = movement_to_dict(movement)

        self.assertEqual(data['item_type'], 'packaging')
        self.assertEqual(data['movement_type'], 'out')
        self.assertIsNone(data['direction'])


if __name__ == '__main__':
    unittest.main()
