from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from factory_ledger.db import build_engine
from factory_ledger.models import (
    Base,
    FinancialBalance,
    Invoice,
    InvoiceItem,
    LedgerEntry,
    Party,
    PartyBalance,
    RawMaterial,
)
from factory_ledger.services.backup_service import create_backup, is_valid_uuid, restore_backup
from factory_ledger.services.notification_service import Notifier

PARTY_ID = '3f6c1d2e-8a4b-4c1d-9e2f-0a1b2c3d4e5f'
INVOICE_ID = '7d1e2f3a-4b5c-4d6e-8f70-8192a3b4c5d6'


def _backup() -> dict:
    return {
        'parties': [
            {
                'id': PARTY_ID,
                'name': 'Acme Foods',
                'type': 'customer',
                'opening_balance': '100',
                'balance_type': 'debit',
                'created_at': '2024-01-01T08:00:00Z',
            },
            {'id': 'not-a-uuid', 'name': 'Broken', 'type': 'customer'},
        ],
        'raw_materials': [
            {'id': 1, 'code': 'RM-1', 'name': 'Flour', 'quantity': '25', 'unit_cost': '5'},
            {'id': 2, 'code': 'RM-1', 'name': 'Duplicate code', 'quantity': '1', 'unit_cost': '1'},
            {'id': 3, 'code': 'RM-3', 'name': 'Sugar', 'quantity': '10', 'unit_cost': '8'},
        ],
        'financial_balance': [{'id': '1', 'cash_balance': '500', 'bank_balance': '1200'}],
        'invoices': [
            {
                'id': INVOICE_ID,
                'party_id': PARTY_ID,
                'invoice_type': 'sale',
                'date': '2024-01-05',
                'payment_status': 'confirmed',
                'total_amount': '999',
            }
        ],
        'invoice_items': [
            {
                'invoice_id': INVOICE_ID,
                'item_id': 1,
                'item_type': 'raw_materials',
                'quantity': '2',
                'unit_price': '12.5',
                'total': '1',
            }
        ],
        'ledger': [
            {
                'party_id': PARTY_ID,
                'transaction_type': 'sale',
                'date': '2024-01-05',
                'debit': '25',
                'credit': '0',
                'balance_after': '0',
            },
            {
                'party_id': 'garbage',
                'transaction_type': 'sale',
                'date': '2024-01-06',
                'debit': '1',
                'credit': '0',
            },
        ],
    }


class BackupServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = build_engine('sqlite://')
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, expire_on_commit=False)()
        self.addCleanup(self.db.close)
        self.notifier = Notifier()

    def test_uuid_validation_allows_balance_sentinel(self) -> None:
        self.assertTrue(is_valid_uuid(PARTY_ID))
        self.assertTrue(is_valid_uuid('1'))
        self.assertFalse(is_valid_uuid('2'))
        self.assertFalse(is_valid_uuid(None))

    def test_restore_cleans_rows_and_recomputes_derived_values(self) -> None:
        self.db.add(RawMaterial(code='OLD', name='Stale row'))
        self.db.flush()

        report = restore_backup(self.db, _backup(), batch_size=2, error_tolerance=10, notifier=self.notifier)

        self.assertTrue(report.success)
        self.assertEqual(report.restored['parties'], 1)
        self.assertEqual(report.restored['raw_materials'], 2)
        self.assertEqual(len(report.errors), 3)
        self.assertEqual({error.table for error in report.errors}, {'parties', 'raw_materials', 'ledger'})

        codes = sorted(self.db.execute(select(RawMaterial.code)).scalars())
        self.assertEqual(codes, ['RM-1', 'RM-3'])

        item = self.db.execute(select(InvoiceItem)).scalar_one()
        invoice = self.db.get(Invoice, INVOICE_ID)
        self.assertEqual(item.total, Decimal('25'))
        self.assertEqual(invoice.total_amount, Decimal('25'))

        orphan = self.db.execute(select(LedgerEntry).where(LedgerEntry.date == date(2024, 1, 6))).scalar_one_or_none()
        self.assertIsNone(orphan)
        entry = self.db.execute(select(LedgerEntry).where(LedgerEntry.party_id == PARTY_ID)).scalar_one()
        self.assertEqual(entry.balance_after, Decimal('125'))
        balance = self.db.execute(select(PartyBalance).where(PartyBalance.party_id == PARTY_ID)).scalar_one()
        self.assertEqual(balance.balance, Decimal('125'))

        treasury = self.db.get(FinancialBalance, '1')
        self.assertEqual(treasury.bank_balance, Decimal('1200'))

    def test_restore_fails_past_error_tolerance(self) -> None:
        report = restore_backup(self.db, _backup(), error_tolerance=2, notifier=self.notifier)

        self.assertFalse(report.success)
        self.assertEqual(self.notifier.notices[-1].level, 'error')

    def test_restore_rejects_non_object_payload(self) -> None:
        with self.assertRaises(ValueError):
            restore_backup(self.db, [], notifier=self.notifier)

    def test_backup_round_trips_through_restore(self) -> None:
        restore_backup(self.db, _backup(), notifier=self.notifier)
        exported = create_backup(self.db)

        self.assertEqual(exported['parties'][0]['balance_type'], 'debit')
        self.assertEqual(exported['raw_materials'][0]['quantity'], '25.000')

        report = restore_backup(self.db, exported, notifier=self.notifier)

        self.assertTrue(report.success)
        self.assertEqual(report.errors, [])
        self.assertEqual(self.db.get(Party, PARTY_ID).name, 'Acme Foods')


if __name__ == '__main__':
    unittest.main()
