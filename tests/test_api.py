from __future__ import annotations

import unittest
from decimal import Decimal
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from factory_ledger.db import build_engine, get_db
from factory_ledger.main import create_app
from factory_ledger.models import (
    Base,
    FinancialTransaction,
    FinishedProduct,
    InventoryMovement,
    Invoice,
    InvoiceItem,
    InvoiceType,
    ItemType,
    Party,
    RawMaterial,
    TransactionType,
)
from factory_ledger.services.notification_service import Notifier


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = build_engine('sqlite://')
        Base.metadata.create_all(engine)
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self.notifier = Notifier()

        with self.session_factory() as db:
            flour = RawMaterial(code='RM-1', name='Flour', quantity=Decimal('10'), unit_cost=Decimal('5'))
            cake = FinishedProduct(code='FP-1', name='Cake', quantity=Decimal('5'), sales_price=Decimal('50'))
            customer = Party(name='Acme Foods')
            db.add_all([flour, cake, customer])
            db.flush()
            invoice = Invoice(invoice_type=InvoiceType.SALE, party_id=customer.id, total_amount=Decimal('100'))
            db.add(invoice)
            db.flush()
            db.add(
                InvoiceItem(
                    invoice_id=invoice.id,
                    item_id=cake.id,
                    item_type=ItemType.FINISHED,
                    quantity=Decimal('2'),
                    unit_price=Decimal('50'),
                    total=Decimal('100'),
                )
            )
            db.commit()
            self.flour_id = flour.id
            self.cake_id = cake.id
            self.invoice_id = invoice.id

        app = create_app(session_factory=self.session_factory, notifier=self.notifier)

        def override_get_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)

    def test_health(self) -> None:
        response = self.client.get('/health')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.text, 'ok')

    def test_manual_movement_records_actor(self) -> None:
        response = self.client.post(
            '/inventory/movements',
            json={'item_id': self.flour_id, 'item_type': 'raw', 'movement_type': 'in', 'quantity': '5'},
            headers={'X-User-Id': 'u-7'},
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body['balance_after'], 15)
        self.assertEqual(body['user_id'], 'u-7')
        self.assertEqual(body['reference_type'], 'manual')

        listed = self.client.get('/inventory/movements', params={'item_type': 'raw'}).json()
        self.assertEqual([row['id'] for row in listed], [body['id']])

    def test_manual_overdraw_is_rejected(self) -> None:
        response = self.client.post(
            '/inventory/movements',
            json={'item_id': self.flour_id, 'item_type': 'raw', 'movement_type': 'out', 'quantity': '50'},
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn('Insufficient stock', response.json()['detail'])
        with self.session_factory() as db:
            self.assertEqual(db.get(RawMaterial, self.flour_id).quantity, Decimal('10'))

    def test_rejection_detail_ignores_earlier_requests(self) -> None:
        self.client.post('/finance/cash/withdraw', json={'account': 'cash', 'amount': '500'})

        with patch('factory_ledger.routers.inventory.record_manual_movement', return_value=None):
            response = self.client.post(
                '/inventory/movements',
                json={'item_id': self.flour_id, 'item_type': 'raw', 'movement_type': 'in', 'quantity': '5'},
            )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['detail'], 'Movement rejected')

    def test_statistics_without_period_cover_all_time(self) -> None:
        self.client.post(
            '/inventory/movements',
            json={'item_id': self.flour_id, 'item_type': 'raw', 'movement_type': 'in', 'quantity': '5'},
        )

        body = self.client.get('/inventory/movements/statistics').json()

        self.assertIsNone(body['period'])
        self.assertEqual(body['total_in'], 5)

    def test_unknown_statistics_period(self) -> None:
        self.assertEqual(self.client.get('/inventory/movements/statistics', params={'period': 'decade'}).status_code, 400)

    def test_invoice_confirmation_moves_stock_and_records_income(self) -> None:
        response = self.client.post(
            f'/events/invoices/{self.invoice_id}/status',
            json={'status': 'confirmed'},
            headers={'X-User-Id': 'clerk'},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['event'], 'invoice-status-change')
        self.assertEqual(body['previous_status'], 'draft')
        self.assertTrue(body['handlers'][0]['applied'])
        self.assertTrue(body['handlers'][1])

        with self.session_factory() as db:
            self.assertEqual(db.get(FinishedProduct, self.cake_id).quantity, Decimal('3'))
            movement = db.execute(
                select(InventoryMovement).where(InventoryMovement.reference_id == self.invoice_id)
            ).scalar_one()
            self.assertEqual(movement.user_id, 'clerk')
            transaction = db.execute(
                select(FinancialTransaction).where(FinancialTransaction.reference_id == self.invoice_id)
            ).scalar_one()
            self.assertEqual(transaction.type, TransactionType.INCOME)

    def test_status_endpoint_errors(self) -> None:
        missing = self.client.post('/events/invoices/nope/status', json={'status': 'confirmed'})
        unsupported = self.client.post(f'/events/invoices/{self.invoice_id}/status', json={'status': 'shipped'})

        self.assertEqual(missing.status_code, 404)
        self.assertEqual(unsupported.status_code, 400)

    def test_cash_deposit_and_rejected_withdrawal(self) -> None:
        deposit = self.client.post('/finance/cash/deposit', json={'account': 'cash', 'amount': '200'})
        withdrawal = self.client.post('/finance/cash/withdraw', json={'account': 'cash', 'amount': '500'})

        self.assertEqual(deposit.status_code, 201)
        self.assertEqual(withdrawal.status_code, 400)
        self.assertEqual(withdrawal.json()['detail'], 'Insufficient balance. Available: 200.00')
        self.assertEqual(self.client.get('/finance/balance').json()['cash_balance'], 200)

    def test_backup_export(self) -> None:
        response = self.client.get('/backup')

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row['code'] for row in response.json()['raw_materials']], ['RM-1'])


if __name__ == '__main__':
    unittest.main()
