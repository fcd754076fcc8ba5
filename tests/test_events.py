from __future__ import annotations

import io
import json
import logging
import unittest
from decimal import Decimal

from sqlalchemy.orm import sessionmaker

from factory_ledger.db import build_engine
from factory_ledger.events import (
    FINANCIAL_DATA_CHANGE,
    INVOICE_STATUS_CHANGE,
    PRODUCTION_ORDER_STATUS_CHANGE,
    EventBus,
    StatusChange,
)
from factory_ledger.logging_config import JsonLineFormatter
from factory_ledger.models import Base, DocumentStatus, Invoice, InvoiceType, OrderStatus, ProductionOrder
from factory_ledger.services.status_service import change_status


class EventBusTests(unittest.TestCase):
    def test_subscribe_rejects_unknown_event(self) -> None:
        bus = EventBus()

        with self.assertRaises(ValueError):
            bus.subscribe('order-shipped', print)

    def test_handlers_run_in_registration_order(self) -> None:
        bus = EventBus()
        calls = []
        bus.subscribe(FINANCIAL_DATA_CHANGE, lambda payload: calls.append(('first', payload)) or 1)
        bus.subscribe(FINANCIAL_DATA_CHANGE, lambda payload: calls.append(('second', payload)) or 2)

        results = bus.publish(FINANCIAL_DATA_CHANGE, 'x')

        self.assertEqual(results, [1, 2])
        self.assertEqual(calls, [('first', 'x'), ('second', 'x')])

    def test_failing_handler_is_logged_and_others_still_run(self) -> None:
        bus = EventBus()

        def broken(payload):
            raise RuntimeError('boom')

        bus.subscribe(INVOICE_STATUS_CHANGE, broken)
        bus.subscribe(INVOICE_STATUS_CHANGE, lambda payload: 'ok')

        with self.assertLogs('factory_ledger.events', level='ERROR') as logs:
            results = bus.publish(INVOICE_STATUS_CHANGE, object())

        self.assertEqual(results, [None, 'ok'])
        self.assertIn('Event handler failed', logs.output[0])

    def test_publish_without_subscribers(self) -> None:
        self.assertEqual(EventBus().publish(PRODUCTION_ORDER_STATUS_CHANGE, None), [])


class StatusChangeTests(unittest.TestCase):
    def test_boundary_crossings(self) -> None:
        change = StatusChange(entity_id='1', status='completed', previous_status='pending')

        self.assertTrue(change.crossed_into('completed'))
        self.assertFalse(change.crossed_out_of('completed'))
        self.assertFalse(StatusChange(entity_id='1', status='completed', previous_status='completed').crossed_into('completed'))
        self.assertTrue(StatusChange(entity_id='1', status='cancelled', previous_status='completed').crossed_out_of('completed'))


class ChangeStatusTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = build_engine('sqlite://')
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, expire_on_commit=False)()
        self.addCleanup(self.db.close)

    def test_production_order_transition(self) -> None:
        order = ProductionOrder(code='PO-1', product_code='SF-1', quantity=Decimal('2'))
        self.db.add(order)
        self.db.flush()

        event_name, change = change_status(
            self.db, entity='production-orders', entity_id=str(order.id), status='completed'
        )

        self.assertEqual(event_name, PRODUCTION_ORDER_STATUS_CHANGE)
        self.assertEqual(change.previous_status, 'pending')
        self.assertEqual(change.status, 'completed')
        self.assertEqual(order.status, OrderStatus.COMPLETED)

    def test_invoice_transition_uses_payment_status(self) -> None:
        invoice = Invoice(invoice_type=InvoiceType.SALE)
        self.db.add(invoice)
        self.db.flush()

        event_name, change = change_status(self.db, entity='invoices', entity_id=invoice.id, status='confirmed')

        self.assertEqual(event_name, INVOICE_STATUS_CHANGE)
        self.assertEqual(change.entity_id, invoice.id)
        self.assertEqual(invoice.payment_status, DocumentStatus.CONFIRMED)

    def test_unknown_entity_and_id(self) -> None:
        with self.assertRaises(LookupError):
            change_status(self.db, entity='shipments', entity_id='1', status='completed')
        with self.assertRaises(LookupError):
            change_status(self.db, entity='production-orders', entity_id='abc', status='completed')
        with self.assertRaises(LookupError):
            change_status(self.db, entity='production-orders', entity_id='42', status='completed')

    def test_unsupported_status(self) -> None:
        with self.assertRaises(ValueError):
            change_status(self.db, entity='invoices', entity_id='x', status='shipped')


class JsonLineFormatterTests(unittest.TestCase):
    def test_extra_fields_are_emitted(self) -> None:
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonLineFormatter())
        logger = logging.getLogger('factory_ledger.tests.formatter')
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        self.addCleanup(logger.removeHandler, handler)

        logger.info('Movement recorded', extra={'item_id': 'RM-1', 'quantity': Decimal('2.5')})

        payload = json.loads(stream.getvalue().splitlines()[0])
        self.assertEqual(payload['message'], 'Movement recorded')
        self.assertEqual(payload['level'], 'INFO')
        self.assertEqual(payload['item_id'], 'RM-1')
        self.assertEqual(payload['quantity'], '2.5')


if __name__ == '__main__':
    unittest.main()
