from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from factory_ledger.db import build_engine
from factory_ledger.events import FINANCIAL_DATA_CHANGE, EventBus
from factory_ledger.models import Base, CashAccount, CashOperation, CashOperationType, FinancialTransaction, TransactionType
from factory_ledger.services.cash_management_service import CashManagementService
from factory_ledger.services.notification_service import Notifier


class CashManagementServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = build_engine('sqlite://')
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, expire_on_commit=False)()
        self.addCleanup(self.db.close)
        self.notifier = Notifier()
        self.bus = EventBus()
        self.published = []
        self.bus.subscribe(FINANCIAL_DATA_CHANGE, self.published.append)
        self.service = CashManagementService(self.db, self.notifier, self.bus)

    def _transactions(self, reference_id: str) -> list[FinancialTransaction]:
        return list(
            self.db.execute(select(FinancialTransaction).where(FinancialTransaction.reference_id == reference_id))
            .scalars()
        )

    def test_deposit_increases_balance_and_records_income(self) -> None:
        operation = self.service.deposit('cash', Decimal('200'))

        self.assertEqual(operation.operation_type, CashOperationType.DEPOSIT)
        self.assertEqual(operation.to_account, CashAccount.CASH)
        self.assertEqual(self.service.balances.available('cash'), Decimal('200'))
        rows = self._transactions(operation.id)
        self.assertEqual([row.type for row in rows], [TransactionType.INCOME])
        self.assertEqual(self.published[0].reference_id, operation.id)

    def test_withdrawal_beyond_balance_is_rejected(self) -> None:
        self.service.deposit(CashAccount.BANK, Decimal('50'))

        self.assertIsNone(self.service.withdraw(CashAccount.BANK, Decimal('75')))

        self.assertEqual(self.notifier.notices[-1].message, 'Insufficient balance. Available: 50.00')
        self.assertEqual(self.service.balances.available('bank'), Decimal('50'))
        operations = list(self.db.execute(select(CashOperation)).scalars())
        self.assertEqual(len(operations), 1)

    def test_non_positive_amount_is_rejected(self) -> None:
        self.assertIsNone(self.service.deposit('cash', Decimal('0')))
        self.assertIsNone(self.service.withdraw('cash', Decimal('-5')))
        self.assertEqual(self.notifier.notices[-1].message, 'Amount must be greater than zero')

    def test_transfer_moves_between_accounts(self) -> None:
        self.service.deposit('cash', Decimal('120'))

        operation = self.service.transfer('cash', 'bank', Decimal('45'), 'Banking the float')

        self.assertIsNotNone(operation)
        self.assertEqual(self.service.balances.available('cash'), Decimal('75'))
        self.assertEqual(self.service.balances.available('bank'), Decimal('45'))
        rows = self._transactions(operation.id)
        self.assertEqual(sorted(row.type.value for row in rows), ['expense', 'income'])
        self.assertEqual({row.payment_method for row in rows}, {'cash', 'bank_transfer'})

    def test_transfer_to_same_account_is_rejected(self) -> None:
        self.service.deposit('cash', Decimal('10'))

        self.assertIsNone(self.service.transfer('cash', 'cash', Decimal('5')))
        self.assertEqual(self.notifier.notices[-1].message, 'Cannot transfer to the same account')

    def test_unknown_account_is_rejected(self) -> None:
        self.assertIsNone(self.service.deposit('safe', Decimal('10')))
        self.assertEqual(self.notifier.notices[-1].level, 'error')

    def test_recent_operations_newest_first(self) -> None:
        first = self.service.deposit('cash', Decimal('10'))
        second = self.service.deposit('bank', Decimal('20'))

        self.assertEqual([op.id for op in self.service.recent_operations()], [second.id, first.id])


if __name__ == '__main__':
    unittest.main()
