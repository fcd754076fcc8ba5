from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy.orm import sessionmaker

from factory_ledger.db import build_engine
from factory_ledger.models import Base, CashAccount
from factory_ledger.services.financial_balance_service import FinancialBalanceService, account_for_payment_method
from factory_ledger.services.notification_service import Notifier


class FinancialBalanceServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = build_engine('sqlite://')
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, expire_on_commit=False)()
        self.addCleanup(self.db.close)
        self.notifier = Notifier()
        self.service = FinancialBalanceService(self.db, self.notifier)

    def test_singleton_row_starts_at_zero(self) -> None:
        snapshot = self.service.get_current_balance()

        self.assertEqual(snapshot.cash_balance, Decimal('0'))
        self.assertEqual(snapshot.bank_balance, Decimal('0'))

    def test_balances_never_go_negative(self) -> None:
        self.assertTrue(self.service.update_cash_balance(Decimal('100'), 'float'))
        self.assertTrue(self.service.update_cash_balance(Decimal('-60'), 'supplies'))
        self.assertFalse(self.service.update_cash_balance(Decimal('-41'), 'too much'))
        self.assertFalse(self.service.update_bank_balance(Decimal('-0.01'), 'overdraft'))

        snapshot = self.service.get_current_balance()
        self.assertEqual(snapshot.cash_balance, Decimal('40'))
        self.assertEqual(snapshot.bank_balance, Decimal('0'))
        self.assertIn('cannot become negative', self.notifier.notices[-1].message)

    def test_accounts_are_independent(self) -> None:
        self.service.update_bank_balance(Decimal('250'))
        self.service.update_cash_balance(Decimal('5'))

        self.assertEqual(self.service.available(CashAccount.BANK), Decimal('250'))
        self.assertEqual(self.service.available('cash'), Decimal('5'))

    def test_payment_method_routing(self) -> None:
        self.assertEqual(account_for_payment_method('bank_transfer'), CashAccount.BANK)
        self.assertEqual(account_for_payment_method('check'), CashAccount.BANK)
        self.assertEqual(account_for_payment_method('cash'), CashAccount.CASH)
        self.assertEqual(account_for_payment_method('voucher'), CashAccount.CASH)
        self.assertEqual(account_for_payment_method(None), CashAccount.CASH)

        self.assertTrue(self.service.update_balance_by_payment_method(Decimal('30'), 'check', is_income=True))
        self.assertTrue(self.service.update_balance_by_payment_method(Decimal('-10'), 'check', is_income=False))
        self.assertEqual(self.service.available(CashAccount.BANK), Decimal('20'))

    def test_manual_update_rejects_negative_values(self) -> None:
        self.assertFalse(self.service.update_balances_manually(Decimal('-1'), Decimal('10')))
        self.assertTrue(self.service.update_balances_manually(Decimal('12.50'), Decimal('300')))

        snapshot = self.service.get_current_balance()
        self.assertEqual(snapshot.cash_balance, Decimal('12.50'))
        self.assertEqual(snapshot.bank_balance, Decimal('300'))

    def test_non_numeric_delta_is_rejected(self) -> None:
        self.assertFalse(self.service.update_cash_balance('ten'))
        self.assertEqual(self.notifier.notices[-1].level, 'error')


if __name__ == '__main__':
    unittest.main()
