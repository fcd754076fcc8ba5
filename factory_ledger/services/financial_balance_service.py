from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from factory_ledger.models import BALANCE_ROW_ID, CashAccount, FinancialBalance, utcnow
from factory_ledger.services.notification_service import Notifier, get_notifier

logger = logging.getLogger(__name__)

BANK_METHODS = frozenset({'bank', 'bank_transfer', 'check'})


@dataclass(frozen=True)
class BalanceSnapshot:
    cash_balance: Decimal
    bank_balance: Decimal
    last_updated: datetime | None


def account_for_payment_method(payment_method: str | None) -> CashAccount:
    """bank / bank_transfer / check settle through the bank; everything else is cash."""
    method = (payment_method or '').strip().lower()
    return CashAccount.BANK if method in BANK_METHODS else CashAccount.CASH


def _amount(value) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError('Amount must be numeric') from exc


class FinancialBalanceService:
    """Cash and bank balances on the singleton ``financial_balance`` row.

    Every mutation is a single conditional UPDATE so a balance can never be driven
    below zero, even by concurrent writers.
    """

    def __init__(self, db: Session, notifier: Notifier | None = None) -> None:
        self.db = db
        self.notifier = notifier or get_notifier()

    def _ensure_row(self) -> FinancialBalance:
        row = self.db.get(FinancialBalance, BALANCE_ROW_ID)
        if row is None:
            row = FinancialBalance(id=BALANCE_ROW_ID, cash_balance=Decimal('0'), bank_balance=Decimal('0'))
            self.db.add(row)
            self.db.flush()
        return row

    def get_current_balance(self) -> BalanceSnapshot | None:
        try:
            row = self._ensure_row()
            self.db.refresh(row)
        except SQLAlchemyError:
            logger.exception('Failed to load financial balance')
            self.notifier.error('Failed to load treasury balances')
            return None
        return BalanceSnapshot(
            cash_balance=Decimal(row.cash_balance),
            bank_balance=Decimal(row.bank_balance),
            last_updated=row.last_updated,
        )

    def available(self, account: CashAccount | str) -> Decimal:
        snapshot = self.get_current_balance()
        if snapshot is None:
            return Decimal('0')
        return snapshot.bank_balance if CashAccount(account) == CashAccount.BANK else snapshot.cash_balance

    def _apply_delta(self, account: CashAccount, delta, reason: str | None) -> bool:
        column = FinancialBalance.bank_balance if account == CashAccount.BANK else FinancialBalance.cash_balance
        label = 'bank' if account == CashAccount.BANK else 'cash'
        try:
            delta = _amount(delta)
        except ValueError as exc:
            self.notifier.error(str(exc))
            return False
        try:
            self._ensure_row()
            result = self.db.execute(
                update(FinancialBalance)
                .where(FinancialBalance.id == BALANCE_ROW_ID, column + delta >= 0)
                .values({column.key: column + delta, 'last_updated': utcnow()})
            )
        except SQLAlchemyError:
            logger.exception('Failed to update %s balance', label, extra={'delta': delta, 'reason': reason})
            self.notifier.error(f'Failed to update the {label} balance')
            return False

        if result.rowcount == 0:
            logger.warning(
                'Rejected %s balance update below zero',
                label,
                extra={'delta': delta, 'reason': reason},
            )
            self.notifier.error(f'The {label} balance cannot become negative')
            return False

        logger.info('%s balance updated', label.capitalize(), extra={'delta': delta, 'reason': reason})
        return True

    def update_cash_balance(self, delta, reason: str | None = None) -> bool:
        return self._apply_delta(CashAccount.CASH, delta, reason)

    def update_bank_balance(self, delta, reason: str | None = None) -> bool:
        return self._apply_delta(CashAccount.BANK, delta, reason)

    def update_account_balance(self, account: CashAccount | str, delta, reason: str | None = None) -> bool:
        return self._apply_delta(CashAccount(account), delta, reason)

    def update_balance_by_payment_method(
        self,
        amount,
        payment_method: str | None,
        is_income: bool,
        reason: str | None = None,
    ) -> bool:
        try:
            magnitude = abs(_amount(amount))
        except ValueError as exc:
            self.notifier.error(str(exc))
            return False
        delta = magnitude if is_income else -magnitude
        return self._apply_delta(account_for_payment_method(payment_method), delta, reason)

    def update_balances_manually(self, cash_balance, bank_balance, reason: str = 'manual balance adjustment') -> bool:
        try:
            cash = _amount(cash_balance)
            bank = _amount(bank_balance)
        except ValueError as exc:
            self.notifier.error(str(exc))
            return False
        if cash < 0 or bank < 0:
            self.notifier.error('Balances cannot be negative')
            return False
        try:
            self._ensure_row()
            self.db.execute(
                update(FinancialBalance)
                .where(FinancialBalance.id == BALANCE_ROW_ID)
                .values(cash_balance=cash, bank_balance=bank, last_updated=utcnow())
            )
        except SQLAlchemyError:
            logger.exception('Failed to set balances manually')
            self.notifier.error('Failed to update balances')
            return False
        logger.info('Balances set manually', extra={'cash': cash, 'bank': bank, 'reason': reason})
        self.notifier.success('Balances updated')
        return True
