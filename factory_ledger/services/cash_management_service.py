from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from factory_ledger.errors import LedgerError
from factory_ledger.events import FINANCIAL_DATA_CHANGE, EventBus, FinancialDataChange
from factory_ledger.models import CashAccount, CashOperation, CashOperationType, TransactionType
from factory_ledger.services.financial_balance_service import FinancialBalanceService
from factory_ledger.services.financial_category_service import (
    TRANSFER_CATEGORY_NAME,
    default_category_for,
    get_or_create_category,
)
from factory_ledger.services.financial_transaction_service import create_transaction
from factory_ledger.services.notification_service import Notifier, get_notifier

logger = logging.getLogger(__name__)

REF_CASH_OPERATION = 'cash_operation'


def _payment_method(account: CashAccount) -> str:
    return 'cash' if account == CashAccount.CASH else 'bank_transfer'


def _validated_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError('Amount must be numeric') from exc
    if amount <= 0:
        raise ValueError('Amount must be greater than zero')
    return amount


class CashManagementService:
    """Deposits, withdrawals and transfers between the cash box and the bank."""

    def __init__(self, db: Session, notifier: Notifier | None = None, bus: EventBus | None = None) -> None:
        self.db = db
        self.notifier = notifier or get_notifier()
        self.bus = bus
        self.balances = FinancialBalanceService(db, self.notifier)

    def _publish(self, source: str, reference_id: str) -> None:
        if self.bus is not None:
            self.bus.publish(FINANCIAL_DATA_CHANGE, FinancialDataChange(source=source, reference_id=reference_id))

    def _has_funds(self, account: CashAccount, amount: Decimal) -> bool:
        available = self.balances.available(account)
        if amount > available:
            self.notifier.error(f'Insufficient balance. Available: {available}')
            return False
        return True

    def deposit(self, account: CashAccount | str, amount, notes: str | None = None) -> CashOperation | None:
        try:
            account = CashAccount(account)
            amount = _validated_amount(amount)
        except ValueError as exc:
            self.notifier.error(str(exc))
            return None
        return self._run(
            CashOperationType.DEPOSIT,
            amount,
            notes=notes or f'Deposit to {account.value}',
            to_account=account,
        )

    def withdraw(self, account: CashAccount | str, amount, notes: str | None = None) -> CashOperation | None:
        try:
            account = CashAccount(account)
            amount = _validated_amount(amount)
        except ValueError as exc:
            self.notifier.error(str(exc))
            return None
        if not self._has_funds(account, amount):
            return None
        return self._run(
            CashOperationType.WITHDRAWAL,
            amount,
            notes=notes or f'Withdrawal from {account.value}',
            from_account=account,
        )

    def transfer(
        self,
        from_account: CashAccount | str,
        to_account: CashAccount | str,
        amount,
        notes: str | None = None,
    ) -> CashOperation | None:
        try:
            from_account = CashAccount(from_account)
            to_account = CashAccount(to_account)
            amount = _validated_amount(amount)
        except ValueError as exc:
            self.notifier.error(str(exc))
            return None
        if from_account == to_account:
            self.notifier.error('Cannot transfer to the same account')
            return None
        if not self._has_funds(from_account, amount):
            return None
        return self._run(
            CashOperationType.TRANSFER,
            amount,
            notes=notes or f'Transfer from {from_account.value} to {to_account.value}',
            from_account=from_account,
            to_account=to_account,
        )

    def _run(
        self,
        operation_type: CashOperationType,
        amount: Decimal,
        *,
        notes: str,
        from_account: CashAccount | None = None,
        to_account: CashAccount | None = None,
    ) -> CashOperation | None:
        try:
            with self.db.begin_nested():
                operation = CashOperation(
                    operation_type=operation_type,
                    amount=amount,
                    from_account=from_account,
                    to_account=to_account,
                    notes=notes,
                    date=date.today(),
                )
                self.db.add(operation)
                self.db.flush()
                self._post_transactions(operation)
        except LedgerError as exc:
            logger.warning('Cash operation rejected: %s', exc, extra={'operation_type': operation_type.value})
            return None
        except SQLAlchemyError:
            logger.exception('Cash operation failed', extra={'operation_type': operation_type.value})
            self.notifier.error('Failed to record the cash operation')
            return None

        logger.info(
            'Cash operation recorded',
            extra={'operation_id': operation.id, 'operation_type': operation_type.value, 'amount': amount},
        )
        self.notifier.success(f'{operation_type.value.capitalize()} recorded')
        self._publish(f'cash_{operation_type.value}', operation.id)
        return operation

    def _post_transactions(self, operation: CashOperation) -> None:
        if operation.operation_type == CashOperationType.TRANSFER:
            transfer_out = get_or_create_category(
                self.db, name=TRANSFER_CATEGORY_NAME, category_type=TransactionType.EXPENSE
            )
            transfer_in = get_or_create_category(
                self.db, name=TRANSFER_CATEGORY_NAME, category_type=TransactionType.INCOME
            )
            legs = [
                (TransactionType.EXPENSE, transfer_out.id, operation.from_account),
                (TransactionType.INCOME, transfer_in.id, operation.to_account),
            ]
        elif operation.operation_type == CashOperationType.DEPOSIT:
            legs = [(TransactionType.INCOME, default_category_for(self.db, 'cash_deposit').id, operation.to_account)]
        else:
            legs = [
                (TransactionType.EXPENSE, default_category_for(self.db, 'cash_withdrawal').id, operation.from_account)
            ]

        for transaction_type, category_id, account in legs:
            create_transaction(
                self.db,
                transaction_type=transaction_type,
                amount=operation.amount,
                category_id=category_id,
                payment_method=_payment_method(account),
                transaction_date=operation.date,
                notes=operation.notes,
                reference_id=operation.id,
                reference_type=REF_CASH_OPERATION,
                balances=self.balances,
            )

    def recent_operations(self, limit: int = 20) -> list[CashOperation]:
        return list(
            self.db.execute(
                select(CashOperation).order_by(CashOperation.created_at.desc()).limit(limit)
            ).scalars()
        )
