from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from factory_ledger.errors import BalanceRejectedError
from factory_ledger.models import FinancialCategory, FinancialTransaction, TransactionType
from factory_ledger.services.financial_balance_service import FinancialBalanceService, account_for_payment_method

logger = logging.getLogger(__name__)


def balance_effect(transaction_type: TransactionType | str, amount, is_reduction: bool = False) -> Decimal:
    """Income adds and expense subtracts; a reduction entry flips the sign."""
    magnitude = abs(Decimal(str(amount)))
    signed = magnitude if TransactionType(transaction_type) == TransactionType.INCOME else -magnitude
    return -signed if is_reduction else signed


def _positive_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError('Amount must be numeric') from exc
    if amount <= 0:
        raise ValueError('Amount must be greater than zero')
    return amount


def create_transaction(
    db: Session,
    *,
    transaction_type: TransactionType | str,
    amount,
    category_id: str,
    payment_method: str = 'cash',
    transaction_date: date | None = None,
    notes: str | None = None,
    reference_id: str | None = None,
    reference_type: str | None = None,
    is_reduction: bool = False,
    balances: FinancialBalanceService | None = None,
) -> FinancialTransaction:
    """Insert one financial transaction; when ``balances`` is given the treasury moves with it.

    Raises ValueError for invalid input and BalanceRejectedError when the balance move is refused.
    """
    transaction_type = TransactionType(transaction_type)
    amount = _positive_amount(amount)
    if db.get(FinancialCategory, category_id) is None:
        raise ValueError('Financial category not found')

    if balances is not None:
        account = account_for_payment_method(payment_method)
        if not balances.update_account_balance(
            account,
            balance_effect(transaction_type, amount, is_reduction),
            reason=notes or reference_type,
        ):
            raise BalanceRejectedError(f'{account.value} balance update rejected')

    transaction = FinancialTransaction(
        type=transaction_type,
        amount=amount,
        category_id=category_id,
        payment_method=payment_method or 'cash',
        date=transaction_date or date.today(),
        notes=notes,
        reference_id=reference_id,
        reference_type=reference_type,
        is_reduction=is_reduction,
    )
    db.add(transaction)
    db.flush()
    logger.info(
        'Financial transaction recorded',
        extra={
            'transaction_id': transaction.id,
            'transaction_type': transaction_type.value,
            'amount': amount,
            'reference_type': reference_type,
            'reference_id': reference_id,
        },
    )
    return transaction


def find_by_reference(
    db: Session,
    *,
    reference_id: str,
    reference_type: str | None = None,
) -> list[FinancialTransaction]:
    conditions = [FinancialTransaction.reference_id == reference_id]
    if reference_type is not None:
        conditions.append(FinancialTransaction.reference_type == reference_type)
    return list(
        db.execute(
            select(FinancialTransaction)
            .where(and_(*conditions))
            .order_by(FinancialTransaction.date.asc(), FinancialTransaction.created_at.asc())
        ).scalars()
    )


def list_transactions(
    db: Session,
    *,
    transaction_type: TransactionType | str | None = None,
    reference_id: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 200,
) -> list[FinancialTransaction]:
    conditions = []
    if transaction_type is not None:
        conditions.append(FinancialTransaction.type == TransactionType(transaction_type))
    if reference_id is not None:
        conditions.append(FinancialTransaction.reference_id == reference_id)
    if date_from is not None:
        conditions.append(FinancialTransaction.date >= date_from)
    if date_to is not None:
        conditions.append(FinancialTransaction.date <= date_to)
    stmt = select(FinancialTransaction)
    if conditions:
        stmt = stmt.where(and_(*conditions))
    stmt = stmt.order_by(FinancialTransaction.date.desc(), FinancialTransaction.created_at.desc()).limit(limit)
    return list(db.execute(stmt).scalars())


def transaction_to_dict(transaction: FinancialTransaction) -> dict:
    return {
        'id': transaction.id,
        'date': transaction.date,
        'type': transaction.type.value,
        'category_id': transaction.category_id,
        'amount': transaction.amount,
        'payment_method': transaction.payment_method,
        'notes': transaction.notes,
        'reference_id': transaction.reference_id,
        'reference_type': transaction.reference_type,
        'is_reduction': transaction.is_reduction,
        'created_at': transaction.created_at,
    }
