from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from factory_ledger.models import FinancialCategory, TransactionType

logger = logging.getLogger(__name__)

# commercial type -> (category type, name fragment, default name)
COMMERCIAL_CATEGORY_HINTS: dict[str, tuple[TransactionType, str, str]] = {
    'sale_invoice': (TransactionType.INCOME, 'sales', 'Sales revenue'),
    'payment_collection': (TransactionType.INCOME, 'collection', 'Customer collections'),
    'purchase_invoice': (TransactionType.EXPENSE, 'purchase', 'Purchases'),
    'payment_disbursement': (TransactionType.EXPENSE, 'payment', 'Supplier payments'),
    'misc_income': (TransactionType.INCOME, 'miscellaneous', 'Miscellaneous income'),
    'misc_expense': (TransactionType.EXPENSE, 'miscellaneous', 'Miscellaneous expense'),
    'cash_deposit': (TransactionType.INCOME, 'deposit', 'Deposits'),
    'cash_withdrawal': (TransactionType.EXPENSE, 'withdrawal', 'Withdrawals'),
}

TRANSFER_CATEGORY_NAME = 'Internal transfers'


def list_categories(db: Session, *, category_type: TransactionType | str | None = None) -> list[FinancialCategory]:
    stmt = select(FinancialCategory).order_by(FinancialCategory.name.asc())
    if category_type is not None:
        stmt = stmt.where(FinancialCategory.type == TransactionType(category_type))
    return list(db.execute(stmt).scalars())


def get_category(db: Session, category_id: str) -> FinancialCategory | None:
    return db.get(FinancialCategory, category_id)


def get_or_create_category(
    db: Session,
    *,
    name: str,
    category_type: TransactionType | str,
    description: str | None = None,
) -> FinancialCategory:
    name = (name or '').strip()
    if not name:
        raise ValueError('Category name is required')
    category_type = TransactionType(category_type)
    category = db.execute(
        select(FinancialCategory)
        .where(
            func.lower(FinancialCategory.name) == name.lower(),
            FinancialCategory.type == category_type,
        )
        .limit(1)
    ).scalar_one_or_none()
    if category is None:
        category = FinancialCategory(name=name, type=category_type, description=description)
        db.add(category)
        db.flush()
        logger.info('Created financial category', extra={'category_name': name, 'category_type': category_type.value})
    return category


def default_category_for(db: Session, commercial_type: str) -> FinancialCategory:
    """Category by type and name fragment, else any category of that type, else a new default."""
    hint = COMMERCIAL_CATEGORY_HINTS.get(commercial_type)
    if hint is None:
        raise ValueError(f'Unsupported commercial type: {commercial_type}')
    category_type, fragment, default_name = hint

    category = db.execute(
        select(FinancialCategory)
        .where(
            FinancialCategory.type == category_type,
            func.lower(FinancialCategory.name).like(f'%{fragment}%'),
        )
        .order_by(FinancialCategory.created_at.asc(), FinancialCategory.name.asc())
        .limit(1)
    ).scalar_one_or_none()
    if category is not None:
        return category

    category = db.execute(
        select(FinancialCategory)
        .where(FinancialCategory.type == category_type)
        .order_by(FinancialCategory.created_at.asc(), FinancialCategory.name.asc())
        .limit(1)
    ).scalar_one_or_none()
    if category is not None:
        return category

    return get_or_create_category(db, name=default_name, category_type=category_type)


RETURN_CATEGORY_NAMES = {
    TransactionType.INCOME: 'Sales revenue reduction',
    TransactionType.EXPENSE: 'Purchase cost reduction',
}


def return_category_for(db: Session, transaction_type: TransactionType) -> FinancialCategory:
    return get_or_create_category(db, name=RETURN_CATEGORY_NAMES[transaction_type], category_type=transaction_type)
