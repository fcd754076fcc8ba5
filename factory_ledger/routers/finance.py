from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from factory_ledger.db import get_db
from factory_ledger.dependencies import get_app_notifier, get_bus
from factory_ledger.events import EventBus
from factory_ledger.models import CashOperation, DocumentStatus, Payment, TransactionType
from factory_ledger.services.cash_management_service import CashManagementService
from factory_ledger.services.financial_balance_service import FinancialBalanceService
from factory_ledger.services.financial_category_service import get_or_create_category, list_categories
from factory_ledger.services.financial_commercial_bridge import FinancialCommercialBridge
from factory_ledger.services.financial_transaction_service import list_transactions, transaction_to_dict
from factory_ledger.services.notification_service import Notifier
from factory_ledger.services.party_ledger_service import (
    get_party_balance,
    recalculate_party_balances,
    update_opening_balance,
)

router = APIRouter(prefix='/finance', tags=['finance'])


class ManualBalancesIn(BaseModel):
    cash_balance: Decimal
    bank_balance: Decimal
    reason: str | None = None


class CashOperationIn(BaseModel):
    account: str
    amount: Decimal
    notes: str | None = None


class TransferIn(BaseModel):
    from_account: str
    to_account: str
    amount: Decimal
    notes: str | None = None


class CategoryIn(BaseModel):
    name: str
    type: str
    description: str | None = None


class OpeningBalanceIn(BaseModel):
    opening_balance: Decimal
    balance_type: str


def _last_error(notifier: Notifier, since: int, fallback: str) -> str:
    messages = notifier.errors_since(since)
    return messages[-1] if messages else fallback


def _operation_to_dict(operation: CashOperation) -> dict:
    return {
        'id': operation.id,
        'operation_type': operation.operation_type.value,
        'amount': operation.amount,
        'from_account': operation.from_account.value if operation.from_account else None,
        'to_account': operation.to_account.value if operation.to_account else None,
        'notes': operation.notes,
        'date': operation.date,
    }


def _cash_result(db: Session, operation: CashOperation | None, notifier: Notifier, since: int) -> dict:
    if operation is None:
        db.rollback()
        raise HTTPException(status_code=400, detail=_last_error(notifier, since, 'Cash operation rejected'))
    db.commit()
    return _operation_to_dict(operation)


@router.get('/balance')
def balance(db: Session = Depends(get_db), notifier: Notifier = Depends(get_app_notifier)):
    snapshot = FinancialBalanceService(db, notifier).get_current_balance()
    if snapshot is None:
        raise HTTPException(status_code=500, detail='Failed to load balances')
    db.commit()
    return {
        'cash_balance': snapshot.cash_balance,
        'bank_balance': snapshot.bank_balance,
        'last_updated': snapshot.last_updated,
    }


@router.put('/balance')
def set_balance(
    payload: ManualBalancesIn,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
):
    since = notifier.mark()
    service = FinancialBalanceService(db, notifier)
    if not service.update_balances_manually(
        payload.cash_balance, payload.bank_balance, payload.reason or 'manual balance adjustment'
    ):
        db.rollback()
        raise HTTPException(status_code=400, detail=_last_error(notifier, since, 'Balance update rejected'))
    db.commit()
    return {'ok': True}


@router.post('/cash/deposit', status_code=201)
def deposit(
    payload: CashOperationIn,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
    bus: EventBus = Depends(get_bus),
):
    since = notifier.mark()
    operation = CashManagementService(db, notifier, bus).deposit(payload.account, payload.amount, payload.notes)
    return _cash_result(db, operation, notifier, since)


@router.post('/cash/withdraw', status_code=201)
def withdraw(
    payload: CashOperationIn,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
    bus: EventBus = Depends(get_bus),
):
    since = notifier.mark()
    operation = CashManagementService(db, notifier, bus).withdraw(payload.account, payload.amount, payload.notes)
    return _cash_result(db, operation, notifier, since)


@router.post('/cash/transfer', status_code=201)
def transfer(
    payload: TransferIn,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
    bus: EventBus = Depends(get_bus),
):
    since = notifier.mark()
    operation = CashManagementService(db, notifier, bus).transfer(
        payload.from_account, payload.to_account, payload.amount, payload.notes
    )
    return _cash_result(db, operation, notifier, since)


@router.get('/cash/operations')
def cash_operations(limit: int = 20, db: Session = Depends(get_db)):
    return [_operation_to_dict(operation) for operation in CashManagementService(db).recent_operations(limit)]


@router.get('/categories')
def categories(type: str | None = None, db: Session = Depends(get_db)):
    try:
        rows = list_categories(db, category_type=type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f'Unknown category type: {type}') from exc
    return [{'id': row.id, 'name': row.name, 'type': row.type.value, 'description': row.description} for row in rows]


@router.post('/categories', status_code=201)
def create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = get_or_create_category(
            db, name=payload.name, category_type=TransactionType(payload.type), description=payload.description
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'id': category.id, 'name': category.name, 'type': category.type.value}


@router.get('/transactions')
def transactions(
    type: str | None = None,
    reference_id: str | None = None,
    limit: int = 200,
    db: Session = Depends(get_db),
):
    try:
        rows = list_transactions(db, transaction_type=type, reference_id=reference_id, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f'Unknown transaction type: {type}') from exc
    return [transaction_to_dict(row) for row in rows]


@router.post('/payments/{payment_id}/confirm')
def confirm_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
    bus: EventBus = Depends(get_bus),
):
    since = notifier.mark()
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail='Payment not found')
    if not FinancialCommercialBridge(db, notifier, bus).handle_payment_confirmation(payment):
        db.rollback()
        raise HTTPException(status_code=400, detail=_last_error(notifier, since, 'Payment could not be recorded'))
    payment.payment_status = DocumentStatus.CONFIRMED
    db.commit()
    return {'id': payment.id, 'payment_status': payment.payment_status.value}


@router.post('/payments/{payment_id}/cancel')
def cancel_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
    bus: EventBus = Depends(get_bus),
):
    since = notifier.mark()
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail='Payment not found')
    bridge = FinancialCommercialBridge(db, notifier, bus)
    if not bridge.handle_commercial_cancellation(payment.id, 'payment', payment.payment_type.value, payment.amount):
        db.rollback()
        raise HTTPException(status_code=400, detail=_last_error(notifier, since, 'Payment could not be cancelled'))
    payment.payment_status = DocumentStatus.CANCELLED
    db.commit()
    return {'id': payment.id, 'payment_status': payment.payment_status.value}


@router.get('/linked/{commercial_id}')
def linked_transactions(
    commercial_id: str,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
):
    rows = FinancialCommercialBridge(db, notifier).find_linked_financial_transactions(commercial_id)
    return [transaction_to_dict(row) for row in rows]


@router.post('/parties/reconcile')
def reconcile_parties(db: Session = Depends(get_db), notifier: Notifier = Depends(get_app_notifier)):
    report = recalculate_party_balances(db, notifier=notifier)
    db.commit()
    return {
        'parties_processed': report.parties_processed,
        'entries_rewritten': report.entries_rewritten,
        'duplicate_balances_removed': report.duplicate_balances_removed,
        'errors': report.errors,
    }


@router.get('/parties/{party_id}/balance')
def party_balance(party_id: str, db: Session = Depends(get_db)):
    value = get_party_balance(db, party_id)
    if value is None:
        raise HTTPException(status_code=404, detail='Party balance not found')
    return {'party_id': party_id, 'balance': value}


@router.put('/parties/{party_id}/opening-balance')
def set_opening_balance(party_id: str, payload: OpeningBalanceIn, db: Session = Depends(get_db)):
    try:
        value = update_opening_balance(
            db, party_id=party_id, opening_balance=payload.opening_balance, balance_type=payload.balance_type
        )
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'party_id': party_id, 'balance': value}


@router.get('/notices')
def notices(notifier: Notifier = Depends(get_app_notifier)):
    return [
        {'level': notice.level, 'message': notice.message, 'created_at': notice.created_at}
        for notice in notifier.drain()
    ]
