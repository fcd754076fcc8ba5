from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from factory_ledger.errors import LedgerError
from factory_ledger.events import (
    FINANCIAL_DATA_CHANGE,
    INVOICE_STATUS_CHANGE,
    RETURN_STATUS_CHANGE,
    EventBus,
    FinancialDataChange,
    StatusChange,
)
from factory_ledger.models import (
    DocumentStatus,
    FinancialTransaction,
    Invoice,
    InvoiceType,
    Party,
    Payment,
    PaymentType,
    Return,
    ReturnType,
    TransactionType,
)
from factory_ledger.services.financial_balance_service import FinancialBalanceService, account_for_payment_method
from factory_ledger.services.financial_category_service import default_category_for, return_category_for
from factory_ledger.services.financial_transaction_service import create_transaction, find_by_reference
from factory_ledger.services.notification_service import Notifier, get_notifier
from factory_ledger.services.party_ledger_service import update_party_balance
from factory_ledger.services.profit_service import reduce_invoice_profit, restore_invoice_profit

logger = logging.getLogger(__name__)

REF_RETURN = 'return'
REF_RETURN_CANCELLATION = 'return_cancellation'

INVOICE_COMMERCIAL_TYPES = {
    InvoiceType.SALE: 'sale_invoice',
    InvoiceType.PURCHASE: 'purchase_invoice',
}
PAYMENT_COMMERCIAL_TYPES = {
    PaymentType.COLLECTION: 'payment_collection',
    PaymentType.DISBURSEMENT: 'payment_disbursement',
}


def commercial_reference_type(kind: str, commercial_type: str) -> str:
    """Reference type of the confirmation entry for ('invoice', 'sale'), ('payment', 'collection') and so on."""
    if kind == 'invoice':
        return INVOICE_COMMERCIAL_TYPES[InvoiceType(commercial_type)]
    if kind == 'payment':
        return PAYMENT_COMMERCIAL_TYPES[PaymentType(commercial_type)]
    raise ValueError(f'Unsupported commercial document kind: {kind}')


def cancellation_reference_type(kind: str, commercial_type: str) -> str:
    return f'cancel_{kind}_{commercial_type}'


class FinancialCommercialBridge:
    """Mirrors commercial documents into financial transactions, at most once per reference.

    Invoices and returns are accrual entries and leave cash and bank untouched;
    payments move the balance of the account their method settles through.
    """

    def __init__(self, db: Session, notifier: Notifier | None = None, bus: EventBus | None = None) -> None:
        self.db = db
        self.notifier = notifier or get_notifier()
        self.bus = bus
        self.balances = FinancialBalanceService(db, self.notifier)

    def link_counts(self, reference_id: str, confirm_type: str, cancel_type: str) -> tuple[int, int]:
        """Number of confirmation and cancellation entries linked to one document."""
        rows = find_by_reference(self.db, reference_id=reference_id)
        confirmed = sum(1 for row in rows if row.reference_type == confirm_type)
        cancelled = sum(1 for row in rows if row.reference_type == cancel_type)
        return confirmed, cancelled

    def find_linked_financial_transactions(self, commercial_id: str) -> list[FinancialTransaction]:
        try:
            return find_by_reference(self.db, reference_id=commercial_id)
        except SQLAlchemyError:
            logger.exception('Failed to load linked transactions', extra={'reference_id': commercial_id})
            self.notifier.error('Failed to load linked financial transactions')
            return []

    def _run(
        self,
        *,
        reference_id: str,
        confirm_type: str,
        cancel_type: str,
        cancelling: bool,
        action: Callable[[], None],
        failure_message: str,
    ) -> bool:
        reference_type = cancel_type if cancelling else confirm_type
        confirmed, cancelled = self.link_counts(reference_id, confirm_type, cancel_type)
        # a document may go confirm -> cancel -> confirm; each side applies once per crossing
        if cancelling:
            already_applied = confirmed > 0 and cancelled >= confirmed
        else:
            already_applied = confirmed > cancelled
        if already_applied:
            logger.info(
                'Financial transaction already linked, skipping',
                extra={'reference_id': reference_id, 'reference_type': reference_type},
            )
            return True
        try:
            with self.db.begin_nested():
                action()
        except (LedgerError, LookupError, ValueError) as exc:
            logger.warning(
                '%s: %s',
                failure_message,
                exc,
                extra={'reference_id': reference_id, 'reference_type': reference_type},
            )
            self.notifier.error(f'{failure_message}: {exc}')
            return False
        except SQLAlchemyError:
            logger.exception(failure_message, extra={'reference_id': reference_id, 'reference_type': reference_type})
            self.notifier.error(failure_message)
            return False
        if self.bus is not None:
            self.bus.publish(FINANCIAL_DATA_CHANGE, FinancialDataChange(source=reference_type, reference_id=reference_id))
        return True

    def _load(self, model, value):
        if isinstance(value, model):
            return value
        return self.db.get(model, str(value))

    def handle_invoice_confirmation(self, invoice: Invoice | str) -> bool:
        invoice_row = self._load(Invoice, invoice)
        if invoice_row is None:
            self.notifier.error('Invoice not found')
            return False
        commercial_type = INVOICE_COMMERCIAL_TYPES[invoice_row.invoice_type]
        is_sale = invoice_row.invoice_type == InvoiceType.SALE
        label = f"{'Sales' if is_sale else 'Purchase'} invoice {invoice_row.id[:8]}"

        def action() -> None:
            category = default_category_for(self.db, commercial_type)
            create_transaction(
                self.db,
                transaction_type=TransactionType.INCOME if is_sale else TransactionType.EXPENSE,
                amount=invoice_row.total_amount,
                category_id=category.id,
                payment_method='cash',
                transaction_date=invoice_row.date,
                notes=label,
                reference_id=invoice_row.id,
                reference_type=commercial_type,
            )
            if invoice_row.party_id:
                # the customer owes us for a sale; we owe the supplier for a purchase
                update_party_balance(
                    self.db,
                    party_id=invoice_row.party_id,
                    amount=invoice_row.total_amount,
                    is_debit=is_sale,
                    description=label,
                    transaction_type=invoice_row.invoice_type.value,
                    reference=invoice_row.id,
                    entry_date=invoice_row.date,
                )

        return self._run(
            reference_id=invoice_row.id,
            confirm_type=commercial_type,
            cancel_type=cancellation_reference_type('invoice', invoice_row.invoice_type.value),
            cancelling=False,
            action=action,
            failure_message='Failed to record the invoice in the financial ledger',
        )

    def handle_payment_confirmation(self, payment: Payment | str) -> bool:
        payment_row = self._load(Payment, payment)
        if payment_row is None:
            self.notifier.error('Payment not found')
            return False
        commercial_type = PAYMENT_COMMERCIAL_TYPES[payment_row.payment_type]
        is_collection = payment_row.payment_type == PaymentType.COLLECTION
        party = self.db.get(Party, payment_row.party_id) if payment_row.party_id else None
        label = f"{'Collection from' if is_collection else 'Payment to'} {party.name if party else 'party'}"

        def action() -> None:
            category = default_category_for(self.db, commercial_type)
            create_transaction(
                self.db,
                transaction_type=TransactionType.INCOME if is_collection else TransactionType.EXPENSE,
                amount=payment_row.amount,
                category_id=category.id,
                payment_method=account_for_payment_method(payment_row.method).value,
                transaction_date=payment_row.date,
                notes=label,
                reference_id=payment_row.id,
                reference_type=commercial_type,
                balances=self.balances,
            )
            if party is not None:
                update_party_balance(
                    self.db,
                    party_id=party.id,
                    amount=payment_row.amount,
                    is_debit=not is_collection,
                    description=label,
                    transaction_type=payment_row.payment_type.value,
                    reference=payment_row.id,
                    entry_date=payment_row.date,
                )

        return self._run(
            reference_id=payment_row.id,
            confirm_type=commercial_type,
            cancel_type=cancellation_reference_type('payment', payment_row.payment_type.value),
            cancelling=False,
            action=action,
            failure_message='Failed to record the payment in the financial ledger',
        )

    def _commercial_party_id(self, kind: str, commercial_id: str) -> str | None:
        document = self.db.get(Invoice if kind == 'invoice' else Payment, commercial_id)
        return document.party_id if document is not None else None

    def handle_commercial_cancellation(
        self,
        commercial_id: str,
        kind: str,
        commercial_type: str,
        amount,
        party_name: str | None = None,
        cancel_date: date | None = None,
    ) -> bool:
        """Post a reduction entry against the confirmation entry of an invoice or payment.

        The party ledger gets the opposite line of the one written on confirmation.
        """
        try:
            original_reference = commercial_reference_type(kind, commercial_type)
        except ValueError as exc:
            self.notifier.error(str(exc))
            return False
        reference_type = cancellation_reference_type(kind, commercial_type)
        # confirmation debited sales and disbursements
        confirmation_was_debit = commercial_type in (InvoiceType.SALE.value, PaymentType.DISBURSEMENT.value)

        def action() -> None:
            originals = find_by_reference(self.db, reference_id=commercial_id, reference_type=original_reference)
            if not originals:
                raise LookupError(f'no {original_reference} entry linked to {commercial_id}')
            original = originals[-1]
            label = 'invoice' if kind == 'invoice' else f'{commercial_type} payment'
            notes = f'Cancellation of {label} {commercial_id[:8]}' + (f' ({party_name})' if party_name else '')
            create_transaction(
                self.db,
                transaction_type=original.type,
                amount=amount,
                category_id=original.category_id,
                payment_method=original.payment_method,
                transaction_date=cancel_date or date.today(),
                notes=notes,
                reference_id=commercial_id,
                reference_type=reference_type,
                is_reduction=True,
                balances=self.balances if kind == 'payment' else None,
            )
            party_id = self._commercial_party_id(kind, commercial_id)
            if party_id:
                update_party_balance(
                    self.db,
                    party_id=party_id,
                    amount=amount,
                    is_debit=not confirmation_was_debit,
                    description=notes,
                    transaction_type=f'cancel_{commercial_type}',
                    reference=commercial_id,
                    entry_date=cancel_date,
                )

        return self._run(
            reference_id=commercial_id,
            confirm_type=original_reference,
            cancel_type=reference_type,
            cancelling=True,
            action=action,
            failure_message='Failed to reverse the financial entry',
        )

    def _return_transaction_type(self, return_row: Return) -> TransactionType:
        if return_row.return_type == ReturnType.SALES_RETURN:
            return TransactionType.INCOME
        return TransactionType.EXPENSE

    def handle_return_confirmation(self, return_data: Return | str) -> bool:
        return_row = self._load(Return, return_data)
        if return_row is None:
            self.notifier.error('Return not found')
            return False
        is_sales_return = return_row.return_type == ReturnType.SALES_RETURN
        transaction_type = self._return_transaction_type(return_row)

        def action() -> None:
            if return_row.invoice_id:
                if self.db.get(Invoice, return_row.invoice_id) is None:
                    raise LookupError(f'invoice {return_row.invoice_id} not found')
                if is_sales_return:
                    reduce_invoice_profit(self.db, invoice_id=return_row.invoice_id, return_amount=return_row.amount)
                category = return_category_for(self.db, transaction_type)
            else:
                category = default_category_for(
                    self.db, 'misc_income' if transaction_type == TransactionType.INCOME else 'misc_expense'
                )
            create_transaction(
                self.db,
                transaction_type=transaction_type,
                amount=return_row.amount,
                category_id=category.id,
                payment_method='cash',
                transaction_date=return_row.date,
                notes=f"{'Sales' if is_sales_return else 'Purchase'} return {return_row.id[:8]}",
                reference_id=return_row.id,
                reference_type=REF_RETURN,
                is_reduction=True,
            )
            if return_row.party_id:
                # sales return: we owe the customer; purchase return: the supplier owes us
                update_party_balance(
                    self.db,
                    party_id=return_row.party_id,
                    amount=return_row.amount,
                    is_debit=not is_sales_return,
                    description=f"{'Sales' if is_sales_return else 'Purchase'} return {return_row.id[:8]}",
                    transaction_type=return_row.return_type.value,
                    reference=return_row.id,
                    entry_date=return_row.date,
                )

        return self._run(
            reference_id=return_row.id,
            confirm_type=REF_RETURN,
            cancel_type=REF_RETURN_CANCELLATION,
            cancelling=False,
            action=action,
            failure_message='Failed to record the return in the financial ledger',
        )

    def handle_return_cancellation(self, return_data: Return | str) -> bool:
        return_row = self._load(Return, return_data)
        if return_row is None:
            self.notifier.error('Return not found')
            return False
        is_sales_return = return_row.return_type == ReturnType.SALES_RETURN

        def action() -> None:
            originals = find_by_reference(self.db, reference_id=return_row.id, reference_type=REF_RETURN)
            if not originals:
                raise LookupError(f'no return entry linked to {return_row.id}')
            original = originals[-1]
            create_transaction(
                self.db,
                transaction_type=original.type,
                amount=original.amount,
                category_id=original.category_id,
                payment_method=original.payment_method,
                transaction_date=date.today(),
                notes=f'Cancellation of return {return_row.id[:8]}',
                reference_id=return_row.id,
                reference_type=REF_RETURN_CANCELLATION,
                is_reduction=False,
            )
            if return_row.invoice_id and is_sales_return:
                restore_invoice_profit(self.db, invoice_id=return_row.invoice_id)
            if return_row.party_id:
                update_party_balance(
                    self.db,
                    party_id=return_row.party_id,
                    amount=Decimal(original.amount),
                    is_debit=is_sales_return,
                    description=f'Cancellation of return {return_row.id[:8]}',
                    transaction_type=f'cancel_{return_row.return_type.value}',
                    reference=return_row.id,
                )

        return self._run(
            reference_id=return_row.id,
            confirm_type=REF_RETURN,
            cancel_type=REF_RETURN_CANCELLATION,
            cancelling=True,
            action=action,
            failure_message='Failed to reverse the return in the financial ledger',
        )


class CommercialEventDispatcher:
    """Feeds invoice and return status changes into the bridge, one transaction per event."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier: Notifier | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.notifier = notifier or get_notifier()
        self.bus = bus

    def _with_bridge(self, work: Callable[[FinancialCommercialBridge], bool]) -> bool:
        with self.session_factory() as db:
            ok = work(FinancialCommercialBridge(db, self.notifier, self.bus))
            if ok:
                db.commit()
            else:
                db.rollback()
            return ok

    def on_invoice_status_change(self, change: StatusChange) -> bool | None:
        confirmed = DocumentStatus.CONFIRMED.value
        if change.crossed_into(confirmed):
            return self._with_bridge(lambda bridge: bridge.handle_invoice_confirmation(str(change.entity_id)))
        if change.crossed_out_of(confirmed):

            def cancel(bridge: FinancialCommercialBridge) -> bool:
                invoice = bridge.db.get(Invoice, str(change.entity_id))
                if invoice is None:
                    self.notifier.error('Invoice not found')
                    return False
                return bridge.handle_commercial_cancellation(
                    invoice.id, 'invoice', invoice.invoice_type.value, invoice.total_amount
                )

            return self._with_bridge(cancel)
        return None

    def on_return_status_change(self, change: StatusChange) -> bool | None:
        confirmed = DocumentStatus.CONFIRMED.value
        if change.crossed_into(confirmed):
            return self._with_bridge(lambda bridge: bridge.handle_return_confirmation(str(change.entity_id)))
        if change.crossed_out_of(confirmed):
            return self._with_bridge(lambda bridge: bridge.handle_return_cancellation(str(change.entity_id)))
        return None

    def register(self, bus: EventBus) -> None:
        bus.subscribe(INVOICE_STATUS_CHANGE, self.on_invoice_status_change)
        bus.subscribe(RETURN_STATUS_CHANGE, self.on_return_status_change)
