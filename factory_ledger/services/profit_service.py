from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from factory_ledger.models import Invoice, Profit

logger = logging.getLogger(__name__)

MONEY = Decimal('0.01')


@dataclass(frozen=True)
class ProfitFigures:
    total_sales: Decimal
    profit_amount: Decimal
    profit_percentage: Decimal


def _money(value: Decimal) -> Decimal:
    return value.quantize(MONEY, rounding=ROUND_HALF_UP)


def profit_percentage(total_sales: Decimal, profit_amount: Decimal) -> Decimal:
    if total_sales == 0:
        return Decimal('0')
    return _money(profit_amount / total_sales * Decimal('100'))


def adjust_profit_for_return(total_sales, profit_amount, return_amount) -> ProfitFigures:
    """Scale profit down by the share of sales being returned.

    A zero sales figure leaves profit untouched.
    """
    sales = Decimal(str(total_sales or 0))
    profit = Decimal(str(profit_amount or 0))
    returned = abs(Decimal(str(return_amount or 0)))
    if sales == 0:
        return ProfitFigures(total_sales=sales, profit_amount=profit, profit_percentage=Decimal('0'))
    new_profit = _money(profit - profit * returned / sales)
    new_sales = _money(sales - returned)
    return ProfitFigures(
        total_sales=new_sales,
        profit_amount=new_profit,
        profit_percentage=profit_percentage(new_sales, new_profit),
    )


def get_invoice_profit(db: Session, invoice_id: str) -> Profit | None:
    return db.execute(select(Profit).where(Profit.invoice_id == invoice_id).limit(1)).scalar_one_or_none()


def reduce_invoice_profit(db: Session, *, invoice_id: str, return_amount) -> ProfitFigures | None:
    profit = get_invoice_profit(db, invoice_id)
    if profit is None:
        logger.info('No profit record for invoice', extra={'invoice_id': invoice_id})
        return None
    figures = adjust_profit_for_return(profit.total_sales, profit.profit_amount, return_amount)
    profit.total_sales = figures.total_sales
    profit.profit_amount = figures.profit_amount
    profit.profit_percentage = figures.profit_percentage
    db.flush()
    return figures


def restore_invoice_profit(db: Session, *, invoice_id: str) -> ProfitFigures | None:
    """Rebuild profit from the invoice total, undoing earlier return reductions."""
    profit = get_invoice_profit(db, invoice_id)
    invoice = db.get(Invoice, invoice_id)
    if profit is None or invoice is None:
        return None
    sales = Decimal(invoice.total_amount or 0)
    amount = _money(sales - Decimal(profit.total_cost or 0))
    profit.total_sales = _money(sales)
    profit.profit_amount = amount
    profit.profit_percentage = profit_percentage(sales, amount)
    db.flush()
    return ProfitFigures(
        total_sales=profit.total_sales,
        profit_amount=profit.profit_amount,
        profit_percentage=profit.profit_percentage,
    )
