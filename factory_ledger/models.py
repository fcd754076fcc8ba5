from __future__ import annotations

import datetime as dt
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY.
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')

BALANCE_ROW_ID = '1'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


def _values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _enum(enum_cls: type[Enum], name: str) -> SQLEnum:
    return SQLEnum(enum_cls, name=name, values_callable=_values)


class Base(DeclarativeBase):
    pass


class ItemType(str, Enum):
    RAW = 'raw'
    SEMI = 'semi'
    PACKAGING = 'packaging'
    FINISHED = 'finished'

    @classmethod
    def _missing_(cls, value):
        # Commercial lines tag items by backing table name.
        if isinstance(value, str):
            for member, table_name in ITEM_TABLE_NAMES.items():
                if value == table_name:
                    return member
        return None

    @property
    def table_name(self) -> str:
        return ITEM_TABLE_NAMES[self]


ITEM_TABLE_NAMES = {
    ItemType.RAW: 'raw_materials',
    ItemType.SEMI: 'semi_finished_products',
    ItemType.PACKAGING: 'packaging_materials',
    ItemType.FINISHED: 'finished_products',
}


class MovementType(str, Enum):
    IN = 'in'
    OUT = 'out'
    ADJUSTMENT = 'adjustment'


class MovementDirection(str, Enum):
    FORWARD = 'forward'
    REVERSE = 'reverse'


class OrderStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'inProgress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class DocumentStatus(str, Enum):
    DRAFT = 'draft'
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'


class InvoiceType(str, Enum):
    SALE = 'sale'
    PURCHASE = 'purchase'


class ReturnType(str, Enum):
    SALES_RETURN = 'sales_return'
    PURCHASE_RETURN = 'purchase_return'


class PaymentType(str, Enum):
    COLLECTION = 'collection'
    DISBURSEMENT = 'disbursement'


class PartyType(str, Enum):
    CUSTOMER = 'customer'
    SUPPLIER = 'supplier'
    OTHER = 'other'


class BalanceType(str, Enum):
    DEBIT = 'debit'
    CREDIT = 'credit'


class TransactionType(str, Enum):
    INCOME = 'income'
    EXPENSE = 'expense'


class CashAccount(str, Enum):
    CASH = 'cash'
    BANK = 'bank'


class CashOperationType(str, Enum):
    DEPOSIT = 'deposit'
    WITHDRAWAL = 'withdrawal'
    TRANSFER = 'transfer'


class InventoryItemMixin:
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32))
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False, default=Decimal('0'), server_default='0')
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'), server_default='0')
    sales_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    min_stock: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False, default=Decimal('0'), server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class RawMaterial(InventoryItemMixin, Base):
    __tablename__ = 'raw_materials'


class PackagingMaterial(InventoryItemMixin, Base):
    __tablename__ = 'packaging_materials'


class SemiFinishedProduct(InventoryItemMixin, Base):
    __tablename__ = 'semi_finished_products'


class FinishedProduct(InventoryItemMixin, Base):
    __tablename__ = 'finished_products'

    semi_finished_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('semi_finished_products.id'))
    semi_finished_quantity: Mapped[Decimal] = mapped_column(
        Numeric(14, 3), nullable=False, default=Decimal('0'), server_default='0'
    )


class SemiFinishedIngredient(Base):
    __tablename__ = 'semi_finished_ingredients'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    semi_finished_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('semi_finished_products.id', ondelete='CASCADE'), nullable=False
    )
    raw_material_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('raw_materials.id'), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(7, 3), nullable=False)


class FinishedProductPackaging(Base):
    __tablename__ = 'finished_product_packaging'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    finished_product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('finished_products.id', ondelete='CASCADE'), nullable=False
    )
    packaging_material_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('packaging_materials.id'), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)


class ProductionOrder(Base):
    __tablename__ = 'production_orders'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    product_code: Mapped[str] = mapped_column(String(64), nullable=False)
    product_name: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, 'production_order_status'), nullable=False, default=OrderStatus.PENDING
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=date.today)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class ProductionOrderIngredient(Base):
    __tablename__ = 'production_order_ingredients'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    production_order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('production_orders.id', ondelete='CASCADE'), nullable=False
    )
    raw_material_code: Mapped[str] = mapped_column(String(64), nullable=False)
    raw_material_name: Mapped[str | None] = mapped_column(Text)
    required_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)


class PackagingOrder(Base):
    __tablename__ = 'packaging_orders'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    product_code: Mapped[str] = mapped_column(String(64), nullable=False)
    product_name: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32))
    semi_finished_code: Mapped[str] = mapped_column(String(64), nullable=False)
    semi_finished_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, 'packaging_order_status'), nullable=False, default=OrderStatus.PENDING
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=date.today)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class PackagingOrderMaterial(Base):
    __tablename__ = 'packaging_order_materials'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    packaging_order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('packaging_orders.id', ondelete='CASCADE'), nullable=False
    )
    packaging_material_code: Mapped[str] = mapped_column(String(64), nullable=False)
    packaging_material_name: Mapped[str | None] = mapped_column(Text)
    required_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)


class InventoryMovement(Base):
    __tablename__ = 'inventory_movements'
    __table_args__ = (
        CheckConstraint('quantity >= 0', name='inventory_movements_quantity_ck'),
        Index('inventory_movements_item_idx', 'item_type', 'item_id'),
        Index('inventory_movements_reference_idx', 'reference_type', 'reference_id'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    item_type: Mapped[ItemType] = mapped_column(_enum(ItemType, 'item_type'), nullable=False)
    movement_type: Mapped[MovementType] = mapped_column(_enum(MovementType, 'movement_type'), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    user_id: Mapped[str | None] = mapped_column(String(64))
    reference_type: Mapped[str | None] = mapped_column(String(64))
    reference_id: Mapped[str | None] = mapped_column(String(64))
    direction: Mapped[MovementDirection | None] = mapped_column(_enum(MovementDirection, 'movement_direction'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class Party(Base):
    __tablename__ = 'parties'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[PartyType] = mapped_column(_enum(PartyType, 'party_type'), nullable=False, default=PartyType.CUSTOMER)
    phone: Mapped[str | None] = mapped_column(Text)
    address: Mapped[str | None] = mapped_column(Text)
    opening_balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    balance_type: Mapped[BalanceType] = mapped_column(
        _enum(BalanceType, 'balance_type'), nullable=False, default=BalanceType.DEBIT
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class PartyBalance(Base):
    __tablename__ = 'party_balances'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    party_id: Mapped[str] = mapped_column(String(36), ForeignKey('parties.id', ondelete='CASCADE'), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class LedgerEntry(Base):
    __tablename__ = 'ledger'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    party_id: Mapped[str] = mapped_column(String(36), ForeignKey('parties.id', ondelete='CASCADE'), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(64))
    transaction_type: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=date.today)
    description: Mapped[str | None] = mapped_column(Text)
    debit: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    credit: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    balance_after: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class Invoice(Base):
    __tablename__ = 'invoices'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    party_id: Mapped[str | None] = mapped_column(String(36), ForeignKey('parties.id'))
    invoice_type: Mapped[InvoiceType] = mapped_column(_enum(InvoiceType, 'invoice_type'), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=date.today)
    payment_status: Mapped[DocumentStatus] = mapped_column(
        _enum(DocumentStatus, 'invoice_payment_status'), nullable=False, default=DocumentStatus.DRAFT
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class InvoiceItem(Base):
    __tablename__ = 'invoice_items'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    item_type: Mapped[ItemType] = mapped_column(_enum(ItemType, 'invoice_item_type'), nullable=False)
    item_name: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    cost_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))


class Payment(Base):
    __tablename__ = 'payments'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    party_id: Mapped[str | None] = mapped_column(String(36), ForeignKey('parties.id'))
    payment_type: Mapped[PaymentType] = mapped_column(_enum(PaymentType, 'payment_type'), nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False, default='cash')
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=date.today)
    payment_status: Mapped[DocumentStatus] = mapped_column(
        _enum(DocumentStatus, 'payment_status'), nullable=False, default=DocumentStatus.DRAFT
    )
    related_invoice_id: Mapped[str | None] = mapped_column(String(36), ForeignKey('invoices.id'))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class Return(Base):
    __tablename__ = 'returns'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    invoice_id: Mapped[str | None] = mapped_column(String(36), ForeignKey('invoices.id'))
    party_id: Mapped[str | None] = mapped_column(String(36), ForeignKey('parties.id'))
    return_type: Mapped[ReturnType] = mapped_column(_enum(ReturnType, 'return_type'), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=date.today)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payment_status: Mapped[DocumentStatus] = mapped_column(
        _enum(DocumentStatus, 'return_payment_status'), nullable=False, default=DocumentStatus.DRAFT
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class ReturnItem(Base):
    __tablename__ = 'return_items'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    return_id: Mapped[str] = mapped_column(String(36), ForeignKey('returns.id', ondelete='CASCADE'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    item_type: Mapped[ItemType] = mapped_column(_enum(ItemType, 'return_item_type'), nullable=False)
    item_name: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')


class Profit(Base):
    __tablename__ = 'profits'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False)
    invoice_date: Mapped[date | None] = mapped_column(Date)
    party_id: Mapped[str | None] = mapped_column(String(36), ForeignKey('parties.id'))
    total_sales: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    total_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    profit_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    profit_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False, default=Decimal('0'), server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class FinancialCategory(Base):
    __tablename__ = 'financial_categories'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[TransactionType] = mapped_column(_enum(TransactionType, 'financial_category_type'), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class FinancialTransaction(Base):
    __tablename__ = 'financial_transactions'
    __table_args__ = (
        CheckConstraint('amount >= 0', name='financial_transactions_amount_ck'),
        Index('financial_transactions_reference_idx', 'reference_id', 'reference_type'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=date.today)
    type: Mapped[TransactionType] = mapped_column(_enum(TransactionType, 'financial_transaction_type'), nullable=False)
    category_id: Mapped[str] = mapped_column(String(36), ForeignKey('financial_categories.id'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default='cash')
    notes: Mapped[str | None] = mapped_column(Text)
    reference_id: Mapped[str | None] = mapped_column(String(64))
    reference_type: Mapped[str | None] = mapped_column(String(64))
    is_reduction: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class FinancialBalance(Base):
    __tablename__ = 'financial_balance'
    __table_args__ = (
        CheckConstraint('cash_balance >= 0', name='financial_balance_cash_ck'),
        CheckConstraint('bank_balance >= 0', name='financial_balance_bank_ck'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=BALANCE_ROW_ID)
    cash_balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    bank_balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class CashOperation(Base):
    __tablename__ = 'cash_operations'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    operation_type: Mapped[CashOperationType] = mapped_column(
        _enum(CashOperationType, 'cash_operation_type'), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    from_account: Mapped[CashAccount | None] = mapped_column(_enum(CashAccount, 'cash_from_account'))
    to_account: Mapped[CashAccount | None] = mapped_column(_enum(CashAccount, 'cash_to_account'))
    notes: Mapped[str | None] = mapped_column(Text)
    reference: Mapped[str | None] = mapped_column(Text)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=date.today)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
