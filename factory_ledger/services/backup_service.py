from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    Integer,
    Numeric,
    String,
    Table,
    delete,
    func,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from factory_ledger.config import settings
from factory_ledger.models import BALANCE_ROW_ID, Base, Invoice, InvoiceItem, ReturnItem
from factory_ledger.services.notification_service import Notifier, get_notifier
from factory_ledger.services.party_ledger_service import create_missing_party_balances, recalculate_party_balances

logger = logging.getLogger(__name__)

# Parents before children.
RESTORE_ORDER = (
    'parties',
    'party_balances',
    'financial_categories',
    'raw_materials',
    'semi_finished_products',
    'packaging_materials',
    'finished_products',
    'semi_finished_ingredients',
    'finished_product_packaging',
    'production_orders',
    'production_order_ingredients',
    'packaging_orders',
    'packaging_order_materials',
    'financial_balance',
    'financial_transactions',
    'cash_operations',
    'invoices',
    'invoice_items',
    'payments',
    'returns',
    'return_items',
    'profits',
    'ledger',
    'inventory_movements',
)

COMPUTED_FIELDS: dict[str, frozenset[str]] = {
    'invoices': frozenset({'total_amount'}),
    'invoice_items': frozenset({'total'}),
    'return_items': frozenset({'total'}),
    'ledger': frozenset({'balance_after'}),
}

UUID_FIELDS = frozenset({'id', 'party_id', 'category_id', 'invoice_id', 'return_id', 'related_invoice_id'})
UUID_RE = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)


@dataclass(frozen=True)
class RestoreError:
    table: str
    row_id: str | None
    message: str


@dataclass
class RestoreReport:
    success: bool = False
    restored: dict[str, int] = field(default_factory=dict)
    errors: list[RestoreError] = field(default_factory=list)
    sequences_reset: list[str] = field(default_factory=list)
    party_balances_created: int = 0

    @property
    def total_restored(self) -> int:
        return sum(self.restored.values())


def _tables() -> dict[str, Table]:
    return {name: Base.metadata.tables[name] for name in RESTORE_ORDER}


def is_valid_uuid(value) -> bool:
    return isinstance(value, str) and (value == BALANCE_ROW_ID or bool(UUID_RE.match(value)))


def _is_uuid_column(column) -> bool:
    return column.name in UUID_FIELDS and isinstance(column.type, String) and column.type.length == 36


def _has_integer_pk(table: Table) -> bool:
    pk = list(table.primary_key.columns)
    return len(pk) == 1 and isinstance(pk[0].type, Integer)


def _json_value(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _parse_datetime(value: str) -> datetime:
    text_value = value.strip()
    if text_value.endswith('Z'):
        text_value = text_value[:-1] + '+00:00'
    return datetime.fromisoformat(text_value)


def _coerce(column, value):
    """Turn a JSON scalar into the Python value the column type binds."""
    if value is None:
        return None
    column_type = column.type
    if isinstance(column_type, SQLEnum) and column_type.enum_class is not None:
        return column_type.enum_class(value)
    if isinstance(column_type, DateTime):
        return value if isinstance(value, datetime) else _parse_datetime(str(value))
    if isinstance(column_type, Date):
        if isinstance(value, datetime):
            return value.date()
        return value if isinstance(value, date) else date.fromisoformat(str(value)[:10])
    if isinstance(column_type, Boolean):
        if isinstance(value, str):
            return value.strip().lower() in {'true', '1', 't', 'yes'}
        return bool(value)
    if isinstance(column_type, Integer):
        return int(value)
    if isinstance(column_type, Numeric):
        return Decimal(str(value))
    if isinstance(column_type, String):
        return str(value)
    return value


def _clean_row(table: Table, row, report: RestoreReport) -> dict | None:
    if not isinstance(row, dict):
        report.errors.append(RestoreError(table.name, None, 'row is not an object'))
        return None
    row_id = row.get('id')
    computed = COMPUTED_FIELDS.get(table.name, frozenset())
    cleaned: dict = {}
    for column in table.columns:
        if column.name not in row or column.name in computed:
            continue
        value = row[column.name]
        if _is_uuid_column(column) and value is not None and not is_valid_uuid(str(value)):
            if column.name == 'id':
                report.errors.append(RestoreError(table.name, str(row_id), 'invalid UUID primary key'))
                return None
            logger.warning(
                'Nulling invalid UUID field',
                extra={'table': table.name, 'column': column.name, 'row_id': str(row_id)},
            )
            value = None
        try:
            cleaned[column.name] = _coerce(column, value)
        except (ValueError, TypeError, InvalidOperation) as exc:
            report.errors.append(RestoreError(table.name, str(row_id), f'{column.name}: {exc}'))
            return None
    return cleaned


def _insert_rows(db: Session, table: Table, rows: list[dict], report: RestoreReport) -> int:
    """Insert rows in one savepoint; on failure split the batch in half and retry each side."""
    if not rows:
        return 0
    try:
        with db.begin_nested():
            db.execute(insert(table), rows)
        return len(rows)
    except SQLAlchemyError as exc:
        if len(rows) == 1:
            message = str(getattr(exc, 'orig', None) or exc).splitlines()[0]
            report.errors.append(RestoreError(table.name, str(rows[0].get('id')), message))
            logger.warning('Row failed to restore', extra={'table': table.name, 'row_id': str(rows[0].get('id'))})
            return 0
        middle = len(rows) // 2
        return _insert_rows(db, table, rows[:middle], report) + _insert_rows(db, table, rows[middle:], report)


def _insert_table(db: Session, table: Table, rows: list[dict], batch_size: int, report: RestoreReport) -> int:
    restored = 0
    for start in range(0, len(rows), batch_size):
        batch = rows[start : start + batch_size]
        # executemany needs one key set per statement
        groups: dict[tuple[str, ...], list[dict]] = {}
        for row in batch:
            groups.setdefault(tuple(sorted(row)), []).append(row)
        for group in groups.values():
            restored += _insert_rows(db, table, group, report)
    return restored


def _reset_sequences(db: Session, report: RestoreReport) -> None:
    if db.get_bind().dialect.name != 'postgresql':
        return
    for table in _tables().values():
        if not _has_integer_pk(table):
            continue
        db.execute(
            text(
                f"SELECT setval(pg_get_serial_sequence('{table.name}', 'id'), "
                f'COALESCE((SELECT MAX(id) FROM {table.name}), 0) + 1, false)'
            )
        )
        report.sequences_reset.append(table.name)


def _recompute_totals(db: Session, backup_invoice_totals: dict[str, Decimal]) -> None:
    for model in (InvoiceItem, ReturnItem):
        db.execute(
            update(model).values(total=model.quantity * model.unit_price).execution_options(synchronize_session=False)
        )
    item_totals = dict(
        db.execute(select(InvoiceItem.invoice_id, func.sum(InvoiceItem.total)).group_by(InvoiceItem.invoice_id)).all()
    )
    for invoice in db.execute(select(Invoice)).scalars():
        if invoice.id in item_totals:
            invoice.total_amount = Decimal(str(item_totals[invoice.id] or 0))
        elif invoice.id in backup_invoice_totals:
            invoice.total_amount = backup_invoice_totals[invoice.id]
    db.flush()


def create_backup(db: Session) -> dict[str, list[dict]]:
    backup: dict[str, list[dict]] = {}
    for name, table in _tables().items():
        rows = db.execute(select(table)).mappings().all()
        backup[name] = [{key: _json_value(value) for key, value in row.items()} for row in rows]
    logger.info('Backup created', extra={'tables': len(backup), 'rows': sum(len(rows) for rows in backup.values())})
    return backup


def clear_existing_data(db: Session) -> None:
    for name in reversed(RESTORE_ORDER):
        db.execute(delete(Base.metadata.tables[name]))
    db.expunge_all()
    db.flush()


def restore_backup(
    db: Session,
    data: dict,
    *,
    batch_size: int | None = None,
    error_tolerance: int | None = None,
    notifier: Notifier | None = None,
) -> RestoreReport:
    """Replace all data with a backup keyed by table name.

    The caller decides whether to commit based on ``report.success``.
    """
    if not isinstance(data, dict):
        raise ValueError('Backup must be an object keyed by table name')
    batch_size = batch_size or settings.restore_batch_size
    tolerance = error_tolerance if error_tolerance is not None else settings.restore_error_tolerance
    notifier = notifier or get_notifier()
    report = RestoreReport()

    unknown = sorted(set(data) - set(RESTORE_ORDER))
    if unknown:
        logger.warning('Ignoring unknown backup tables', extra={'tables': unknown})

    clear_existing_data(db)

    backup_invoice_totals: dict[str, Decimal] = {}
    for row in data.get('invoices') or []:
        if isinstance(row, dict) and row.get('id') and row.get('total_amount') is not None:
            try:
                backup_invoice_totals[str(row['id'])] = Decimal(str(row['total_amount']))
            except InvalidOperation:
                continue

    for name, table in _tables().items():
        rows = data.get(name)
        if rows is None:
            continue
        if not isinstance(rows, list):
            report.errors.append(RestoreError(name, None, 'table data is not a list'))
            continue
        cleaned = [row for row in (_clean_row(table, raw, report) for raw in rows) if row is not None]
        report.restored[name] = _insert_table(db, table, cleaned, batch_size, report)
        logger.info('Table restored', extra={'table': name, 'rows': report.restored[name], 'received': len(rows)})

    try:
        _reset_sequences(db, report)
        _recompute_totals(db, backup_invoice_totals)
        report.party_balances_created = create_missing_party_balances(db)
    except SQLAlchemyError as exc:
        logger.exception('Post-restore repair failed')
        report.errors.append(RestoreError('post_restore', None, str(exc).splitlines()[0]))

    reconcile = recalculate_party_balances(db, notifier=notifier)
    report.errors.extend(RestoreError('party_balances', None, message) for message in reconcile.errors)

    report.success = len(report.errors) < tolerance
    if report.success:
        notifier.success(f'Restored {report.total_restored} rows')
    else:
        notifier.error(f'Restore failed with {len(report.errors)} errors')
    logger.info(
        'Restore finished',
        extra={'success': report.success, 'rows': report.total_restored, 'errors': len(report.errors)},
    )
    return report
