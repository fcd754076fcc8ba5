from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from factory_ledger.models import BalanceType, LedgerEntry, Party, PartyBalance, utcnow
from factory_ledger.services.notification_service import Notifier, get_notifier

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    parties_processed: int = 0
    entries_rewritten: int = 0
    duplicate_balances_removed: int = 0
    balances: dict[str, Decimal] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


def signed_opening_balance(opening_balance, balance_type: BalanceType | str | None) -> Decimal:
    amount = Decimal(str(opening_balance or 0))
    if balance_type is not None and BalanceType(balance_type) == BalanceType.CREDIT:
        return -amount
    return amount


def _party_balance_rows(db: Session, party_id: str) -> list[PartyBalance]:
    return list(
        db.execute(
            select(PartyBalance)
            .where(PartyBalance.party_id == party_id)
            .order_by(PartyBalance.last_updated.asc(), PartyBalance.id.asc())
        ).scalars()
    )


def get_party_balance(db: Session, party_id: str) -> Decimal | None:
    rows = _party_balance_rows(db, party_id)
    return Decimal(rows[0].balance) if rows else None


def _ensure_balance_row(db: Session, party: Party) -> PartyBalance:
    rows = _party_balance_rows(db, party.id)
    if rows:
        return rows[0]
    row = PartyBalance(
        party_id=party.id,
        balance=signed_opening_balance(party.opening_balance, party.balance_type),
        last_updated=utcnow(),
    )
    db.add(row)
    db.flush()
    return row


def recalculate_party_balance(db: Session, party: Party) -> tuple[Decimal, int, int]:
    """Replay one party's ledger from its opening balance.

    Returns (final balance, ledger rows rewritten, duplicate balance rows removed).
    """
    running = signed_opening_balance(party.opening_balance, party.balance_type)
    entries = db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.party_id == party.id)
        .order_by(LedgerEntry.date.asc(), LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
    ).scalars()

    rewritten = 0
    for entry in entries:
        running += Decimal(entry.debit or 0) - Decimal(entry.credit or 0)
        if entry.balance_after is None or Decimal(entry.balance_after) != running:
            entry.balance_after = running
            rewritten += 1

    rows = _party_balance_rows(db, party.id)
    removed = 0
    if len(rows) > 1:
        for stray in rows[1:]:
            db.delete(stray)
        removed = len(rows) - 1
        rows = rows[:1]

    if rows:
        rows[0].balance = running
        rows[0].last_updated = utcnow()
    else:
        db.add(PartyBalance(party_id=party.id, balance=running, last_updated=utcnow()))
    db.flush()
    return running, rewritten, removed


def recalculate_party_balances(db: Session, *, notifier: Notifier | None = None) -> ReconcileReport:
    """Rebuild every party's running balance and ledger ``balance_after`` values."""
    report = ReconcileReport()
    parties = list(db.execute(select(Party).order_by(Party.created_at.asc(), Party.id.asc())).scalars())
    for party in parties:
        try:
            with db.begin_nested():
                balance, rewritten, removed = recalculate_party_balance(db, party)
        except SQLAlchemyError as exc:
            logger.exception('Failed to reconcile party balance', extra={'party_id': party.id})
            report.errors.append(f'party {party.id}: {exc.__class__.__name__}')
            continue
        report.parties_processed += 1
        report.entries_rewritten += rewritten
        report.duplicate_balances_removed += removed
        report.balances[party.id] = balance

    logger.info(
        'Party balances reconciled',
        extra={
            'parties': report.parties_processed,
            'entries_rewritten': report.entries_rewritten,
            'duplicates_removed': report.duplicate_balances_removed,
            'errors': len(report.errors),
        },
    )
    if report.errors:
        (notifier or get_notifier()).error(f'{len(report.errors)} party balance(s) could not be reconciled')
    return report


def update_party_balance(
    db: Session,
    *,
    party_id: str,
    amount,
    is_debit: bool,
    description: str | None,
    transaction_type: str,
    reference: str | None = None,
    entry_date: date | None = None,
) -> LedgerEntry:
    """Move a party's balance by ``amount`` and append the matching ledger line.

    Debits increase what the party owes; credits decrease it.
    """
    try:
        amount = abs(Decimal(str(amount)))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError('Amount must be numeric') from exc
    party = db.get(Party, party_id)
    if party is None:
        raise LookupError(f'Party {party_id} not found')

    row = _ensure_balance_row(db, party)
    delta = amount if is_debit else -amount
    db.execute(
        update(PartyBalance)
        .where(PartyBalance.id == row.id)
        .values(balance=PartyBalance.balance + delta, last_updated=utcnow())
    )
    balance_after = db.execute(select(PartyBalance.balance).where(PartyBalance.id == row.id)).scalar_one()

    entry = LedgerEntry(
        party_id=party_id,
        transaction_id=reference,
        transaction_type=transaction_type,
        date=entry_date or date.today(),
        description=description,
        debit=amount if is_debit else Decimal('0'),
        credit=Decimal('0') if is_debit else amount,
        balance_after=balance_after,
    )
    db.add(entry)
    db.flush()
    return entry


def update_opening_balance(db: Session, *, party_id: str, opening_balance, balance_type: BalanceType | str) -> Decimal:
    """Change a party's opening balance and rebuild its running balance from the ledger."""
    party = db.get(Party, party_id)
    if party is None:
        raise LookupError(f'Party {party_id} not found')
    try:
        opening = Decimal(str(opening_balance))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError('Opening balance must be numeric') from exc
    if opening < 0:
        raise ValueError('Opening balance cannot be negative; use the balance type for direction')

    party.opening_balance = opening
    party.balance_type = BalanceType(balance_type)
    db.flush()
    balance, _, _ = recalculate_party_balance(db, party)
    return balance


def create_missing_party_balances(db: Session) -> int:
    """Add a balance row seeded from the opening balance for every party that has none."""
    have_rows = set(db.execute(select(PartyBalance.party_id).distinct()).scalars())
    created = 0
    for party in db.execute(select(Party)).scalars():
        if party.id in have_rows:
            continue
        db.add(
            PartyBalance(
                party_id=party.id,
                balance=signed_opening_balance(party.opening_balance, party.balance_type),
                last_updated=utcnow(),
            )
        )
        created += 1
    db.flush()
    return created
