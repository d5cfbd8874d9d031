"""Per-employee tip ledger.

Every tip dollar an employee earns or is paid out moves through here as an
immutable entry. The ledger row keeps a cached running balance that is updated
in the same transaction as the entry it reflects; ``recalculate_balance``
re-derives it from the entries and repairs drift.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db import atomic, utcnow
from app.errors import INVALID_AMOUNT, TipBankError
from app.models import Employee, TipLedger, TipLedgerEntry
from app.schemas import BalanceCheck, LedgerEntryInfo, LedgerPosting, PayableBalance

logger = logging.getLogger(__name__)

CREDIT = "CREDIT"
DEBIT = "DEBIT"
ENTRY_TYPES = {CREDIT, DEBIT}

SOURCE_TYPES = {
    "DIRECT_TIP",
    "TIP_GROUP",
    "ROLE_TIPOUT",
    "MANUAL_TRANSFER",
    "PAYOUT_CASH",
    "PAYOUT_PAYROLL",
    "CHARGEBACK",
    "ADJUSTMENT",
}


def _get_or_create(
    db: Session, employee_id: int, location_id: Optional[int] = None
) -> TipLedger:
    ledger = db.query(TipLedger).filter(TipLedger.employee_id == employee_id).first()
    if ledger:
        return ledger
    if location_id is None:
        employee = db.get(Employee, employee_id)
        location_id = employee.location_id if employee else None
    now = utcnow()
    ledger = TipLedger(
        employee_id=employee_id,
        location_id=location_id,
        current_balance_cents=0,
        created_at=now,
        updated_at=now,
    )
    db.add(ledger)
    db.flush()
    return ledger


def _find_by_key(db: Session, idempotency_key: str) -> Optional[TipLedgerEntry]:
    return db.query(TipLedgerEntry).filter(
        TipLedgerEntry.idempotency_key == idempotency_key
    ).first()


def find_entry_by_key(db: Session, idempotency_key: str) -> Optional[TipLedgerEntry]:
    return _find_by_key(db, idempotency_key)


def balance_before(db: Session, entry: TipLedgerEntry) -> int:
    """Ledger balance immediately before ``entry`` was posted, from the entries."""
    total = db.query(func.coalesce(func.sum(TipLedgerEntry.amount_cents), 0)).filter(
        TipLedgerEntry.ledger_id == entry.ledger_id,
        TipLedgerEntry.id < entry.id,
        TipLedgerEntry.deleted_at.is_(None),
    ).scalar()
    return int(total)


def _replay(db: Session, entry: TipLedgerEntry) -> LedgerPosting:
    ledger = db.get(TipLedger, entry.ledger_id)
    return LedgerPosting(
        entry_id=entry.id,
        employee_id=entry.employee_id,
        amount_cents=entry.amount_cents,
        balance_cents=ledger.current_balance_cents,
        replayed=True,
    )


def post_entry(
    db: Session,
    employee_id: int,
    amount_cents: int,
    entry_type: str,
    source_type: str,
    source_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    location_id: Optional[int] = None,
    order_id: Optional[str] = None,
    memo: Optional[str] = None,
    adjustment_id: Optional[int] = None,
) -> LedgerPosting:
    """Insert one entry and move the cached balance, without committing.

    Callers that post several entries for one trigger run this inside a single
    ``atomic`` block so the whole set commits or none of it does.
    """
    if entry_type not in ENTRY_TYPES:
        raise ValueError(f"unknown entry type {entry_type!r}")
    if source_type not in SOURCE_TYPES:
        raise ValueError(f"unknown source type {source_type!r}")
    if not isinstance(amount_cents, int) or amount_cents <= 0:
        raise TipBankError(INVALID_AMOUNT, "amount_cents must be a positive integer")

    if idempotency_key:
        existing = _find_by_key(db, idempotency_key)
        if existing:
            return _replay(db, existing)

    ledger = _get_or_create(db, employee_id, location_id)
    signed = amount_cents if entry_type == CREDIT else -amount_cents
    now = utcnow()
    entry = TipLedgerEntry(
        location_id=location_id if location_id is not None else ledger.location_id,
        ledger_id=ledger.id,
        employee_id=employee_id,
        type=entry_type,
        amount_cents=signed,
        source_type=source_type,
        source_id=str(source_id) if source_id is not None else None,
        order_id=order_id,
        memo=memo,
        adjustment_id=adjustment_id,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    db.add(entry)
    ledger.current_balance_cents = TipLedger.current_balance_cents + signed
    ledger.updated_at = now
    db.flush()
    return LedgerPosting(
        entry_id=entry.id,
        employee_id=employee_id,
        amount_cents=signed,
        balance_cents=ledger.current_balance_cents,
    )


def get_or_create_ledger(
    db: Session, employee_id: int, location_id: Optional[int] = None
) -> TipLedger:
    with atomic(db):
        ledger = _get_or_create(db, employee_id, location_id)
    return ledger


def post_to_ledger(
    db: Session,
    employee_id: int,
    amount_cents: int,
    entry_type: str,
    source_type: str,
    source_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    location_id: Optional[int] = None,
    order_id: Optional[str] = None,
    memo: Optional[str] = None,
) -> LedgerPosting:
    """Post a single entry in its own transaction and return the new balance.

    Reusing an idempotency key returns the entry that key already produced.
    """
    try:
        with atomic(db):
            return post_entry(
                db,
                employee_id,
                amount_cents,
                entry_type,
                source_type,
                source_id=source_id,
                idempotency_key=idempotency_key,
                location_id=location_id,
                order_id=order_id,
                memo=memo,
            )
    except IntegrityError:
        if not idempotency_key:
            raise
        existing = _find_by_key(db, idempotency_key)
        if existing is None:
            raise
        return _replay(db, existing)


def get_balance(db: Session, employee_id: int) -> int:
    ledger = db.query(TipLedger).filter(TipLedger.employee_id == employee_id).first()
    return ledger.current_balance_cents if ledger else 0


def _entries_sum(db: Session, ledger_id: int) -> int:
    total = db.query(func.coalesce(func.sum(TipLedgerEntry.amount_cents), 0)).filter(
        TipLedgerEntry.ledger_id == ledger_id,
        TipLedgerEntry.deleted_at.is_(None),
    ).scalar()
    return int(total)


def recalculate_balance(db: Session, employee_id: int) -> BalanceCheck:
    ledger = db.query(TipLedger).filter(TipLedger.employee_id == employee_id).first()
    if not ledger:
        return BalanceCheck(
            employee_id=employee_id, cached_cents=0, calculated_cents=0, fixed=False
        )
    with atomic(db):
        cached = ledger.current_balance_cents
        calculated = _entries_sum(db, ledger.id)
        fixed = cached != calculated
        if fixed:
            logger.warning(
                "tip ledger drift for employee %s: cached=%s calculated=%s, repairing",
                employee_id,
                cached,
                calculated,
            )
            ledger.current_balance_cents = calculated
            ledger.updated_at = utcnow()
    return BalanceCheck(
        employee_id=employee_id,
        cached_cents=cached,
        calculated_cents=calculated,
        fixed=fixed,
    )


def recalculate_all(db: Session, location_id: Optional[int] = None) -> list[BalanceCheck]:
    query = db.query(TipLedger.employee_id)
    if location_id is not None:
        query = query.filter(TipLedger.location_id == location_id)
    employee_ids = [row.employee_id for row in query.order_by(TipLedger.employee_id)]
    return [recalculate_balance(db, employee_id) for employee_id in employee_ids]


def entry_info(row: TipLedgerEntry) -> LedgerEntryInfo:
    return LedgerEntryInfo(
        id=row.id,
        employee_id=row.employee_id,
        type=row.type,
        amount_cents=row.amount_cents,
        source_type=row.source_type,
        source_id=row.source_id,
        order_id=row.order_id,
        memo=row.memo,
        idempotency_key=row.idempotency_key,
        created_at=row.created_at,
    )


def get_entries(
    db: Session,
    employee_id: int,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    source_type: Optional[str] = None,
    entry_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[LedgerEntryInfo], int]:
    query = db.query(TipLedgerEntry).filter(
        TipLedgerEntry.employee_id == employee_id,
        TipLedgerEntry.deleted_at.is_(None),
    )
    if date_from is not None:
        query = query.filter(TipLedgerEntry.created_at >= date_from)
    if date_to is not None:
        query = query.filter(TipLedgerEntry.created_at <= date_to)
    if source_type is not None:
        query = query.filter(TipLedgerEntry.source_type == source_type)
    if entry_type is not None:
        query = query.filter(TipLedgerEntry.type == entry_type)
    total = query.count()
    rows = (
        query.order_by(TipLedgerEntry.created_at.desc(), TipLedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [entry_info(row) for row in rows], total


def get_payable_balances(db: Session, location_id: int) -> list[PayableBalance]:
    rows = (
        db.query(TipLedger, Employee.full_name)
        .outerjoin(Employee, Employee.id == TipLedger.employee_id)
        .filter(
            TipLedger.location_id == location_id,
            TipLedger.current_balance_cents > 0,
        )
        .order_by(TipLedger.current_balance_cents.desc(), TipLedger.employee_id)
        .all()
    )
    return [
        PayableBalance(
            employee_id=ledger.employee_id,
            full_name=full_name,
            balance_cents=ledger.current_balance_cents,
        )
        for ledger, full_name in rows
    ]
