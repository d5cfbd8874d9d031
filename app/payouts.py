"""Cash and payroll payouts. Both are ledger debits; nothing here moves real money."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db import atomic
from app.ledger import DEBIT, balance_before, entry_info, find_entry_by_key, post_entry
from app.models import TipLedger, TipLedgerEntry
from app.schemas import BatchPayrollResult, LedgerEntryInfo, PayoutResult, PayrollPayoutLine

logger = logging.getLogger(__name__)

PAYOUT_SOURCE_TYPES = ("PAYOUT_CASH", "PAYOUT_PAYROLL")


def _locked_ledger(db: Session, employee_id: int) -> Optional[TipLedger]:
    return (
        db.query(TipLedger)
        .filter(TipLedger.employee_id == employee_id)
        .with_for_update()
        .first()
    )


def _replayed_payout(db: Session, entry: TipLedgerEntry) -> PayoutResult:
    previous = balance_before(db, entry)
    return PayoutResult(
        success=True,
        employee_id=entry.employee_id,
        amount_cents=-entry.amount_cents,
        previous_balance_cents=previous,
        new_balance_cents=previous + entry.amount_cents,
        ledger_entry_id=entry.id,
        payout_id=entry.source_id,
        replayed=True,
    )


def cash_out(
    db: Session,
    employee_id: int,
    amount_cents: Optional[int] = None,
    memo: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> PayoutResult:
    """Pay an employee tips in cash, the full balance unless ``amount_cents`` is given.

    A non-positive amount or one larger than the balance is not an error: the
    result comes back with ``success=False`` and the ledger is untouched.
    Retrying with the same ``idempotency_key`` returns the original payout.
    """
    payout_id = uuid.uuid4().hex
    try:
        with atomic(db):
            ledger = _locked_ledger(db, employee_id)
            # Looked up under the ledger lock, before the balance check.
            existing = find_entry_by_key(db, idempotency_key) if idempotency_key else None
            if existing is not None:
                return _replayed_payout(db, existing)
            balance = ledger.current_balance_cents if ledger else 0
            amount = balance if amount_cents is None else amount_cents
            if amount <= 0:
                return PayoutResult(
                    success=False,
                    employee_id=employee_id,
                    previous_balance_cents=balance,
                    new_balance_cents=balance,
                    error="Payout amount must be positive" if amount_cents is not None else "No balance to pay out",
                )
            if amount > balance:
                return PayoutResult(
                    success=False,
                    employee_id=employee_id,
                    amount_cents=amount,
                    previous_balance_cents=balance,
                    new_balance_cents=balance,
                    error=f"Insufficient balance: requested {amount}, available {balance}",
                )
            posting = post_entry(
                db,
                employee_id,
                amount,
                DEBIT,
                "PAYOUT_CASH",
                source_id=payout_id,
                idempotency_key=idempotency_key,
                memo=memo or "Cash tip payout",
            )
            result = PayoutResult(
                success=True,
                employee_id=employee_id,
                amount_cents=amount,
                previous_balance_cents=balance,
                new_balance_cents=posting.balance_cents,
                ledger_entry_id=posting.entry_id,
                payout_id=payout_id,
            )
    except IntegrityError:
        # Same key committed by a concurrent request.
        committed = find_entry_by_key(db, idempotency_key) if idempotency_key else None
        if committed is None:
            raise
        return _replayed_payout(db, committed)
    logger.info("cash payout %s of %s cents to employee %s", payout_id, amount, employee_id)
    return result


def batch_payroll_payout(
    db: Session,
    location_id: int,
    employee_ids: Optional[Iterable[int]] = None,
    memo: Optional[str] = None,
) -> BatchPayrollResult:
    """Zero every positive balance at the location into payroll in one transaction."""
    batch_id = uuid.uuid4().hex
    with atomic(db):
        query = db.query(TipLedger).filter(
            TipLedger.location_id == location_id,
            TipLedger.current_balance_cents > 0,
        )
        if employee_ids is not None:
            query = query.filter(TipLedger.employee_id.in_(list(employee_ids)))
        ledgers = query.order_by(TipLedger.employee_id).with_for_update().all()

        lines = []
        for ledger in ledgers:
            amount = ledger.current_balance_cents
            posting = post_entry(
                db,
                ledger.employee_id,
                amount,
                DEBIT,
                "PAYOUT_PAYROLL",
                source_id=batch_id,
                idempotency_key=f"payroll:{batch_id}:{ledger.employee_id}",
                location_id=location_id,
                memo=memo or "Tips paid via payroll",
            )
            lines.append(
                PayrollPayoutLine(
                    employee_id=ledger.employee_id,
                    amount_cents=amount,
                    ledger_entry_id=posting.entry_id,
                )
            )
    total = sum(line.amount_cents for line in lines)
    logger.info(
        "payroll batch %s paid %s cents to %s employee(s) at location %s",
        batch_id,
        total,
        len(lines),
        location_id,
    )
    return BatchPayrollResult(
        batch_id=batch_id,
        entries=lines,
        employee_count=len(lines),
        total_paid_out_cents=total,
    )


def get_payout_history(
    db: Session,
    location_id: int,
    employee_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[LedgerEntryInfo], int]:
    query = db.query(TipLedgerEntry).filter(
        TipLedgerEntry.location_id == location_id,
        TipLedgerEntry.source_type.in_(PAYOUT_SOURCE_TYPES),
        TipLedgerEntry.deleted_at.is_(None),
    )
    if employee_id is not None:
        query = query.filter(TipLedgerEntry.employee_id == employee_id)
    if date_from is not None:
        query = query.filter(TipLedgerEntry.created_at >= date_from)
    if date_to is not None:
        query = query.filter(TipLedgerEntry.created_at <= date_to)
    total = query.count()
    rows = (
        query.order_by(TipLedgerEntry.created_at.desc(), TipLedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [entry_info(row) for row in rows], total
