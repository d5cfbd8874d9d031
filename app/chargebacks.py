"""Tip reversal when a card payment is voided or refunded.

``BUSINESS_ABSORBS`` leaves every credit in place and only soft-deletes the tip
transaction. ``EMPLOYEE_CHARGEBACK`` debits each original credit back out; if
the location disallows negative balances a debit stops at the employee's
current balance and the rest becomes an open ``TipDebt`` for a manager.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.db import atomic, utcnow
from app.errors import NO_TIP_TRANSACTION, TipBankError
from app.ledger import CREDIT, DEBIT, get_balance, post_entry
from app.locations import get_location_tip_bank_settings
from app.models import TipDebt, TipLedgerEntry, TipTransaction
from app.schemas import ChargebackLine, ChargebackResult

logger = logging.getLogger(__name__)

BUSINESS_ABSORBS = "BUSINESS_ABSORBS"
EMPLOYEE_CHARGEBACK = "EMPLOYEE_CHARGEBACK"


def handle_tip_chargeback(
    db: Session, location_id: int, payment_id: str, memo: Optional[str] = None
) -> ChargebackResult:
    tip_bank = get_location_tip_bank_settings(db, location_id)
    policy = tip_bank.chargeback_policy
    if policy not in (BUSINESS_ABSORBS, EMPLOYEE_CHARGEBACK):
        raise ValueError(f"unknown chargeback policy {policy!r}")

    with atomic(db):
        txns = (
            db.query(TipTransaction)
            .filter(
                TipTransaction.payment_id == payment_id,
                TipTransaction.location_id == location_id,
                TipTransaction.deleted_at.is_(None),
            )
            .order_by(TipTransaction.id)
            .with_for_update()
            .all()
        )
        if not txns:
            raise TipBankError(
                NO_TIP_TRANSACTION,
                f"no tip transaction for payment {payment_id} at location {location_id}",
            )
        primary = txns[0]
        result = ChargebackResult(
            policy=policy,
            tip_transaction_id=primary.id,
            original_tip_cents=primary.amount_cents,
        )

        if policy == EMPLOYEE_CHARGEBACK:
            credits = (
                db.query(TipLedgerEntry)
                .filter(
                    TipLedgerEntry.source_id.in_([str(txn.id) for txn in txns]),
                    TipLedgerEntry.source_type.in_(["DIRECT_TIP", "TIP_GROUP"]),
                    TipLedgerEntry.type == CREDIT,
                    TipLedgerEntry.deleted_at.is_(None),
                )
                .order_by(TipLedgerEntry.id)
                .all()
            )
            uncollected: dict[int, int] = {}
            for credit in credits:
                debit_cents = credit.amount_cents
                capped = False
                if not tip_bank.allow_negative_balances:
                    balance = get_balance(db, credit.employee_id)
                    if balance < debit_cents:
                        capped = True
                        debit_cents = max(0, balance)
                        short = credit.amount_cents - debit_cents
                        result.flagged_for_review_cents += short
                        uncollected[credit.employee_id] = uncollected.get(credit.employee_id, 0) + short
                if debit_cents <= 0:
                    result.entries.append(
                        ChargebackLine(employee_id=credit.employee_id, amount_cents=0, capped_at_balance=True)
                    )
                    continue
                posting = post_entry(
                    db,
                    credit.employee_id,
                    debit_cents,
                    DEBIT,
                    "CHARGEBACK",
                    source_id=str(primary.id),
                    idempotency_key=f"chargeback:{credit.id}",
                    location_id=credit.location_id,
                    order_id=primary.order_id,
                    memo=memo or f"Chargeback: payment voided/refunded (tip transaction {primary.id})",
                )
                result.charged_back_cents += debit_cents
                result.entries.append(
                    ChargebackLine(
                        employee_id=credit.employee_id,
                        amount_cents=debit_cents,
                        ledger_entry_id=posting.entry_id,
                        capped_at_balance=capped,
                    )
                )

            now = utcnow()
            for employee_id, remainder in uncollected.items():
                debt = TipDebt(
                    location_id=primary.location_id,
                    employee_id=employee_id,
                    original_amount_cents=remainder,
                    remaining_cents=remainder,
                    source_payment_id=payment_id,
                    source_type="CHARGEBACK",
                    memo=f"Chargeback remainder from payment {payment_id}",
                    status="open",
                    created_at=now,
                )
                db.add(debt)
                db.flush()
                result.tip_debt_ids.append(debt.id)

        deleted_at = utcnow()
        for txn in txns:
            txn.deleted_at = deleted_at

    logger.info(
        "chargeback on payment %s under %s: %s cents reversed, %s cents flagged",
        payment_id,
        policy,
        result.charged_back_cents,
        result.flagged_for_review_cents,
    )
    return result
