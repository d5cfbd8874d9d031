"""Tip allocation.

Turns one captured gratuity into ledger credits. A shared order is first sliced
by table ownership; each owner's slice (or the whole tip, for a single-server
order) then goes either straight to that employee as ``DIRECT_TIP`` or, when
they are pooling, across the tip group segment that was in effect when the tip
was collected as ``TIP_GROUP``. The transaction record and every credit commit
together.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import Text, cast
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import TipBankSettings
from app.db import atomic, utcnow
from app.errors import INVALID_AMOUNT, TipBankError
from app.ledger import CREDIT, post_entry
from app.locations import get_location_tip_bank_settings
from app.models import TipGroupSegment, TipLedgerEntry, TipTransaction
from app.money import cents_share, split_cents
from app.ownership import adjust_allocations_by_ownership, get_active_ownership
from app.schemas import (
    Allocation,
    CheckoutSegment,
    GroupCheckoutBreakdown,
    TipAllocationResult,
)
from app.tip_groups import active_group_id_for_employee, find_segment_for_timestamp

logger = logging.getLogger(__name__)

DIRECT_TIP = "DIRECT_TIP"
TIP_GROUP = "TIP_GROUP"
TIP_SOURCE_TYPES = ("CARD", "CASH")
TIP_KINDS = ("tip", "service_charge", "auto_gratuity")


class PaymentTip(BaseModel):
    payment_id: str
    payment_method: str
    tip_amount_cents: int


@dataclass
class _Credit:
    employee_id: int
    amount_cents: int
    source_type: str
    idempotency_key: str
    group_id: Optional[int] = None
    segment_id: Optional[int] = None


def tip_transaction_key(order_id: str, payment_id: str) -> str:
    return f"tip-txn:{order_id}:{payment_id}"


def _posted_result(db: Session, txn: TipTransaction) -> TipAllocationResult:
    entries = (
        db.query(TipLedgerEntry)
        .filter(
            TipLedgerEntry.source_id == str(txn.id),
            TipLedgerEntry.source_type.in_([DIRECT_TIP, TIP_GROUP]),
            TipLedgerEntry.type == CREDIT,
        )
        .order_by(TipLedgerEntry.id)
        .all()
    )
    return TipAllocationResult(
        tip_transaction_id=txn.id,
        allocations=[
            Allocation(
                employee_id=entry.employee_id,
                amount_cents=entry.amount_cents,
                source_type=entry.source_type,
                ledger_entry_id=entry.id,
            )
            for entry in entries
        ],
        replayed=True,
    )


def _find_transaction(db: Session, key: str) -> Optional[TipTransaction]:
    # Soft-deleted (charged back) transactions still count: a retried capture
    # must not re-credit a reversed tip.
    return db.query(TipTransaction).filter(TipTransaction.idempotency_key == key).first()


def _credits_for_slice(
    db: Session,
    employee_id: int,
    amount_cents: int,
    collected_at: datetime,
    key_prefix: str,
    shared: bool,
) -> list[_Credit]:
    group_id = active_group_id_for_employee(db, employee_id)
    if group_id is not None:
        segment = find_segment_for_timestamp(db, group_id, collected_at)
        if segment and segment.split_json:
            member_keys = sorted(segment.split_json)
            shares = split_cents(
                amount_cents, [(int(key), segment.split_json[key]) for key in member_keys]
            )
            return [
                _Credit(
                    employee_id=member_id,
                    amount_cents=cents,
                    source_type=TIP_GROUP,
                    idempotency_key=(
                        f"{key_prefix}:group:{member_id}" if shared else f"{key_prefix}:{member_id}"
                    ),
                    group_id=group_id,
                    segment_id=segment.id,
                )
                for member_id, cents in shares
                if cents > 0
            ]
        if segment is None:
            logger.warning(
                "no segment for tip group %s at %s, crediting employee %s directly",
                group_id,
                collected_at.isoformat(),
                employee_id,
            )
        else:
            logger.warning(
                "segment %s of tip group %s has an empty split, crediting employee %s directly",
                segment.id,
                group_id,
                employee_id,
            )
    return [
        _Credit(
            employee_id=employee_id,
            amount_cents=amount_cents,
            source_type=DIRECT_TIP,
            idempotency_key=key_prefix if shared else f"{key_prefix}:{employee_id}",
        )
    ]


def allocate_tip(
    db: Session,
    location_id: Optional[int],
    order_id: str,
    payment_id: str,
    tip_amount_cents: int,
    primary_employee_id: int,
    collected_at: Optional[datetime] = None,
    source_type: str = "CARD",
    kind: str = "tip",
    cc_fee_amount_cents: int = 0,
    tip_bank: Optional[TipBankSettings] = None,
) -> TipAllocationResult:
    """Record a captured tip and credit it to the employee(s) who earned it.

    ``tip_amount_cents`` is the gross tip; ``cc_fee_amount_cents`` is kept on the
    transaction and never credited. Calling again for the same order and
    payment returns the first call's allocations without posting anything.
    """
    if source_type not in TIP_SOURCE_TYPES:
        raise ValueError(f"unknown tip source type {source_type!r}")
    if kind not in TIP_KINDS:
        raise ValueError(f"unknown tip kind {kind!r}")
    if tip_amount_cents < 0 or cc_fee_amount_cents < 0:
        raise TipBankError(INVALID_AMOUNT, "tip and fee amounts cannot be negative")

    key = tip_transaction_key(order_id, payment_id)
    existing = _find_transaction(db, key)
    if existing:
        return _posted_result(db, existing)

    collected_at = collected_at or utcnow()
    fee_cents = min(cc_fee_amount_cents, tip_amount_cents)
    net_cents = tip_amount_cents - fee_cents

    credits: list[_Credit] = []
    if net_cents > 0:
        tip_bank = tip_bank or get_location_tip_bank_settings(db, location_id)
        ownership = get_active_ownership(db, order_id)
        shared = (
            ownership is not None
            and len(ownership.owners) > 1
            and tip_bank.table_tip_ownership_mode != "PRIMARY_SERVER_OWNS_ALL"
        )
        prefix = f"tip-ledger:{order_id}:{payment_id}"
        if shared:
            for owner_slice in adjust_allocations_by_ownership(net_cents, ownership):
                if owner_slice.amount_cents <= 0:
                    continue
                credits.extend(
                    _credits_for_slice(
                        db,
                        owner_slice.employee_id,
                        owner_slice.amount_cents,
                        collected_at,
                        f"{prefix}:owner:{owner_slice.employee_id}",
                        shared=True,
                    )
                )
        else:
            credits = _credits_for_slice(
                db, primary_employee_id, net_cents, collected_at, prefix, shared=False
            )

    segments = {(c.group_id, c.segment_id) for c in credits if c.segment_id is not None}
    group_id, segment_id = segments.pop() if len(segments) == 1 else (None, None)

    try:
        with atomic(db):
            txn = TipTransaction(
                location_id=location_id,
                order_id=order_id,
                payment_id=payment_id,
                tip_group_id=group_id,
                segment_id=segment_id,
                amount_cents=net_cents,
                source_type=source_type,
                kind=kind,
                collected_at=collected_at,
                primary_employee_id=primary_employee_id,
                cc_fee_amount_cents=fee_cents,
                idempotency_key=key,
                created_at=utcnow(),
            )
            db.add(txn)
            db.flush()
            allocations = []
            for credit in credits:
                label = "Group tip split" if credit.source_type == TIP_GROUP else "Tip"
                posting = post_entry(
                    db,
                    credit.employee_id,
                    credit.amount_cents,
                    CREDIT,
                    credit.source_type,
                    source_id=str(txn.id),
                    idempotency_key=credit.idempotency_key,
                    location_id=location_id,
                    order_id=order_id,
                    memo=f"{label} from order {order_id} ({source_type})",
                )
                allocations.append(
                    Allocation(
                        employee_id=credit.employee_id,
                        amount_cents=credit.amount_cents,
                        source_type=credit.source_type,
                        ledger_entry_id=posting.entry_id,
                    )
                )
            result = TipAllocationResult(tip_transaction_id=txn.id, allocations=allocations)
    except IntegrityError:
        # Lost a race with a concurrent capture of the same payment.
        committed = _find_transaction(db, key)
        if committed is None:
            raise
        logger.info("tip for order %s payment %s already allocated concurrently", order_id, payment_id)
        return _posted_result(db, committed)

    logger.info(
        "allocated %s cents from order %s payment %s across %s credit(s)",
        net_cents,
        order_id,
        payment_id,
        len(result.allocations),
    )
    return result


def allocate_tip_for_payment(
    db: Session,
    location_id: int,
    order_id: str,
    primary_employee_id: int,
    payments: list[PaymentTip],
    collected_at: Optional[datetime] = None,
    kind: str = "tip",
    tip_bank: Optional[TipBankSettings] = None,
) -> Optional[TipAllocationResult]:
    """Entry point for the payment flow.

    Works out the card-processing fee from the location's tip bank settings,
    picks the payment the tip belongs to, and hands off to :func:`allocate_tip`.
    Returns None when the tip bank is off or there is no tip.
    """
    tip_bank = tip_bank or get_location_tip_bank_settings(db, location_id)
    if not tip_bank.enabled:
        return None
    total_cents = sum(p.tip_amount_cents for p in payments)
    if total_cents <= 0:
        return None

    card_cents = sum(p.tip_amount_cents for p in payments if p.payment_method.lower() != "cash")
    fee_cents = 0
    if card_cents > 0 and tip_bank.deduct_cc_fee_from_tips and tip_bank.cc_fee_percent > 0:
        fee_cents = cents_share(card_cents, tip_bank.cc_fee_percent / 100)

    with_tip = next((p for p in payments if p.tip_amount_cents > 0), payments[0])
    return allocate_tip(
        db,
        location_id=location_id,
        order_id=order_id,
        payment_id=with_tip.payment_id,
        tip_amount_cents=total_cents,
        primary_employee_id=primary_employee_id,
        collected_at=collected_at,
        source_type="CARD" if card_cents > 0 else "CASH",
        kind=kind,
        cc_fee_amount_cents=fee_cents,
        tip_bank=tip_bank,
    )


def calculate_group_checkout(
    db: Session,
    employee_id: int,
    shift_started_at: datetime,
    shift_ended_at: datetime,
) -> GroupCheckoutBreakdown:
    """Solo vs pooled tips for tips collected during a shift, pooled tips broken
    down by the segment they were split under."""
    rows = (
        db.query(TipLedgerEntry, TipTransaction)
        .join(TipTransaction, TipLedgerEntry.source_id == cast(TipTransaction.id, Text))
        .filter(
            TipLedgerEntry.employee_id == employee_id,
            TipLedgerEntry.type == CREDIT,
            TipLedgerEntry.source_type.in_([DIRECT_TIP, TIP_GROUP]),
            TipLedgerEntry.deleted_at.is_(None),
            TipTransaction.deleted_at.is_(None),
            TipTransaction.collected_at >= shift_started_at,
            TipTransaction.collected_at <= shift_ended_at,
        )
        .order_by(TipTransaction.collected_at)
        .all()
    )

    solo_cents = 0
    group_cents = 0
    per_segment: dict[int, int] = {}
    for entry, txn in rows:
        if entry.source_type == DIRECT_TIP:
            solo_cents += entry.amount_cents
            continue
        group_cents += entry.amount_cents
        if txn.segment_id is not None:
            per_segment[txn.segment_id] = per_segment.get(txn.segment_id, 0) + entry.amount_cents

    segments = []
    if per_segment:
        found = (
            db.query(TipGroupSegment)
            .filter(TipGroupSegment.id.in_(list(per_segment)))
            .order_by(TipGroupSegment.started_at, TipGroupSegment.id)
            .all()
        )
        for segment in found:
            segments.append(
                CheckoutSegment(
                    segment_id=segment.id,
                    started_at=segment.started_at,
                    ended_at=segment.ended_at,
                    split_percent=float((segment.split_json or {}).get(str(employee_id), 0)),
                    tips_cents=per_segment[segment.id],
                    is_solo=segment.member_count == 1,
                )
            )

    return GroupCheckoutBreakdown(
        employee_id=employee_id,
        segments=segments,
        solo_tips_cents=solo_cents,
        group_tips_cents=group_cents,
        total_tips_cents=solo_cents + group_cents,
    )
