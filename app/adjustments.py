"""Manual tip movements: employee-to-employee transfers, manager adjustments and
retroactive recalculation of group and order allocations."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.allocation import DIRECT_TIP, TIP_GROUP
from app.db import atomic, utcnow
from app.errors import (
    GROUP_NOT_FOUND,
    INSUFFICIENT_BALANCE,
    INVALID_AMOUNT,
    NO_ACTIVE_OWNERSHIP,
    SELF_TRANSFER,
    TipBankError,
)
from app.ledger import CREDIT, DEBIT, post_entry
from app.locations import get_location_tip_bank_settings
from app.models import (
    Employee,
    TipAdjustment,
    TipGroup,
    TipGroupSegment,
    TipLedger,
    TipLedgerEntry,
    TipTransaction,
)
from app.money import Number, split_cents, to_decimal
from app.ownership import adjust_allocations_by_ownership, get_active_ownership
from app.schemas import (
    AdjustmentLine,
    AdjustmentRecord,
    AdjustmentResult,
    RecalculationLine,
    RecalculationResult,
    TransferResult,
)
from app.tip_groups import build_weighted_split

logger = logging.getLogger(__name__)

ADJUSTMENT_TYPES = {
    "group_membership",
    "ownership_split",
    "clock_fix",
    "manual_override",
    "tip_amount",
}


def transfer_tips(
    db: Session,
    from_employee_id: int,
    to_employee_id: int,
    amount_cents: int,
    memo: Optional[str] = None,
) -> TransferResult:
    """Move banked tips from one employee to another as a paired debit and credit."""
    if not isinstance(amount_cents, int) or amount_cents <= 0:
        raise TipBankError(INVALID_AMOUNT, "transfer amount must be a positive number of cents")
    if from_employee_id == to_employee_id:
        raise TipBankError(SELF_TRANSFER, "cannot transfer tips to yourself")

    sender = db.get(Employee, from_employee_id)
    tip_bank = get_location_tip_bank_settings(db, sender.location_id if sender else None)
    transfer_id = uuid.uuid4().hex

    with atomic(db):
        ledger = (
            db.query(TipLedger)
            .filter(TipLedger.employee_id == from_employee_id)
            .with_for_update()
            .first()
        )
        balance = ledger.current_balance_cents if ledger else 0
        if balance < amount_cents and not tip_bank.allow_negative_balances:
            raise TipBankError(
                INSUFFICIENT_BALANCE,
                f"requested {amount_cents} cents, employee {from_employee_id} has {balance}",
            )
        debit = post_entry(
            db,
            from_employee_id,
            amount_cents,
            DEBIT,
            "MANUAL_TRANSFER",
            source_id=transfer_id,
            idempotency_key=f"transfer:{transfer_id}:DEBIT",
            memo=memo or f"Transfer to employee {to_employee_id}",
        )
        credit = post_entry(
            db,
            to_employee_id,
            amount_cents,
            CREDIT,
            "MANUAL_TRANSFER",
            source_id=transfer_id,
            idempotency_key=f"transfer:{transfer_id}:CREDIT",
            memo=memo or f"Transfer from employee {from_employee_id}",
        )
        result = TransferResult(
            transfer_id=transfer_id,
            from_employee_id=from_employee_id,
            to_employee_id=to_employee_id,
            amount_cents=amount_cents,
            debit_entry_id=debit.entry_id,
            credit_entry_id=credit.entry_id,
            from_balance_cents=debit.balance_cents,
            to_balance_cents=credit.balance_cents,
        )
    logger.info(
        "transferred %s cents from employee %s to %s", amount_cents, from_employee_id, to_employee_id
    )
    return result


def perform_tip_adjustment(
    db: Session,
    location_id: int,
    created_by_id: int,
    reason: str,
    adjustment_type: str,
    context: Optional[dict] = None,
    deltas: Optional[Mapping[int, int]] = None,
) -> AdjustmentResult:
    """Record a manager correction and post one ADJUSTMENT entry per non-zero delta.

    ``deltas`` maps employee id to signed cents; positive credits, negative debits.
    ``context`` is stored as-is for audit, typically ``{"before": ..., "after": ...}``.
    """
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValueError(f"unknown adjustment type {adjustment_type!r}")

    with atomic(db):
        adjustment = TipAdjustment(
            location_id=location_id,
            created_by_id=created_by_id,
            reason=reason,
            adjustment_type=adjustment_type,
            context_json=context or {},
            created_at=utcnow(),
        )
        db.add(adjustment)
        db.flush()

        lines = []
        for employee_id, delta_cents in (deltas or {}).items():
            if delta_cents == 0:
                continue
            entry_type = CREDIT if delta_cents > 0 else DEBIT
            posting = post_entry(
                db,
                employee_id,
                abs(delta_cents),
                entry_type,
                "ADJUSTMENT",
                source_id=str(adjustment.id),
                idempotency_key=f"adjustment:{adjustment.id}:{employee_id}",
                location_id=location_id,
                memo=f"Manager adjustment: {reason}",
                adjustment_id=adjustment.id,
            )
            lines.append(
                AdjustmentLine(
                    employee_id=employee_id,
                    type=entry_type,
                    amount_cents=abs(delta_cents),
                    ledger_entry_id=posting.entry_id,
                )
            )
        result = AdjustmentResult(
            adjustment_id=adjustment.id,
            adjustment_type=adjustment_type,
            reason=reason,
            delta_entries=lines,
        )
    logger.info(
        "adjustment %s (%s) by %s posted %s entries", result.adjustment_id, adjustment_type, created_by_id, len(lines)
    )
    return result


def get_adjustment_history(
    db: Session,
    location_id: int,
    adjustment_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AdjustmentRecord], int]:
    query = db.query(TipAdjustment).filter(TipAdjustment.location_id == location_id)
    if adjustment_type is not None:
        query = query.filter(TipAdjustment.adjustment_type == adjustment_type)
    total = query.count()
    rows = (
        query.order_by(TipAdjustment.created_at.desc(), TipAdjustment.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [
        AdjustmentRecord(
            id=row.id,
            created_by_id=row.created_by_id,
            reason=row.reason,
            adjustment_type=row.adjustment_type,
            context_json=row.context_json,
            created_at=row.created_at,
        )
        for row in rows
    ], total


@dataclass
class _Target:
    employee_id: int
    scope_key: str
    segment_id: Optional[int]
    previous_cents: int
    new_cents: int


def _sum_by_employee(db: Session, *criteria) -> dict[int, int]:
    rows = (
        db.query(TipLedgerEntry.employee_id, func.sum(TipLedgerEntry.amount_cents))
        .filter(TipLedgerEntry.deleted_at.is_(None), *criteria)
        .group_by(TipLedgerEntry.employee_id)
        .all()
    )
    return {employee_id: int(total) for employee_id, total in rows}


def _credited(db: Session, source_type: str, txn_id: int) -> dict[int, int]:
    return _sum_by_employee(
        db,
        TipLedgerEntry.source_type == source_type,
        TipLedgerEntry.source_id == str(txn_id),
        TipLedgerEntry.type == CREDIT,
    )


def _previous_corrections(db: Session, scope_key: str) -> dict[int, int]:
    return _sum_by_employee(
        db,
        TipLedgerEntry.source_type == "ADJUSTMENT",
        TipLedgerEntry.source_id == scope_key,
    )


def _targets(
    scope_key: str,
    segment_id: Optional[int],
    previous: dict[int, int],
    expected: dict[int, int],
) -> list[_Target]:
    return [
        _Target(
            employee_id=employee_id,
            scope_key=scope_key,
            segment_id=segment_id,
            previous_cents=previous.get(employee_id, 0),
            new_cents=expected.get(employee_id, 0),
        )
        for employee_id in sorted(set(previous) | set(expected))
    ]


def _allocation_totals(targets: list[_Target]) -> tuple[dict[str, int], dict[str, int]]:
    before: dict[str, int] = {}
    after: dict[str, int] = {}
    for target in targets:
        key = str(target.employee_id)
        before[key] = before.get(key, 0) + target.previous_cents
        after[key] = after.get(key, 0) + target.new_cents
    return before, after


def _post_corrections(
    db: Session,
    adjustment: TipAdjustment,
    targets: list[_Target],
    memo: str,
    order_id: Optional[str] = None,
) -> list[RecalculationLine]:
    lines = []
    for target in targets:
        delta_cents = target.new_cents - target.previous_cents
        if delta_cents == 0:
            continue
        posting = post_entry(
            db,
            target.employee_id,
            abs(delta_cents),
            CREDIT if delta_cents > 0 else DEBIT,
            "ADJUSTMENT",
            source_id=target.scope_key,
            idempotency_key=f"adjustment:{adjustment.id}:{target.scope_key}:{target.employee_id}",
            location_id=adjustment.location_id,
            order_id=order_id,
            memo=memo,
            adjustment_id=adjustment.id,
        )
        lines.append(
            RecalculationLine(
                employee_id=target.employee_id,
                segment_id=target.segment_id,
                previous_cents=target.previous_cents,
                new_cents=target.new_cents,
                delta_cents=delta_cents,
                ledger_entry_id=posting.entry_id,
            )
        )
    return lines


def _new_adjustment(
    db: Session, location_id: int, manager_id: int, reason: str, adjustment_type: str, context: dict
) -> TipAdjustment:
    adjustment = TipAdjustment(
        location_id=location_id,
        created_by_id=manager_id,
        reason=reason,
        adjustment_type=adjustment_type,
        context_json=context,
        created_at=utcnow(),
    )
    db.add(adjustment)
    db.flush()
    return adjustment


def recalculate_group_allocations(
    db: Session,
    location_id: int,
    manager_id: int,
    group_id: int,
    segment_id: Optional[int] = None,
    reason: str = "Tip group recalculation",
    weights: Optional[Mapping[int, Number]] = None,
) -> RecalculationResult:
    """Re-split pooled tips by each segment's ``split_json`` and post the difference.

    For every segment of the group (or just ``segment_id``), the TIP_GROUP
    credits of its live transactions are re-split and compared with what each
    employee holds for that segment: the original credits plus any earlier
    recalculation of the same segment. The differences are posted as ADJUSTMENT
    entries under one ``group_membership`` adjustment, so running it twice
    posts nothing the second time.

    ``weights`` (employee id to relative weight) first rewrites the split of
    ``segment_id``, for correcting a segment that left someone out.
    """
    if weights is not None and segment_id is None:
        raise ValueError("weights can only be applied to a single segment")

    with atomic(db):
        if db.get(TipGroup, group_id) is None:
            raise TipBankError(GROUP_NOT_FOUND, f"tip group {group_id} not found")
        query = db.query(TipGroupSegment).filter(TipGroupSegment.group_id == group_id)
        if segment_id is not None:
            query = query.filter(TipGroupSegment.id == segment_id)
        segments = query.order_by(TipGroupSegment.started_at, TipGroupSegment.id).all()
        if segment_id is not None and not segments:
            raise TipBankError(GROUP_NOT_FOUND, f"segment {segment_id} is not part of tip group {group_id}")

        if weights is not None:
            if any(to_decimal(weight) < 0 for weight in weights.values()):
                raise ValueError("weights cannot be negative")
            segment = segments[0]
            segment.split_json = build_weighted_split(
                {employee_id: to_decimal(weight) for employee_id, weight in weights.items()}
            )
            segment.member_count = len(segment.split_json)
            db.flush()

        targets: list[_Target] = []
        for segment in segments:
            split = segment.split_json or {}
            member_keys = sorted(split)
            if not member_keys:
                logger.warning("segment %s of tip group %s has an empty split, skipping", segment.id, group_id)
                continue
            scope_key = f"tip-group-segment:{segment.id}"
            previous = _previous_corrections(db, scope_key)
            expected: dict[int, int] = {}
            transactions = (
                db.query(TipTransaction)
                .filter(
                    TipTransaction.segment_id == segment.id,
                    TipTransaction.deleted_at.is_(None),
                )
                .order_by(TipTransaction.collected_at, TipTransaction.id)
                .all()
            )
            for txn in transactions:
                credited = _credited(db, TIP_GROUP, txn.id)
                for employee_id, cents in credited.items():
                    previous[employee_id] = previous.get(employee_id, 0) + cents
                pooled = sum(credited.values())
                if pooled <= 0:
                    continue
                shares = split_cents(pooled, [(int(key), split[key]) for key in member_keys])
                for employee_id, cents in shares:
                    expected[employee_id] = expected.get(employee_id, 0) + cents
            targets.extend(_targets(scope_key, segment.id, previous, expected))

        before, after = _allocation_totals(targets)
        adjustment = _new_adjustment(
            db,
            location_id,
            manager_id,
            reason,
            "group_membership",
            {
                "before": {"group_id": group_id, "segment_id": segment_id, "allocations": before},
                "after": {"group_id": group_id, "segment_id": segment_id, "allocations": after},
            },
        )
        lines = _post_corrections(db, adjustment, targets, f"Group recalculation: {reason}")
        result = RecalculationResult(
            adjustment_id=adjustment.id,
            adjustment_type="group_membership",
            reason=reason,
            delta_entries=lines,
        )
    logger.info(
        "recalculated tip group %s (segment %s): %s correction(s) under adjustment %s",
        group_id,
        segment_id,
        len(lines),
        result.adjustment_id,
    )
    return result


def recalculate_order_allocations(
    db: Session,
    location_id: int,
    manager_id: int,
    order_id: str,
    reason: str = "Order ownership recalculation",
) -> RecalculationResult:
    """Re-slice an order's tips by its current ownership shares and post the difference.

    Each live transaction on the order is sliced with
    :func:`app.ownership.adjust_allocations_by_ownership` and compared with the
    DIRECT_TIP credits it produced plus earlier recalculations of the order.
    Transactions whose tip went into a tip group are left to
    :func:`recalculate_group_allocations`.
    """
    with atomic(db):
        ownership = get_active_ownership(db, order_id)
        if ownership is None or not ownership.owners:
            raise TipBankError(NO_ACTIVE_OWNERSHIP, f"order {order_id} has no active ownership")

        scope_key = f"order-ownership:{order_id}"
        previous = _previous_corrections(db, scope_key)
        expected: dict[int, int] = {}
        transactions = (
            db.query(TipTransaction)
            .filter(
                TipTransaction.order_id == order_id,
                TipTransaction.deleted_at.is_(None),
            )
            .order_by(TipTransaction.collected_at, TipTransaction.id)
            .all()
        )
        for txn in transactions:
            if txn.amount_cents <= 0:
                continue
            if _credited(db, TIP_GROUP, txn.id):
                logger.warning(
                    "tip transaction %s on order %s was pooled into a tip group, skipping", txn.id, order_id
                )
                continue
            for employee_id, cents in _credited(db, DIRECT_TIP, txn.id).items():
                previous[employee_id] = previous.get(employee_id, 0) + cents
            for owner_slice in adjust_allocations_by_ownership(txn.amount_cents, ownership):
                expected[owner_slice.employee_id] = (
                    expected.get(owner_slice.employee_id, 0) + owner_slice.amount_cents
                )

        targets = _targets(scope_key, None, previous, expected)
        before, after = _allocation_totals(targets)
        owner_splits = {str(owner.employee_id): owner.share_percent for owner in ownership.owners}
        adjustment = _new_adjustment(
            db,
            location_id,
            manager_id,
            reason,
            "ownership_split",
            {
                "before": {"order_id": order_id, "allocations": before},
                "after": {"order_id": order_id, "allocations": after, "owner_splits": owner_splits},
            },
        )
        lines = _post_corrections(
            db, adjustment, targets, f"Order ownership recalculation: {reason}", order_id=order_id
        )
        result = RecalculationResult(
            adjustment_id=adjustment.id,
            adjustment_type="ownership_split",
            reason=reason,
            delta_entries=lines,
        )
    logger.info(
        "recalculated order %s: %s correction(s) under adjustment %s",
        order_id,
        len(lines),
        result.adjustment_id,
    )
    return result
