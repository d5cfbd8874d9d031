"""Shared table ownership.

When two or more servers work one order, the order carries an active
``OrderOwnership`` whose entries hold each server's share percent. Allocation
splits a tip across these shares before any tip group is considered.
"""
from __future__ import annotations

import logging
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from app.db import atomic, utcnow
from app.errors import (
    ALREADY_OWNER,
    INVALID_SPLIT_TOTAL,
    NO_ACTIVE_OWNERSHIP,
    OWNER_NOT_FOUND,
    TipBankError,
)
from app.models import OrderOwnership, OrderOwnershipEntry
from app.money import Number, split_cents, to_decimal
from app.schemas import OwnerInfo, OwnershipInfo, OwnerSlice

logger = logging.getLogger(__name__)

HUNDRED = Decimal(100)
PERCENT_STEP = Decimal("0.01")
SPLIT_TOLERANCE = Decimal("0.01")


def build_even_splits(count: int) -> list[Decimal]:
    """``3`` gives ``[33.33, 33.33, 33.34]``; the last share absorbs the rounding."""
    if count <= 0:
        return []
    base = (HUNDRED / count).quantize(PERCENT_STEP, rounding=ROUND_FLOOR)
    return [base] * (count - 1) + [HUNDRED - base * (count - 1)]


def _scale_into(entries: list[OrderOwnershipEntry], target: Decimal) -> None:
    current_total = sum((to_decimal(e.share_percent) for e in entries), Decimal(0))
    if current_total <= 0:
        ratios = [share / HUNDRED for share in build_even_splits(len(entries))]
    else:
        ratios = [to_decimal(e.share_percent) / current_total for e in entries]
    allocated = Decimal(0)
    for index, entry in enumerate(entries):
        if index == len(entries) - 1:
            entry.share_percent = target - allocated
        else:
            share = (target * ratios[index]).quantize(PERCENT_STEP, rounding=ROUND_HALF_UP)
            entry.share_percent = share
            allocated += share


def _apply_even(entries: list[OrderOwnershipEntry]) -> None:
    for entry, share in zip(entries, build_even_splits(len(entries))):
        entry.share_percent = share


def _active_row(db: Session, order_id: str, lock: bool = False) -> Optional[OrderOwnership]:
    query = db.query(OrderOwnership).filter(
        OrderOwnership.order_id == order_id,
        OrderOwnership.is_active.is_(True),
    )
    if lock:
        query = query.with_for_update()
    return query.first()


def _entries(db: Session, ownership_id: int) -> list[OrderOwnershipEntry]:
    return (
        db.query(OrderOwnershipEntry)
        .filter(OrderOwnershipEntry.order_ownership_id == ownership_id)
        .order_by(OrderOwnershipEntry.id)
        .all()
    )


def _info(db: Session, ownership: OrderOwnership) -> OwnershipInfo:
    return OwnershipInfo(
        id=ownership.id,
        order_id=ownership.order_id,
        is_active=ownership.is_active,
        owners=[
            OwnerInfo(
                id=entry.id,
                employee_id=entry.employee_id,
                share_percent=float(entry.share_percent),
            )
            for entry in _entries(db, ownership.id)
        ],
    )


def get_active_ownership(db: Session, order_id: str) -> Optional[OwnershipInfo]:
    ownership = _active_row(db, order_id)
    return _info(db, ownership) if ownership else None


def add_owner(
    db: Session,
    location_id: int,
    order_id: str,
    employee_id: int,
    created_by_id: int,
    split_type: str = "even",
    custom_percent: Optional[Number] = None,
    current_owner_id: Optional[int] = None,
) -> OwnershipInfo:
    """Add a server to an order's ownership.

    ``current_owner_id`` is the server who held the order alone; it seeds a new
    ownership record so the added server becomes the second owner. With
    ``split_type="custom"`` the new owner takes ``custom_percent`` and the
    existing owners are scaled proportionally into what remains.
    """
    if split_type not in ("even", "custom"):
        raise ValueError(f"unknown split type {split_type!r}")
    if split_type == "custom":
        if custom_percent is None:
            raise TipBankError(INVALID_SPLIT_TOTAL, "custom split needs a percent")
        custom = to_decimal(custom_percent).quantize(PERCENT_STEP, rounding=ROUND_HALF_UP)
        if custom < 0 or custom > HUNDRED:
            raise TipBankError(INVALID_SPLIT_TOTAL, f"custom percent {custom} is outside 0-100")

    with atomic(db):
        ownership = _active_row(db, order_id, lock=True)
        if not ownership:
            ownership = OrderOwnership(
                location_id=location_id,
                order_id=order_id,
                created_by_id=created_by_id,
                is_active=True,
                created_at=utcnow(),
            )
            db.add(ownership)
            db.flush()
            if current_owner_id is not None and current_owner_id != employee_id:
                db.add(
                    OrderOwnershipEntry(
                        order_ownership_id=ownership.id,
                        employee_id=current_owner_id,
                        share_percent=HUNDRED,
                    )
                )
                db.flush()

        existing = _entries(db, ownership.id)
        if any(entry.employee_id == employee_id for entry in existing):
            raise TipBankError(
                ALREADY_OWNER, f"employee {employee_id} already owns order {order_id}"
            )
        new_entry = OrderOwnershipEntry(
            order_ownership_id=ownership.id,
            employee_id=employee_id,
            share_percent=Decimal(0),
        )
        db.add(new_entry)
        db.flush()

        if not existing:
            new_entry.share_percent = HUNDRED
        elif split_type == "even":
            _apply_even(existing + [new_entry])
        else:
            new_entry.share_percent = custom
            _scale_into(existing, HUNDRED - custom)
        db.flush()
        info = _info(db, ownership)
    logger.info("employee %s added as owner of order %s", employee_id, order_id)
    return info


def remove_owner(db: Session, order_id: str, employee_id: int) -> Optional[OwnershipInfo]:
    """Returns None once the last owner is gone and the ownership is deactivated."""
    with atomic(db):
        ownership = _active_row(db, order_id, lock=True)
        entries = _entries(db, ownership.id) if ownership else []
        target = next((e for e in entries if e.employee_id == employee_id), None)
        if target is None:
            raise TipBankError(
                OWNER_NOT_FOUND, f"employee {employee_id} is not an owner of order {order_id}"
            )
        db.delete(target)
        remaining = [e for e in entries if e.id != target.id]
        if not remaining:
            ownership.is_active = False
            info = None
        else:
            if len(remaining) == 1:
                remaining[0].share_percent = HUNDRED
            else:
                _apply_even(remaining)
            db.flush()
            info = _info(db, ownership)
    logger.info("employee %s removed as owner of order %s", employee_id, order_id)
    return info


def set_splits(db: Session, order_id: str, splits: Mapping[int, Number]) -> OwnershipInfo:
    """Replace share percents. ``splits`` must total 100 within 0.01.

    Owners missing from ``splits`` drop to 0%; the last owner absorbs the
    sub-cent difference left by rounding to two decimals.
    """
    requested = {employee_id: to_decimal(pct) for employee_id, pct in splits.items()}
    total = sum(requested.values(), Decimal(0))
    if abs(total - HUNDRED) > SPLIT_TOLERANCE:
        raise TipBankError(
            INVALID_SPLIT_TOTAL, f"splits must sum to 100%, got {total:.2f}%"
        )
    if any(pct < 0 for pct in requested.values()):
        raise TipBankError(INVALID_SPLIT_TOTAL, "split percents cannot be negative")

    with atomic(db):
        ownership = _active_row(db, order_id, lock=True)
        if not ownership:
            raise TipBankError(
                NO_ACTIVE_OWNERSHIP, f"no active ownership for order {order_id}"
            )
        entries = _entries(db, ownership.id)
        owner_ids = {entry.employee_id for entry in entries}
        for employee_id in requested:
            if employee_id not in owner_ids:
                raise TipBankError(
                    OWNER_NOT_FOUND,
                    f"employee {employee_id} is not an owner of order {order_id}",
                )
        allocated = Decimal(0)
        for index, entry in enumerate(entries):
            if index == len(entries) - 1:
                entry.share_percent = HUNDRED - allocated
            else:
                share = requested.get(entry.employee_id, Decimal(0)).quantize(
                    PERCENT_STEP, rounding=ROUND_HALF_UP
                )
                entry.share_percent = share
                allocated += share
        db.flush()
        info = _info(db, ownership)
    return info


def adjust_allocations_by_ownership(
    total_cents: int, ownership: OwnershipInfo
) -> list[OwnerSlice]:
    """Slice ``total_cents`` by owner share. Pure; the last owner absorbs leftover cents."""
    if total_cents <= 0 or not ownership.owners:
        return []
    shares = split_cents(
        total_cents,
        [(owner.employee_id, to_decimal(owner.share_percent) / HUNDRED) for owner in ownership.owners],
    )
    percents = {owner.employee_id: owner.share_percent for owner in ownership.owners}
    return [
        OwnerSlice(employee_id=employee_id, share_percent=percents[employee_id], amount_cents=amount)
        for employee_id, amount in shares
    ]
