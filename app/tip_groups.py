"""Tip group lifecycle and time segments.

Staff who pool tips form a group. Every membership change closes the group's
open segment and opens a new one whose ``split_json`` freezes each member's
fraction of 1.0, so a tip collected at any past instant can be split the way
the group looked at that instant. Turning tips into ledger entries happens in
``app.allocation``.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.db import atomic, utcnow
from app.errors import (
    ALREADY_IN_ANOTHER_GROUP,
    ALREADY_MEMBER,
    GROUP_NOT_ACTIVE,
    GROUP_NOT_FOUND,
    NEW_OWNER_NOT_ACTIVE_MEMBER,
    NO_PENDING_REQUEST,
    NOT_MEMBER,
    TipBankError,
)
from app.models import Employee, Role, TipGroup, TipGroupMembership, TipGroupSegment
from app.schemas import JoinRequest, MemberInfo, SegmentInfo, TipGroupInfo

logger = logging.getLogger(__name__)

SPLIT_MODES = {"equal", "role_weighted"}
FRACTION_STEP = Decimal("0.0001")


def build_equal_split(member_ids: Iterable[int]) -> dict[str, float]:
    """Equal fractions keyed by employee id; the last id (sorted as text) absorbs
    the remainder so the values sum to exactly 1.

    ``[1, 2, 3]`` gives ``{"1": 0.3333, "2": 0.3333, "3": 0.3334}``.
    """
    keys = sorted({str(member_id) for member_id in member_ids})
    if not keys:
        return {}
    per_member = (Decimal(1) / len(keys)).quantize(FRACTION_STEP, rounding=ROUND_FLOOR)
    split = {key: per_member for key in keys[:-1]}
    split[keys[-1]] = Decimal(1) - per_member * (len(keys) - 1)
    return {key: float(value) for key, value in split.items()}


def build_weighted_split(weights: dict[int, Decimal]) -> dict[str, float]:
    """Fractions proportional to each member's role weight, same remainder rule
    as :func:`build_equal_split`. All-zero weights fall back to an equal split."""
    by_key = {str(member_id): Decimal(weight) for member_id, weight in weights.items()}
    keys = sorted(by_key)
    if not keys:
        return {}
    total = sum(by_key.values(), Decimal(0))
    if total <= 0:
        return build_equal_split(weights.keys())
    split: dict[str, Decimal] = {}
    allocated = Decimal(0)
    for key in keys[:-1]:
        share = (by_key[key] / total).quantize(FRACTION_STEP, rounding=ROUND_FLOOR)
        split[key] = share
        allocated += share
    split[keys[-1]] = Decimal(1) - allocated
    return {key: float(value) for key, value in split.items()}


def _segment_info(segment: TipGroupSegment) -> SegmentInfo:
    return SegmentInfo(
        id=segment.id,
        started_at=segment.started_at,
        ended_at=segment.ended_at,
        member_count=segment.member_count,
        split_json=dict(segment.split_json or {}),
    )


def _lock_group(db: Session, group_id: int) -> TipGroup:
    # Row lock serializes segment close/open per group on PostgreSQL.
    group = db.query(TipGroup).filter(TipGroup.id == group_id).with_for_update().first()
    if not group:
        raise TipBankError(GROUP_NOT_FOUND, f"tip group {group_id} not found")
    return group


def _require_active(db: Session, group_id: int) -> TipGroup:
    group = _lock_group(db, group_id)
    if group.status != "active":
        raise TipBankError(GROUP_NOT_ACTIVE, f"tip group {group_id} is {group.status}")
    return group


def _membership(
    db: Session, group_id: int, employee_id: int, statuses: Iterable[str]
) -> Optional[TipGroupMembership]:
    return db.query(TipGroupMembership).filter(
        TipGroupMembership.group_id == group_id,
        TipGroupMembership.employee_id == employee_id,
        TipGroupMembership.status.in_(list(statuses)),
    ).first()


def _active_member_ids(db: Session, group_id: int) -> list[int]:
    rows = db.query(TipGroupMembership.employee_id).filter(
        TipGroupMembership.group_id == group_id,
        TipGroupMembership.status == "active",
    ).all()
    return [row.employee_id for row in rows]


def _ensure_not_in_other_group(db: Session, employee_id: int, group_id: Optional[int]) -> None:
    query = db.query(TipGroupMembership).filter(
        TipGroupMembership.employee_id == employee_id,
        TipGroupMembership.status == "active",
    )
    if group_id is not None:
        query = query.filter(TipGroupMembership.group_id != group_id)
    other = query.first()
    if other:
        raise TipBankError(
            ALREADY_IN_ANOTHER_GROUP,
            f"employee {employee_id} is already pooling in tip group {other.group_id}",
        )


def _role_weights(db: Session, member_ids: list[int]) -> dict[int, Decimal]:
    rows = (
        db.query(Employee.id, Role.tip_weight)
        .outerjoin(Role, Role.id == Employee.role_id)
        .filter(Employee.id.in_(member_ids))
        .all()
    )
    found = {
        row.id: Decimal(str(row.tip_weight)) if row.tip_weight is not None else Decimal(1)
        for row in rows
    }
    return {member_id: found.get(member_id, Decimal(1)) for member_id in member_ids}


def _close_current_segment(db: Session, group_id: int, at: datetime) -> Optional[int]:
    segment = db.query(TipGroupSegment).filter(
        TipGroupSegment.group_id == group_id,
        TipGroupSegment.ended_at.is_(None),
    ).first()
    if not segment:
        return None
    segment.ended_at = at
    db.flush()
    return segment.id


def _create_segment(
    db: Session, group: TipGroup, member_ids: list[int], at: datetime
) -> TipGroupSegment:
    if group.split_mode == "role_weighted" and member_ids:
        split = build_weighted_split(_role_weights(db, member_ids))
    else:
        split = build_equal_split(member_ids)
    segment = TipGroupSegment(
        location_id=group.location_id,
        group_id=group.id,
        started_at=at,
        ended_at=None,
        member_count=len(split),
        split_json=split,
    )
    db.add(segment)
    db.flush()
    return segment


def _resegment(db: Session, group: TipGroup, at: datetime) -> Optional[TipGroupSegment]:
    _close_current_segment(db, group.id, at)
    member_ids = _active_member_ids(db, group.id)
    if not member_ids:
        return None
    return _create_segment(db, group, member_ids, at)


def get_group_info(db: Session, group_id: int) -> Optional[TipGroupInfo]:
    group = db.get(TipGroup, group_id)
    if not group:
        return None
    memberships = (
        db.query(TipGroupMembership)
        .filter(TipGroupMembership.group_id == group_id)
        .order_by(TipGroupMembership.id)
        .all()
    )
    current = db.query(TipGroupSegment).filter(
        TipGroupSegment.group_id == group_id,
        TipGroupSegment.ended_at.is_(None),
    ).first()
    return TipGroupInfo(
        id=group.id,
        location_id=group.location_id,
        created_by=group.created_by,
        owner_id=group.owner_id,
        status=group.status,
        split_mode=group.split_mode,
        started_at=group.started_at,
        ended_at=group.ended_at,
        members=[
            MemberInfo(
                id=m.id,
                employee_id=m.employee_id,
                joined_at=m.joined_at,
                left_at=m.left_at,
                status=m.status,
            )
            for m in memberships
        ],
        current_segment=_segment_info(current) if current else None,
    )


def start_tip_group(
    db: Session,
    location_id: int,
    created_by: int,
    initial_member_ids: Iterable[int],
    split_mode: str = "equal",
    at: Optional[datetime] = None,
) -> TipGroupInfo:
    """Open a group with the creator as owner and first member, and its first segment."""
    if split_mode not in SPLIT_MODES:
        raise ValueError(f"unknown split mode {split_mode!r}")
    at = at or utcnow()
    member_ids = list(dict.fromkeys([created_by, *initial_member_ids]))
    with atomic(db):
        for employee_id in member_ids:
            _ensure_not_in_other_group(db, employee_id, None)
        group = TipGroup(
            location_id=location_id,
            created_by=created_by,
            owner_id=created_by,
            status="active",
            split_mode=split_mode,
            started_at=at,
        )
        db.add(group)
        db.flush()
        for employee_id in member_ids:
            db.add(
                TipGroupMembership(
                    location_id=location_id,
                    group_id=group.id,
                    employee_id=employee_id,
                    joined_at=at,
                    status="active",
                )
            )
        db.flush()
        _create_segment(db, group, member_ids, at)
        group_id = group.id
    logger.info("tip group %s started by %s with members %s", group_id, created_by, member_ids)
    return get_group_info(db, group_id)


def add_member(
    db: Session,
    group_id: int,
    employee_id: int,
    approved_by: Optional[int] = None,
    at: Optional[datetime] = None,
) -> TipGroupInfo:
    at = at or utcnow()
    with atomic(db):
        group = _require_active(db, group_id)
        if _membership(db, group_id, employee_id, ["active"]):
            raise TipBankError(
                ALREADY_MEMBER, f"employee {employee_id} is already in tip group {group_id}"
            )
        _ensure_not_in_other_group(db, employee_id, group_id)
        pending = _membership(db, group_id, employee_id, ["pending_approval"])
        if pending:
            pending.status = "active"
            pending.joined_at = at
            pending.approved_by = approved_by
        else:
            db.add(
                TipGroupMembership(
                    location_id=group.location_id,
                    group_id=group_id,
                    employee_id=employee_id,
                    joined_at=at,
                    approved_by=approved_by,
                    status="active",
                )
            )
        db.flush()
        _resegment(db, group, at)
    logger.info("employee %s joined tip group %s", employee_id, group_id)
    return get_group_info(db, group_id)


def remove_member(
    db: Session, group_id: int, employee_id: int, at: Optional[datetime] = None
) -> Optional[TipGroupInfo]:
    """Drop a member. Returns None when the last member left and the group closed."""
    at = at or utcnow()
    with atomic(db):
        group = _require_active(db, group_id)
        membership = _membership(db, group_id, employee_id, ["active"])
        if not membership:
            raise TipBankError(
                NOT_MEMBER, f"employee {employee_id} is not in tip group {group_id}"
            )
        membership.status = "left"
        membership.left_at = at
        db.flush()
        segment = _resegment(db, group, at)
        closed = segment is None
        if closed:
            group.status = "closed"
            group.ended_at = at
    if closed:
        logger.info("tip group %s closed after last member %s left", group_id, employee_id)
        return None
    logger.info("employee %s left tip group %s", employee_id, group_id)
    return get_group_info(db, group_id)


def request_join(db: Session, group_id: int, employee_id: int) -> JoinRequest:
    with atomic(db):
        group = _require_active(db, group_id)
        if _membership(db, group_id, employee_id, ["active", "pending_approval"]):
            raise TipBankError(
                ALREADY_MEMBER,
                f"employee {employee_id} already has an active or pending membership",
            )
        membership = TipGroupMembership(
            location_id=group.location_id,
            group_id=group_id,
            employee_id=employee_id,
            status="pending_approval",
        )
        db.add(membership)
        db.flush()
        result = JoinRequest(membership_id=membership.id, status=membership.status)
    return result


def approve_join(
    db: Session,
    group_id: int,
    employee_id: int,
    approved_by: int,
    at: Optional[datetime] = None,
) -> TipGroupInfo:
    at = at or utcnow()
    with atomic(db):
        membership = _membership(db, group_id, employee_id, ["pending_approval"])
        if not membership:
            raise TipBankError(
                NO_PENDING_REQUEST, f"no pending join request from employee {employee_id}"
            )
        group = _require_active(db, group_id)
        _ensure_not_in_other_group(db, employee_id, group_id)
        membership.status = "active"
        membership.approved_by = approved_by
        membership.joined_at = at
        db.flush()
        _resegment(db, group, at)
    logger.info("employee %s approved into tip group %s by %s", employee_id, group_id, approved_by)
    return get_group_info(db, group_id)


def transfer_group_ownership(db: Session, group_id: int, new_owner_id: int) -> TipGroupInfo:
    with atomic(db):
        group = _lock_group(db, group_id)
        if not _membership(db, group_id, new_owner_id, ["active"]):
            raise TipBankError(
                NEW_OWNER_NOT_ACTIVE_MEMBER,
                f"employee {new_owner_id} is not an active member of tip group {group_id}",
            )
        group.owner_id = new_owner_id
    return get_group_info(db, group_id)


def close_group(db: Session, group_id: int, at: Optional[datetime] = None) -> TipGroupInfo:
    at = at or utcnow()
    with atomic(db):
        group = _require_active(db, group_id)
        _close_current_segment(db, group_id, at)
        open_memberships = db.query(TipGroupMembership).filter(
            TipGroupMembership.group_id == group_id,
            TipGroupMembership.status.in_(["active", "pending_approval"]),
        ).all()
        for membership in open_memberships:
            membership.status = "left"
            membership.left_at = at
        group.status = "closed"
        group.ended_at = at
    logger.info("tip group %s closed", group_id)
    return get_group_info(db, group_id)


def active_group_id_for_employee(db: Session, employee_id: int) -> Optional[int]:
    row = (
        db.query(TipGroupMembership.group_id)
        .join(TipGroup, TipGroup.id == TipGroupMembership.group_id)
        .filter(
            TipGroupMembership.employee_id == employee_id,
            TipGroupMembership.status == "active",
            TipGroup.status == "active",
        )
        .first()
    )
    return row.group_id if row else None


def find_active_group_for_employee(db: Session, employee_id: int) -> Optional[TipGroupInfo]:
    group_id = active_group_id_for_employee(db, employee_id)
    return get_group_info(db, group_id) if group_id is not None else None


def find_segment_for_timestamp(
    db: Session, group_id: int, timestamp: datetime
) -> Optional[SegmentInfo]:
    """The segment in effect at ``timestamp``: started at or before it and not
    yet ended strictly after it."""
    segment = (
        db.query(TipGroupSegment)
        .filter(
            TipGroupSegment.group_id == group_id,
            TipGroupSegment.started_at <= timestamp,
            or_(TipGroupSegment.ended_at.is_(None), TipGroupSegment.ended_at > timestamp),
        )
        .order_by(TipGroupSegment.started_at.desc(), TipGroupSegment.id.desc())
        .first()
    )
    return _segment_info(segment) if segment else None
