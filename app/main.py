from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app import adjustments, allocation, chargebacks, ledger, ownership, payouts, tip_groups
from app.config import configure_logging
from app.db import SessionLocal
from app.errors import TipBankError
from app.models import Employee, Location, Role

configure_logging()

app = FastAPI(title="Tip Bank")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _list_meta(limit: int, cursor: Optional[int], total: int) -> dict:
    offset = cursor or 0
    meta = _meta()
    next_cursor = offset + limit if offset + limit < total else None
    meta["page"] = {
        "limit": limit,
        "cursor": str(next_cursor) if next_cursor is not None else None,
        "total": total,
    }
    return meta


@contextmanager
def _tip_bank_errors() -> Iterator[None]:
    try:
        yield
    except TipBankError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail={"code": exc.code, "message": exc.message},
        ) from exc


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class LocationCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Blue Area', 'timezone': 'Asia/Karachi', 'currency_code': 'PKR', 'settings': {'tipBank': {'chargebackPolicy': 'EMPLOYEE_CHARGEBACK'}}}}}
    name: str
    timezone: str = "UTC"
    currency_code: str = "USD"
    is_active: bool = True
    settings: Optional[dict] = None


@app.post("/api/v1/locations", tags=["Locations"])
def create_location(payload: LocationCreate, db: Session = Depends(get_db)) -> dict:
    location = Location(
        name=payload.name,
        timezone=payload.timezone,
        currency_code=payload.currency_code,
        is_active=payload.is_active,
        settings=payload.settings,
        created_at=_now(),
    )
    db.add(location)
    db.commit()
    db.refresh(location)
    return {
        "data": {
            "location_id": location.id,
            "name": location.name,
            "timezone": location.timezone,
            "currency_code": location.currency_code,
            "is_active": location.is_active,
            "settings": location.settings,
        },
        "meta": _meta(),
    }


class RoleCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'location_id': 1, 'name': 'Bartender', 'tip_weight': 1.5}}}
    location_id: int
    name: str
    tip_weight: Decimal = Field(default=Decimal(1), ge=0)


@app.post("/api/v1/roles", tags=["Roles"])
def create_role(payload: RoleCreate, db: Session = Depends(get_db)) -> dict:
    role = Role(location_id=payload.location_id, name=payload.name, tip_weight=payload.tip_weight)
    db.add(role)
    db.commit()
    db.refresh(role)
    return {
        "data": {
            "role_id": role.id,
            "location_id": role.location_id,
            "name": role.name,
            "tip_weight": float(role.tip_weight),
        },
        "meta": _meta(),
    }


class EmployeeCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'location_id': 1, 'role_id': 2, 'full_name': 'Ali Raza', 'is_active': True}}}
    location_id: int
    role_id: Optional[int] = None
    full_name: Optional[str] = None
    is_active: bool = True


@app.post("/api/v1/employees", tags=["Employees"])
def create_employee(payload: EmployeeCreate, db: Session = Depends(get_db)) -> dict:
    employee = Employee(
        location_id=payload.location_id,
        role_id=payload.role_id,
        full_name=payload.full_name,
        is_active=payload.is_active,
    )
    db.add(employee)
    db.commit()
    db.refresh(employee)
    tip_ledger = ledger.get_or_create_ledger(db, employee.id, employee.location_id)
    return {
        "data": {
            "employee_id": employee.id,
            "ledger_id": tip_ledger.id,
            "location_id": employee.location_id,
            "role_id": employee.role_id,
            "full_name": employee.full_name,
            "is_active": employee.is_active,
        },
        "meta": _meta(),
    }


class TipAllocationCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'location_id': 1, 'order_id': 'ord_1001', 'payment_id': 'pay_1', 'tip_amount_cents': 1000, 'primary_employee_id': 7, 'collected_at': '2026-01-16T21:00:00+00:00', 'source_type': 'CARD'}}}
    location_id: int
    order_id: str
    payment_id: str
    tip_amount_cents: int = Field(ge=0)
    primary_employee_id: int
    collected_at: Optional[datetime] = None
    source_type: str = "CARD"
    kind: str = "tip"
    cc_fee_amount_cents: int = Field(default=0, ge=0)


@app.post("/api/v1/tips/allocations", tags=["Tip Allocation"])
def create_tip_allocation(payload: TipAllocationCreate, db: Session = Depends(get_db)) -> dict:
    if payload.source_type not in allocation.TIP_SOURCE_TYPES:
        raise HTTPException(status_code=400, detail="source_type must be CARD or CASH")
    if payload.kind not in allocation.TIP_KINDS:
        raise HTTPException(status_code=400, detail="unknown tip kind")
    with _tip_bank_errors():
        result = allocation.allocate_tip(
            db,
            location_id=payload.location_id,
            order_id=payload.order_id,
            payment_id=payload.payment_id,
            tip_amount_cents=payload.tip_amount_cents,
            primary_employee_id=payload.primary_employee_id,
            collected_at=payload.collected_at,
            source_type=payload.source_type,
            kind=payload.kind,
            cc_fee_amount_cents=payload.cc_fee_amount_cents,
        )
    warnings = ["tip already allocated for this payment"] if result.replayed else []
    return {"data": result.model_dump(mode="json"), "meta": _meta(warnings=warnings)}


@app.get("/api/v1/tips/ledgers/{employee_id}", tags=["Tip Ledger"])
def get_tip_ledger(employee_id: int, db: Session = Depends(get_db)) -> dict:
    return {
        "data": {
            "employee_id": employee_id,
            "balance_cents": ledger.get_balance(db, employee_id),
        },
        "meta": _meta(),
    }


@app.get("/api/v1/tips/ledgers/{employee_id}/entries", tags=["Tip Ledger"])
def list_tip_ledger_entries(
    employee_id: int,
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    source_type: Optional[str] = Query(default=None),
    entry_type: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    entries, total = ledger.get_entries(
        db,
        employee_id,
        date_from=date_from,
        date_to=date_to,
        source_type=source_type,
        entry_type=entry_type,
        limit=limit,
        offset=cursor or 0,
    )
    return {
        "data": [entry.model_dump(mode="json") for entry in entries],
        "meta": _list_meta(limit, cursor, total),
    }


@app.post("/api/v1/tips/ledgers/{employee_id}:recalculate", tags=["Tip Ledger"])
def recalculate_tip_ledger(employee_id: int, db: Session = Depends(get_db)) -> dict:
    check = ledger.recalculate_balance(db, employee_id)
    warnings = ["cached balance drifted and was repaired"] if check.fixed else []
    return {"data": check.model_dump(), "meta": _meta(warnings=warnings)}


@app.get("/api/v1/locations/{location_id}/tips/payable-balances", tags=["Tip Ledger"])
def list_payable_balances(location_id: int, db: Session = Depends(get_db)) -> dict:
    balances = ledger.get_payable_balances(db, location_id)
    return {"data": [balance.model_dump() for balance in balances], "meta": _meta()}


class TipGroupCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'location_id': 1, 'created_by': 7, 'member_ids': [8, 9], 'split_mode': 'equal'}}}
    location_id: int
    created_by: int
    member_ids: list[int] = Field(default_factory=list)
    split_mode: str = "equal"


class TipGroupMemberAdd(BaseModel):
    employee_id: int
    approved_by: Optional[int] = None


class TipGroupJoinRequestCreate(BaseModel):
    employee_id: int


class TipGroupJoinApproval(BaseModel):
    approved_by: int


class TipGroupOwnerUpdate(BaseModel):
    new_owner_id: int


@app.post("/api/v1/tips/groups", tags=["Tip Groups"])
def create_tip_group(payload: TipGroupCreate, db: Session = Depends(get_db)) -> dict:
    if payload.split_mode not in tip_groups.SPLIT_MODES:
        raise HTTPException(status_code=400, detail="split_mode must be equal or role_weighted")
    with _tip_bank_errors():
        group = tip_groups.start_tip_group(
            db,
            location_id=payload.location_id,
            created_by=payload.created_by,
            initial_member_ids=payload.member_ids,
            split_mode=payload.split_mode,
        )
    return {"data": group.model_dump(mode="json"), "meta": _meta()}


@app.get("/api/v1/tips/groups/{group_id}", tags=["Tip Groups"])
def get_tip_group(group_id: int, db: Session = Depends(get_db)) -> dict:
    group = tip_groups.get_group_info(db, group_id)
    if not group:
        raise HTTPException(status_code=404, detail="tip group not found")
    return {"data": group.model_dump(mode="json"), "meta": _meta()}


@app.post("/api/v1/tips/groups/{group_id}/members", tags=["Tip Groups"])
def add_tip_group_member(
    group_id: int, payload: TipGroupMemberAdd, db: Session = Depends(get_db)
) -> dict:
    with _tip_bank_errors():
        group = tip_groups.add_member(
            db, group_id, payload.employee_id, approved_by=payload.approved_by
        )
    return {"data": group.model_dump(mode="json"), "meta": _meta()}


@app.delete("/api/v1/tips/groups/{group_id}/members/{employee_id}", tags=["Tip Groups"])
def remove_tip_group_member(group_id: int, employee_id: int, db: Session = Depends(get_db)) -> dict:
    with _tip_bank_errors():
        group = tip_groups.remove_member(db, group_id, employee_id)
    if group is None:
        return {
            "data": {"id": group_id, "status": "closed"},
            "meta": _meta(warnings=["last member left, tip group closed"]),
        }
    return {"data": group.model_dump(mode="json"), "meta": _meta()}


@app.post("/api/v1/tips/groups/{group_id}/join-requests", tags=["Tip Groups"])
def request_tip_group_join(
    group_id: int, payload: TipGroupJoinRequestCreate, db: Session = Depends(get_db)
) -> dict:
    with _tip_bank_errors():
        request = tip_groups.request_join(db, group_id, payload.employee_id)
    return {"data": request.model_dump(), "meta": _meta()}


@app.put("/api/v1/tips/groups/{group_id}/join-requests/{employee_id}", tags=["Tip Groups"])
def approve_tip_group_join(
    group_id: int,
    employee_id: int,
    payload: TipGroupJoinApproval,
    db: Session = Depends(get_db),
) -> dict:
    with _tip_bank_errors():
        group = tip_groups.approve_join(db, group_id, employee_id, payload.approved_by)
    return {"data": group.model_dump(mode="json"), "meta": _meta()}


@app.put("/api/v1/tips/groups/{group_id}/owner", tags=["Tip Groups"])
def transfer_tip_group_owner(
    group_id: int, payload: TipGroupOwnerUpdate, db: Session = Depends(get_db)
) -> dict:
    with _tip_bank_errors():
        group = tip_groups.transfer_group_ownership(db, group_id, payload.new_owner_id)
    return {"data": group.model_dump(mode="json"), "meta": _meta()}


@app.post("/api/v1/tips/groups/{group_id}:close", tags=["Tip Groups"])
def close_tip_group(group_id: int, db: Session = Depends(get_db)) -> dict:
    with _tip_bank_errors():
        group = tip_groups.close_group(db, group_id)
    return {"data": group.model_dump(mode="json"), "meta": _meta()}


class OrderOwnerAdd(BaseModel):
    model_config = {"json_schema_extra": {"example": {'location_id': 1, 'employee_id': 8, 'created_by_id': 7, 'current_owner_id': 7, 'split_type': 'even'}}}
    location_id: int
    employee_id: int
    created_by_id: int
    split_type: str = "even"
    custom_percent: Optional[Decimal] = None
    current_owner_id: Optional[int] = None


class OwnerSplitInput(BaseModel):
    employee_id: int
    share_percent: Decimal


class OwnerSplitsUpdate(BaseModel):
    splits: list[OwnerSplitInput]


@app.get("/api/v1/orders/{order_id}/ownership", tags=["Order Ownership"])
def get_order_ownership(order_id: str, db: Session = Depends(get_db)) -> dict:
    info = ownership.get_active_ownership(db, order_id)
    if not info:
        raise HTTPException(status_code=404, detail="no active ownership for order")
    return {"data": info.model_dump(), "meta": _meta()}


@app.post("/api/v1/orders/{order_id}/ownership/owners", tags=["Order Ownership"])
def add_order_owner(order_id: str, payload: OrderOwnerAdd, db: Session = Depends(get_db)) -> dict:
    if payload.split_type not in ("even", "custom"):
        raise HTTPException(status_code=400, detail="split_type must be even or custom")
    with _tip_bank_errors():
        info = ownership.add_owner(
            db,
            location_id=payload.location_id,
            order_id=order_id,
            employee_id=payload.employee_id,
            created_by_id=payload.created_by_id,
            split_type=payload.split_type,
            custom_percent=payload.custom_percent,
            current_owner_id=payload.current_owner_id,
        )
    return {"data": info.model_dump(), "meta": _meta()}


@app.delete("/api/v1/orders/{order_id}/ownership/owners/{employee_id}", tags=["Order Ownership"])
def remove_order_owner(order_id: str, employee_id: int, db: Session = Depends(get_db)) -> dict:
    with _tip_bank_errors():
        info = ownership.remove_owner(db, order_id, employee_id)
    if info is None:
        return {
            "data": {"order_id": order_id, "is_active": False, "owners": []},
            "meta": _meta(warnings=["last owner removed, ownership deactivated"]),
        }
    return {"data": info.model_dump(), "meta": _meta()}


@app.put("/api/v1/orders/{order_id}/ownership/splits", tags=["Order Ownership"])
def update_order_owner_splits(
    order_id: str, payload: OwnerSplitsUpdate, db: Session = Depends(get_db)
) -> dict:
    splits = {split.employee_id: split.share_percent for split in payload.splits}
    with _tip_bank_errors():
        info = ownership.set_splits(db, order_id, splits)
    return {"data": info.model_dump(), "meta": _meta()}


class CashPayoutCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'employee_id': 7, 'amount_cents': 2500, 'memo': 'end of shift', 'idempotency_key': 'drawer-7-2026-03-06'}}}
    employee_id: int
    amount_cents: Optional[int] = None
    memo: Optional[str] = None
    idempotency_key: Optional[str] = None


class PayrollPayoutCreate(BaseModel):
    location_id: int
    employee_ids: Optional[list[int]] = None
    memo: Optional[str] = None


@app.post("/api/v1/tips/payouts/cash", tags=["Tip Payouts"])
def create_cash_payout(payload: CashPayoutCreate, db: Session = Depends(get_db)) -> dict:
    result = payouts.cash_out(
        db,
        payload.employee_id,
        amount_cents=payload.amount_cents,
        memo=payload.memo,
        idempotency_key=payload.idempotency_key,
    )
    warnings = [result.error] if result.error else []
    if result.replayed:
        warnings.append("payout already recorded for this idempotency key")
    return {"data": result.model_dump(), "meta": _meta(warnings=warnings)}


@app.post("/api/v1/tips/payouts/payroll", tags=["Tip Payouts"])
def create_payroll_payout(payload: PayrollPayoutCreate, db: Session = Depends(get_db)) -> dict:
    result = payouts.batch_payroll_payout(
        db, payload.location_id, employee_ids=payload.employee_ids, memo=payload.memo
    )
    return {"data": result.model_dump(), "meta": _meta()}


@app.get("/api/v1/locations/{location_id}/tips/payouts", tags=["Tip Payouts"])
def list_payout_history(
    location_id: int,
    employee_id: Optional[int] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    entries, total = payouts.get_payout_history(
        db,
        location_id,
        employee_id=employee_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=cursor or 0,
    )
    return {
        "data": [entry.model_dump(mode="json") for entry in entries],
        "meta": _list_meta(limit, cursor, total),
    }


@app.get("/api/v1/tips/group-checkout", tags=["Tip Allocation"])
def get_group_checkout(
    employee_id: int = Query(...),
    shift_started_at: datetime = Query(...),
    shift_ended_at: datetime = Query(...),
    db: Session = Depends(get_db),
) -> dict:
    if shift_ended_at < shift_started_at:
        raise HTTPException(status_code=400, detail="shift_ended_at must not be before shift_started_at")
    breakdown = allocation.calculate_group_checkout(db, employee_id, shift_started_at, shift_ended_at)
    return {"data": breakdown.model_dump(mode="json"), "meta": _meta()}


class ChargebackCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'location_id': 1, 'payment_id': 'pay_1', 'memo': 'card dispute'}}}
    location_id: int
    payment_id: str
    memo: Optional[str] = None


@app.post("/api/v1/tips/chargebacks", tags=["Tip Chargebacks"])
def create_tip_chargeback(payload: ChargebackCreate, db: Session = Depends(get_db)) -> dict:
    with _tip_bank_errors():
        result = chargebacks.handle_tip_chargeback(
            db, payload.location_id, payload.payment_id, memo=payload.memo
        )
    warnings = []
    if result.flagged_for_review_cents:
        warnings.append(f"{result.flagged_for_review_cents} cents could not be collected and were flagged for review")
    return {"data": result.model_dump(), "meta": _meta(warnings=warnings)}


class TipTransferCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'from_employee_id': 7, 'to_employee_id': 8, 'amount_cents': 500, 'memo': 'thanks for covering'}}}
    from_employee_id: int
    to_employee_id: int
    amount_cents: int
    memo: Optional[str] = None


@app.post("/api/v1/tips/transfers", tags=["Tip Transfers"])
def create_tip_transfer(payload: TipTransferCreate, db: Session = Depends(get_db)) -> dict:
    with _tip_bank_errors():
        result = adjustments.transfer_tips(
            db,
            payload.from_employee_id,
            payload.to_employee_id,
            payload.amount_cents,
            memo=payload.memo,
        )
    return {"data": result.model_dump(), "meta": _meta()}


class AdjustmentDeltaInput(BaseModel):
    employee_id: int
    delta_cents: int


class TipAdjustmentCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'location_id': 1, 'created_by_id': 3, 'reason': 'missed clock-in', 'adjustment_type': 'clock_fix', 'context': {'before': {}, 'after': {}}, 'deltas': [{'employee_id': 7, 'delta_cents': -200}, {'employee_id': 8, 'delta_cents': 200}]}}}
    location_id: int
    created_by_id: int
    reason: str
    adjustment_type: str
    context: Optional[dict] = None
    deltas: list[AdjustmentDeltaInput] = Field(default_factory=list)


@app.post("/api/v1/tips/adjustments", tags=["Tip Adjustments"])
def create_tip_adjustment(payload: TipAdjustmentCreate, db: Session = Depends(get_db)) -> dict:
    if payload.adjustment_type not in adjustments.ADJUSTMENT_TYPES:
        raise HTTPException(status_code=400, detail="unknown adjustment_type")
    deltas: dict[int, int] = {}
    for delta in payload.deltas:
        deltas[delta.employee_id] = deltas.get(delta.employee_id, 0) + delta.delta_cents
    with _tip_bank_errors():
        result = adjustments.perform_tip_adjustment(
            db,
            location_id=payload.location_id,
            created_by_id=payload.created_by_id,
            reason=payload.reason,
            adjustment_type=payload.adjustment_type,
            context=payload.context,
            deltas=deltas,
        )
    return {"data": result.model_dump(), "meta": _meta()}


@app.get("/api/v1/locations/{location_id}/tips/adjustments", tags=["Tip Adjustments"])
def list_tip_adjustments(
    location_id: int,
    adjustment_type: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    records, total = adjustments.get_adjustment_history(
        db, location_id, adjustment_type=adjustment_type, limit=limit, offset=cursor or 0
    )
    return {
        "data": [record.model_dump(mode="json") for record in records],
        "meta": _list_meta(limit, cursor, total),
    }


class MemberWeightInput(BaseModel):
    employee_id: int
    weight: Decimal = Field(ge=0)


class GroupRecalculationCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'location_id': 1, 'manager_id': 3, 'segment_id': 12, 'reason': 'busser left out of segment', 'weights': [{'employee_id': 7, 'weight': 1}, {'employee_id': 9, 'weight': 1}]}}}
    location_id: int
    manager_id: int
    segment_id: Optional[int] = None
    reason: str = "Tip group recalculation"
    weights: Optional[list[MemberWeightInput]] = None


class OrderRecalculationCreate(BaseModel):
    location_id: int
    manager_id: int
    reason: str = "Order ownership recalculation"


@app.post("/api/v1/tips/groups/{group_id}:recalculate", tags=["Tip Adjustments"])
def recalculate_tip_group(
    group_id: int, payload: GroupRecalculationCreate, db: Session = Depends(get_db)
) -> dict:
    weights = None
    if payload.weights is not None:
        if payload.segment_id is None:
            raise HTTPException(status_code=400, detail="weights need a segment_id")
        weights = {item.employee_id: item.weight for item in payload.weights}
    with _tip_bank_errors():
        result = adjustments.recalculate_group_allocations(
            db,
            payload.location_id,
            payload.manager_id,
            group_id,
            segment_id=payload.segment_id,
            reason=payload.reason,
            weights=weights,
        )
    return {"data": result.model_dump(), "meta": _meta()}


@app.post("/api/v1/orders/{order_id}/ownership:recalculate", tags=["Tip Adjustments"])
def recalculate_order_ownership(
    order_id: str, payload: OrderRecalculationCreate, db: Session = Depends(get_db)
) -> dict:
    with _tip_bank_errors():
        result = adjustments.recalculate_order_allocations(
            db, payload.location_id, payload.manager_id, order_id, reason=payload.reason
        )
    return {"data": result.model_dump(), "meta": _meta()}
