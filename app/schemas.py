from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class LedgerPosting(BaseModel):
    entry_id: int
    employee_id: int
    amount_cents: int
    balance_cents: int
    replayed: bool = False


class LedgerEntryInfo(BaseModel):
    id: int
    employee_id: int
    type: str
    amount_cents: int
    source_type: str
    source_id: Optional[str] = None
    order_id: Optional[str] = None
    memo: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: datetime


class BalanceCheck(BaseModel):
    employee_id: int
    cached_cents: int
    calculated_cents: int
    fixed: bool


class PayableBalance(BaseModel):
    employee_id: int
    full_name: Optional[str] = None
    balance_cents: int


class Allocation(BaseModel):
    employee_id: int
    amount_cents: int
    source_type: str
    ledger_entry_id: int


class TipAllocationResult(BaseModel):
    tip_transaction_id: int
    allocations: list[Allocation] = Field(default_factory=list)
    replayed: bool = False


class SegmentInfo(BaseModel):
    id: int
    started_at: datetime
    ended_at: Optional[datetime] = None
    member_count: int
    split_json: dict[str, float]


class MemberInfo(BaseModel):
    id: int
    employee_id: int
    joined_at: Optional[datetime] = None
    left_at: Optional[datetime] = None
    status: str


class TipGroupInfo(BaseModel):
    id: int
    location_id: int
    created_by: int
    owner_id: int
    status: str
    split_mode: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    members: list[MemberInfo] = Field(default_factory=list)
    current_segment: Optional[SegmentInfo] = None


class JoinRequest(BaseModel):
    membership_id: int
    status: str


class OwnerInfo(BaseModel):
    id: int
    employee_id: int
    share_percent: float


class OwnershipInfo(BaseModel):
    id: int
    order_id: str
    is_active: bool
    owners: list[OwnerInfo] = Field(default_factory=list)


class OwnerSlice(BaseModel):
    employee_id: int
    share_percent: float
    amount_cents: int


class CheckoutSegment(BaseModel):
    segment_id: int
    started_at: datetime
    ended_at: Optional[datetime] = None
    split_percent: float
    tips_cents: int
    is_solo: bool


class GroupCheckoutBreakdown(BaseModel):
    employee_id: int
    segments: list[CheckoutSegment] = Field(default_factory=list)
    solo_tips_cents: int = 0
    group_tips_cents: int = 0
    total_tips_cents: int = 0


class PayoutResult(BaseModel):
    success: bool
    employee_id: int
    amount_cents: int = 0
    previous_balance_cents: int = 0
    new_balance_cents: int = 0
    ledger_entry_id: Optional[int] = None
    payout_id: Optional[str] = None
    replayed: bool = False
    error: Optional[str] = None


class PayrollPayoutLine(BaseModel):
    employee_id: int
    amount_cents: int
    ledger_entry_id: int


class BatchPayrollResult(BaseModel):
    batch_id: str
    entries: list[PayrollPayoutLine] = Field(default_factory=list)
    employee_count: int = 0
    total_paid_out_cents: int = 0


class ChargebackLine(BaseModel):
    employee_id: int
    amount_cents: int
    ledger_entry_id: Optional[int] = None
    capped_at_balance: bool = False


class ChargebackResult(BaseModel):
    policy: str
    tip_transaction_id: int
    original_tip_cents: int
    charged_back_cents: int = 0
    flagged_for_review_cents: int = 0
    tip_debt_ids: list[int] = Field(default_factory=list)
    entries: list[ChargebackLine] = Field(default_factory=list)


class TransferResult(BaseModel):
    transfer_id: str
    from_employee_id: int
    to_employee_id: int
    amount_cents: int
    debit_entry_id: int
    credit_entry_id: int
    from_balance_cents: int
    to_balance_cents: int


class AdjustmentLine(BaseModel):
    employee_id: int
    type: str
    amount_cents: int
    ledger_entry_id: int


class AdjustmentResult(BaseModel):
    adjustment_id: int
    adjustment_type: str
    reason: str
    delta_entries: list[AdjustmentLine] = Field(default_factory=list)


class AdjustmentRecord(BaseModel):
    id: int
    created_by_id: int
    reason: str
    adjustment_type: str
    context_json: Optional[dict] = None
    created_at: datetime


class RecalculationLine(BaseModel):
    employee_id: int
    segment_id: Optional[int] = None
    previous_cents: int
    new_cents: int
    delta_cents: int
    ledger_entry_id: int


class RecalculationResult(BaseModel):
    adjustment_id: int
    adjustment_type: str
    reason: str
    delta_entries: list[RecalculationLine] = Field(default_factory=list)
