from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import allocation as allocation_module
from app.allocation import (
    PaymentTip,
    allocate_tip,
    allocate_tip_for_payment,
    calculate_group_checkout,
)
from app.config import TipBankSettings
from app.db import Base, utcnow
from app.ledger import get_balance, recalculate_all
from app.models import Employee, Location, TipGroupSegment, TipLedgerEntry, TipTransaction
from app.ownership import add_owner, set_splits
from app.tip_groups import remove_member, start_tip_group

SHIFT_START = datetime(2026, 3, 6, 17, 0, tzinfo=timezone.utc)


def _make_session() -> Session:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal()


def _seed(db: Session, employees: int = 4, settings: dict | None = None) -> tuple[int, list[int]]:
    location = Location(name="Blue Area", settings=settings, created_at=utcnow())
    db.add(location)
    db.flush()
    staff = [Employee(location_id=location.id, full_name=f"Server {i + 1}") for i in range(employees)]
    db.add_all(staff)
    db.commit()
    return location.id, [employee.id for employee in staff]


def _amounts(result) -> list[tuple[int, int, str]]:
    return [(a.employee_id, a.amount_cents, a.source_type) for a in result.allocations]


def test_scenario_a_three_member_group_splits_100_cents() -> None:
    db = _make_session()
    location_id, (alice, bob, carol, _) = _seed(db)
    start_tip_group(db, location_id, alice, [bob, carol], at=SHIFT_START)

    result = allocate_tip(
        db, location_id, "ord-1", "pay-1", 100, alice, collected_at=SHIFT_START + timedelta(hours=1)
    )

    assert _amounts(result) == [
        (alice, 33, "TIP_GROUP"),
        (bob, 33, "TIP_GROUP"),
        (carol, 34, "TIP_GROUP"),
    ]
    txn = db.get(TipTransaction, result.tip_transaction_id)
    assert txn.segment_id is not None
    assert txn.tip_group_id is not None


def test_scenario_b_solo_employee_gets_direct_tip() -> None:
    db = _make_session()
    location_id, (alice, _, _, _) = _seed(db)

    result = allocate_tip(db, location_id, "ord-1", "pay-1", 500, alice, collected_at=SHIFT_START)

    assert _amounts(result) == [(alice, 500, "DIRECT_TIP")]
    assert get_balance(db, alice) == 500
    entry = db.get(TipLedgerEntry, result.allocations[0].ledger_entry_id)
    assert entry.idempotency_key == f"tip-ledger:ord-1:pay-1:{alice}"
    assert entry.source_id == str(result.tip_transaction_id)


def test_scenario_c_two_owners_split_60_40() -> None:
    db = _make_session()
    location_id, (alice, bob, _, _) = _seed(db)
    add_owner(db, location_id, "ord-1", bob, created_by_id=alice, current_owner_id=alice)
    set_splits(db, "ord-1", {alice: 60, bob: 40})

    result = allocate_tip(db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=SHIFT_START)

    assert _amounts(result) == [(alice, 600, "DIRECT_TIP"), (bob, 400, "DIRECT_TIP")]
    assert get_balance(db, alice) == 600
    assert get_balance(db, bob) == 400


def test_scenario_d_tip_uses_segment_in_effect_when_collected() -> None:
    db = _make_session()
    location_id, (alice, bob, _, _) = _seed(db)
    group = start_tip_group(db, location_id, alice, [bob], at=SHIFT_START)
    left_at = SHIFT_START + timedelta(hours=2)
    remove_member(db, group.id, bob, at=left_at)

    before = allocate_tip(
        db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=left_at - timedelta(minutes=5)
    )
    after = allocate_tip(
        db, location_id, "ord-2", "pay-2", 1000, alice, collected_at=left_at + timedelta(minutes=5)
    )

    assert _amounts(before) == [(alice, 500, "TIP_GROUP"), (bob, 500, "TIP_GROUP")]
    assert _amounts(after) == [(alice, 1000, "TIP_GROUP")]
    assert db.get(TipTransaction, before.tip_transaction_id).segment_id != db.get(
        TipTransaction, after.tip_transaction_id
    ).segment_id


def test_same_order_and_payment_allocates_once() -> None:
    db = _make_session()
    location_id, (alice, bob, carol, _) = _seed(db)
    start_tip_group(db, location_id, alice, [bob, carol], at=SHIFT_START)

    first = allocate_tip(db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=SHIFT_START)
    second = allocate_tip(db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=SHIFT_START)

    assert second.replayed is True
    assert second.tip_transaction_id == first.tip_transaction_id
    assert _amounts(second) == _amounts(first)
    assert [a.ledger_entry_id for a in second.allocations] == [a.ledger_entry_id for a in first.allocations]
    assert db.query(TipTransaction).count() == 1
    assert db.query(TipLedgerEntry).count() == 3
    assert get_balance(db, alice) + get_balance(db, bob) + get_balance(db, carol) == 1000


def test_concurrent_duplicate_capture_returns_committed_allocation(monkeypatch: pytest.MonkeyPatch) -> None:
    db = _make_session()
    location_id, (alice, _, _, _) = _seed(db)
    first = allocate_tip(db, location_id, "o", "p", 700, alice, collected_at=SHIFT_START)

    real_find = allocation_module._find_transaction
    stale_reads = [None]

    def find_after_stale_read(session: Session, key: str):
        if stale_reads:
            return stale_reads.pop()
        return real_find(session, key)

    monkeypatch.setattr(allocation_module, "_find_transaction", find_after_stale_read)
    second = allocate_tip(db, location_id, "o", "p", 700, alice, collected_at=SHIFT_START)

    assert second.replayed is True
    assert second.tip_transaction_id == first.tip_transaction_id
    assert _amounts(second) == [(alice, 700, "DIRECT_TIP")]
    assert db.query(TipTransaction).count() == 1
    assert db.query(TipLedgerEntry).count() == 1
    assert get_balance(db, alice) == 700

@pytest.mark.parametrize("amount", [1, 2, 3, 7, 99, 100, 101, 1234, 99_999])
def test_nested_ownership_and_groups_conserve_every_cent(amount: int) -> None:
    db = _make_session()
    location_id, (alice, bob, carol, dave) = _seed(db)
    start_tip_group(db, location_id, alice, [carol, dave], at=SHIFT_START)
    add_owner(db, location_id, "ord-1", bob, created_by_id=alice, current_owner_id=alice)
    set_splits(db, "ord-1", {alice: 70, bob: 30})

    result = allocate_tip(
        db, location_id, "ord-1", "pay-1", amount, alice, collected_at=SHIFT_START + timedelta(hours=1)
    )

    assert sum(a.amount_cents for a in result.allocations) == amount
    assert all(a.amount_cents > 0 for a in result.allocations)
    assert {a.source_type for a in result.allocations if a.employee_id == bob} <= {"DIRECT_TIP"}
    assert {a.source_type for a in result.allocations if a.employee_id != bob} <= {"TIP_GROUP"}
    assert all(not check.fixed for check in recalculate_all(db))


def test_nested_owner_slices_are_split_across_owner_group() -> None:
    db = _make_session()
    location_id, (alice, bob, carol, _) = _seed(db)
    start_tip_group(db, location_id, alice, [carol], at=SHIFT_START)
    add_owner(db, location_id, "ord-1", bob, created_by_id=alice, current_owner_id=alice)

    result = allocate_tip(db, location_id, "ord-1", "pay-1", 1000, bob, collected_at=SHIFT_START)

    assert _amounts(result) == [
        (alice, 250, "TIP_GROUP"),
        (carol, 250, "TIP_GROUP"),
        (bob, 500, "DIRECT_TIP"),
    ]
    keys = [db.get(TipLedgerEntry, a.ledger_entry_id).idempotency_key for a in result.allocations]
    assert keys == [
        f"tip-ledger:ord-1:pay-1:owner:{alice}:group:{alice}",
        f"tip-ledger:ord-1:pay-1:owner:{alice}:group:{carol}",
        f"tip-ledger:ord-1:pay-1:owner:{bob}",
    ]


def test_primary_server_owns_all_ignores_shared_ownership() -> None:
    db = _make_session()
    location_id, (alice, bob, _, _) = _seed(
        db, settings={"tipBank": {"tableTipOwnershipMode": "PRIMARY_SERVER_OWNS_ALL"}}
    )
    add_owner(db, location_id, "ord-1", bob, created_by_id=alice, current_owner_id=alice)

    result = allocate_tip(db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=SHIFT_START)

    assert _amounts(result) == [(alice, 1000, "DIRECT_TIP")]


def test_missing_segment_falls_back_to_direct_credit(caplog) -> None:
    db = _make_session()
    location_id, (alice, bob, _, _) = _seed(db)
    start_tip_group(db, location_id, alice, [bob], at=SHIFT_START)

    with caplog.at_level("WARNING", logger="app.allocation"):
        result = allocate_tip(
            db, location_id, "ord-1", "pay-1", 800, alice, collected_at=SHIFT_START - timedelta(hours=1)
        )

    assert _amounts(result) == [(alice, 800, "DIRECT_TIP")]
    assert "no segment" in caplog.text


def test_empty_split_falls_back_to_direct_credit() -> None:
    db = _make_session()
    location_id, (alice, bob, _, _) = _seed(db)
    group = start_tip_group(db, location_id, alice, [bob], at=SHIFT_START)
    db.query(TipGroupSegment).filter(TipGroupSegment.group_id == group.id).update(
        {TipGroupSegment.split_json: {}}
    )
    db.commit()

    result = allocate_tip(db, location_id, "ord-1", "pay-1", 800, alice, collected_at=SHIFT_START)

    assert _amounts(result) == [(alice, 800, "DIRECT_TIP")]


def test_zero_tip_records_transaction_without_entries() -> None:
    db = _make_session()
    location_id, (alice, _, _, _) = _seed(db)

    result = allocate_tip(db, location_id, "ord-1", "pay-1", 0, alice, collected_at=SHIFT_START)

    assert result.allocations == []
    txn = db.get(TipTransaction, result.tip_transaction_id)
    assert txn.amount_cents == 0
    assert db.query(TipLedgerEntry).count() == 0

    again = allocate_tip(db, location_id, "ord-1", "pay-1", 0, alice, collected_at=SHIFT_START)
    assert again.tip_transaction_id == result.tip_transaction_id
    assert db.query(TipTransaction).count() == 1


def test_card_fee_is_withheld_from_allocation() -> None:
    db = _make_session()
    location_id, (alice, _, _, _) = _seed(db)

    result = allocate_tip(
        db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=SHIFT_START, cc_fee_amount_cents=30
    )

    assert _amounts(result) == [(alice, 970, "DIRECT_TIP")]
    txn = db.get(TipTransaction, result.tip_transaction_id)
    assert txn.amount_cents == 970
    assert txn.cc_fee_amount_cents == 30


def test_payment_flow_applies_location_fee_to_card_tips_only() -> None:
    db = _make_session()
    location_id, (alice, _, _, _) = _seed(
        db, settings={"tipBank": {"deductCCFeeFromTips": True, "ccFeePercent": 3}}
    )

    result = allocate_tip_for_payment(
        db,
        location_id,
        "ord-1",
        alice,
        [
            PaymentTip(payment_id="pay-cash", payment_method="cash", tip_amount_cents=500),
            PaymentTip(payment_id="pay-card", payment_method="credit", tip_amount_cents=1000),
        ],
        collected_at=SHIFT_START,
    )

    txn = db.get(TipTransaction, result.tip_transaction_id)
    assert txn.cc_fee_amount_cents == 30
    assert txn.source_type == "CARD"
    assert txn.payment_id == "pay-cash"
    assert get_balance(db, alice) == 1470


def test_payment_flow_skips_when_disabled_or_no_tip() -> None:
    db = _make_session()
    location_id, (alice, _, _, _) = _seed(db)
    payments = [PaymentTip(payment_id="pay-1", payment_method="cash", tip_amount_cents=0)]

    assert allocate_tip_for_payment(db, location_id, "ord-1", alice, payments) is None
    assert (
        allocate_tip_for_payment(
            db,
            location_id,
            "ord-1",
            alice,
            [PaymentTip(payment_id="pay-1", payment_method="cash", tip_amount_cents=500)],
            tip_bank=TipBankSettings(enabled=False),
        )
        is None
    )
    assert db.query(TipTransaction).count() == 0


def test_group_checkout_splits_solo_and_group_tips_by_segment() -> None:
    db = _make_session()
    location_id, (alice, bob, _, _) = _seed(db)
    allocate_tip(db, location_id, "ord-0", "pay-0", 400, alice, collected_at=SHIFT_START + timedelta(minutes=10))
    group = start_tip_group(db, location_id, alice, [bob], at=SHIFT_START + timedelta(hours=1))
    allocate_tip(db, location_id, "ord-1", "pay-1", 1000, bob, collected_at=SHIFT_START + timedelta(hours=2))
    remove_member(db, group.id, bob, at=SHIFT_START + timedelta(hours=3))
    allocate_tip(db, location_id, "ord-2", "pay-2", 600, alice, collected_at=SHIFT_START + timedelta(hours=4))
    allocate_tip(db, location_id, "ord-3", "pay-3", 900, alice, collected_at=SHIFT_START + timedelta(hours=9))

    breakdown = calculate_group_checkout(
        db, alice, SHIFT_START, SHIFT_START + timedelta(hours=8)
    )

    assert breakdown.solo_tips_cents == 400
    assert breakdown.group_tips_cents == 1100
    assert breakdown.total_tips_cents == 1500
    assert [(s.tips_cents, s.split_percent, s.is_solo) for s in breakdown.segments] == [
        (500, 0.5, False),
        (600, 1.0, True),
    ]
