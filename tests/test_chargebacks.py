from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.allocation import allocate_tip, calculate_group_checkout
from app.chargebacks import handle_tip_chargeback
from app.db import Base, utcnow
from app.errors import NO_TIP_TRANSACTION, TipBankError
from app.ledger import get_balance
from app.models import Employee, Location, TipDebt, TipTransaction
from app.payouts import cash_out
from app.tip_groups import start_tip_group

COLLECTED_AT = datetime(2026, 3, 6, 19, 30, tzinfo=timezone.utc)


def _make_session() -> Session:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal()


def _seed(db: Session, settings: dict | None = None) -> tuple[int, list[int]]:
    location = Location(name="Blue Area", settings=settings, created_at=utcnow())
    db.add(location)
    db.flush()
    staff = [Employee(location_id=location.id, full_name=f"Server {i + 1}") for i in range(2)]
    db.add_all(staff)
    db.commit()
    return location.id, [employee.id for employee in staff]


def test_business_absorbs_keeps_credits_and_soft_deletes() -> None:
    db = _make_session()
    location_id, (alice, _) = _seed(db)
    allocation = allocate_tip(db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=COLLECTED_AT)

    result = handle_tip_chargeback(db, location_id, "pay-1")

    assert result.policy == "BUSINESS_ABSORBS"
    assert result.original_tip_cents == 1000
    assert result.charged_back_cents == 0
    assert result.entries == []
    assert get_balance(db, alice) == 1000
    assert db.get(TipTransaction, allocation.tip_transaction_id).deleted_at is not None


def test_employee_chargeback_reverses_each_credit() -> None:
    db = _make_session()
    location_id, (alice, bob) = _seed(db, settings={"tipBank": {"chargebackPolicy": "EMPLOYEE_CHARGEBACK"}})
    start_tip_group(db, location_id, alice, [bob], at=COLLECTED_AT)
    allocate_tip(db, location_id, "ord-1", "pay-1", 1001, alice, collected_at=COLLECTED_AT)

    result = handle_tip_chargeback(db, location_id, "pay-1", memo="card dispute")

    assert result.policy == "EMPLOYEE_CHARGEBACK"
    assert result.charged_back_cents == 1001
    assert result.flagged_for_review_cents == 0
    assert result.tip_debt_ids == []
    assert sorted((line.employee_id, line.amount_cents) for line in result.entries) == [(alice, 501), (bob, 500)]
    assert get_balance(db, alice) == 0
    assert get_balance(db, bob) == 0


def test_employee_chargeback_caps_at_balance_and_records_debt() -> None:
    db = _make_session()
    location_id, (alice, _) = _seed(db, settings={"tipBank": {"chargebackPolicy": "EMPLOYEE_CHARGEBACK"}})
    allocate_tip(db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=COLLECTED_AT)
    cash_out(db, alice, amount_cents=700)

    result = handle_tip_chargeback(db, location_id, "pay-1")

    assert result.charged_back_cents == 300
    assert result.flagged_for_review_cents == 700
    assert result.entries[0].capped_at_balance is True
    assert get_balance(db, alice) == 0
    debt = db.get(TipDebt, result.tip_debt_ids[0])
    assert debt.employee_id == alice
    assert debt.remaining_cents == 700
    assert debt.status == "open"
    assert debt.source_payment_id == "pay-1"


def test_negative_balances_allowed_takes_full_debit() -> None:
    db = _make_session()
    location_id, (alice, _) = _seed(
        db,
        settings={"tipBank": {"chargebackPolicy": "EMPLOYEE_CHARGEBACK", "allowNegativeBalances": True}},
    )
    allocate_tip(db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=COLLECTED_AT)
    cash_out(db, alice)

    result = handle_tip_chargeback(db, location_id, "pay-1")

    assert result.charged_back_cents == 1000
    assert result.flagged_for_review_cents == 0
    assert get_balance(db, alice) == -1000


def test_chargeback_twice_finds_no_transaction() -> None:
    db = _make_session()
    location_id, (alice, _) = _seed(db)
    allocate_tip(db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=COLLECTED_AT)
    handle_tip_chargeback(db, location_id, "pay-1")

    with pytest.raises(TipBankError) as excinfo:
        handle_tip_chargeback(db, location_id, "pay-1")
    assert excinfo.value.code == NO_TIP_TRANSACTION


def test_retried_capture_after_chargeback_does_not_recredit() -> None:
    db = _make_session()
    location_id, (alice, _) = _seed(db, settings={"tipBank": {"chargebackPolicy": "EMPLOYEE_CHARGEBACK"}})
    allocate_tip(db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=COLLECTED_AT)
    handle_tip_chargeback(db, location_id, "pay-1")

    replay = allocate_tip(db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=COLLECTED_AT)

    assert replay.replayed is True
    assert get_balance(db, alice) == 0


def test_group_checkout_leaves_out_charged_back_tips() -> None:
    db = _make_session()
    location_id, (alice, bob) = _seed(db)
    start_tip_group(db, location_id, alice, [bob], at=COLLECTED_AT)
    allocate_tip(db, location_id, "ord-1", "pay-1", 1000, alice, collected_at=COLLECTED_AT)
    allocate_tip(db, location_id, "ord-2", "pay-2", 400, alice, collected_at=COLLECTED_AT + timedelta(minutes=5))
    handle_tip_chargeback(db, location_id, "pay-1")

    breakdown = calculate_group_checkout(
        db, alice, COLLECTED_AT - timedelta(hours=1), COLLECTED_AT + timedelta(hours=1)
    )

    assert breakdown.group_tips_cents == 200
    assert [segment.tips_cents for segment in breakdown.segments] == [200]
    assert get_balance(db, alice) == 700
