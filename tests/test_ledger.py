import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import ledger as ledger_module
from app.db import Base, utcnow
from app.errors import INVALID_AMOUNT, TipBankError
from app.ledger import (
    CREDIT,
    DEBIT,
    get_balance,
    get_entries,
    get_or_create_ledger,
    get_payable_balances,
    post_to_ledger,
    recalculate_all,
    recalculate_balance,
)
from app.models import Employee, Location, TipLedger, TipLedgerEntry


def _make_session() -> Session:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal()


def _seed(db: Session, employees: int = 3) -> tuple[int, list[int]]:
    location = Location(name="Blue Area", created_at=utcnow())
    db.add(location)
    db.flush()
    staff = [Employee(location_id=location.id, full_name=f"Server {i + 1}") for i in range(employees)]
    db.add_all(staff)
    db.commit()
    return location.id, [employee.id for employee in staff]


def test_credit_then_debit_moves_cached_balance() -> None:
    db = _make_session()
    _, (alice, _, _) = _seed(db)

    credit = post_to_ledger(db, alice, 1500, CREDIT, "DIRECT_TIP", source_id="txn-1")
    debit = post_to_ledger(db, alice, 400, DEBIT, "PAYOUT_CASH")

    assert credit.amount_cents == 1500
    assert credit.balance_cents == 1500
    assert debit.amount_cents == -400
    assert debit.balance_cents == 1100
    assert get_balance(db, alice) == 1100


def test_first_posting_creates_ledger_at_employee_location() -> None:
    db = _make_session()
    location_id, (alice, _, _) = _seed(db)

    post_to_ledger(db, alice, 100, CREDIT, "DIRECT_TIP")

    ledger = db.query(TipLedger).filter(TipLedger.employee_id == alice).one()
    assert ledger.location_id == location_id


def test_reused_idempotency_key_posts_once() -> None:
    db = _make_session()
    _, (alice, _, _) = _seed(db)

    first = post_to_ledger(db, alice, 700, CREDIT, "DIRECT_TIP", idempotency_key="tip-ledger:o1:p1:1")
    second = post_to_ledger(db, alice, 700, CREDIT, "DIRECT_TIP", idempotency_key="tip-ledger:o1:p1:1")

    assert second.replayed is True
    assert second.entry_id == first.entry_id
    assert db.query(TipLedgerEntry).count() == 1
    assert get_balance(db, alice) == 700


def test_losing_a_key_race_returns_the_committed_entry(monkeypatch: pytest.MonkeyPatch) -> None:
    db = _make_session()
    _, (alice, _, _) = _seed(db)
    first = post_to_ledger(db, alice, 700, CREDIT, "DIRECT_TIP", idempotency_key="tip-ledger:o1:p1:1")

    real_find = ledger_module._find_by_key
    stale_reads = [None]

    def find_after_stale_read(session: Session, key: str):
        if stale_reads:
            return stale_reads.pop()
        return real_find(session, key)

    monkeypatch.setattr(ledger_module, "_find_by_key", find_after_stale_read)
    second = post_to_ledger(db, alice, 700, CREDIT, "DIRECT_TIP", idempotency_key="tip-ledger:o1:p1:1")

    assert second.replayed is True
    assert second.entry_id == first.entry_id
    assert second.balance_cents == 700
    assert db.query(TipLedgerEntry).count() == 1
    assert get_balance(db, alice) == 700


def test_get_or_create_ledger_starts_at_zero_and_is_reused() -> None:
    db = _make_session()
    location_id, (alice, _, _) = _seed(db)

    ledger = get_or_create_ledger(db, alice)
    again = get_or_create_ledger(db, alice)

    assert ledger.current_balance_cents == 0
    assert ledger.location_id == location_id
    assert again.id == ledger.id
    assert db.query(TipLedger).filter(TipLedger.employee_id == alice).count() == 1
    assert get_balance(db, alice) == 0


@pytest.mark.parametrize("amount", [0, -50])
def test_non_positive_amount_is_rejected(amount: int) -> None:
    db = _make_session()
    _, (alice, _, _) = _seed(db)

    with pytest.raises(TipBankError) as excinfo:
        post_to_ledger(db, alice, amount, CREDIT, "DIRECT_TIP")

    assert excinfo.value.code == INVALID_AMOUNT
    assert db.query(TipLedgerEntry).count() == 0


def test_recalculate_matches_cached_after_normal_postings() -> None:
    db = _make_session()
    _, (alice, bob, _) = _seed(db)
    post_to_ledger(db, alice, 1000, CREDIT, "DIRECT_TIP")
    post_to_ledger(db, alice, 250, DEBIT, "PAYOUT_CASH")
    post_to_ledger(db, bob, 333, CREDIT, "TIP_GROUP")

    checks = recalculate_all(db)

    assert [check.employee_id for check in checks] == [alice, bob]
    assert all(check.cached_cents == check.calculated_cents for check in checks)
    assert not any(check.fixed for check in checks)


def test_recalculate_repairs_drifted_balance() -> None:
    db = _make_session()
    _, (alice, _, _) = _seed(db)
    post_to_ledger(db, alice, 1000, CREDIT, "DIRECT_TIP")
    db.query(TipLedger).filter(TipLedger.employee_id == alice).update(
        {TipLedger.current_balance_cents: 999_999}
    )
    db.commit()

    check = recalculate_balance(db, alice)

    assert check.fixed is True
    assert check.cached_cents == 999_999
    assert check.calculated_cents == 1000
    assert get_balance(db, alice) == 1000


def test_recalculate_without_ledger_is_zero() -> None:
    db = _make_session()
    _, (alice, _, _) = _seed(db)

    check = recalculate_balance(db, alice)

    assert check.cached_cents == 0
    assert check.calculated_cents == 0
    assert check.fixed is False


def test_get_entries_filters_and_pages_newest_first() -> None:
    db = _make_session()
    _, (alice, _, _) = _seed(db)
    for amount in (100, 200, 300):
        post_to_ledger(db, alice, amount, CREDIT, "DIRECT_TIP")
    post_to_ledger(db, alice, 50, DEBIT, "PAYOUT_CASH")

    credits, total = get_entries(db, alice, entry_type=CREDIT, limit=2)
    assert total == 3
    assert [entry.amount_cents for entry in credits] == [300, 200]

    rest, _ = get_entries(db, alice, entry_type=CREDIT, limit=2, offset=2)
    assert [entry.amount_cents for entry in rest] == [100]

    payouts, total = get_entries(db, alice, source_type="PAYOUT_CASH")
    assert total == 1
    assert payouts[0].amount_cents == -50


def test_payable_balances_lists_positive_balances_largest_first() -> None:
    db = _make_session()
    location_id, (alice, bob, carol) = _seed(db)
    post_to_ledger(db, alice, 500, CREDIT, "DIRECT_TIP")
    post_to_ledger(db, bob, 1200, CREDIT, "DIRECT_TIP")
    post_to_ledger(db, carol, 300, CREDIT, "DIRECT_TIP")
    post_to_ledger(db, carol, 300, DEBIT, "PAYOUT_CASH")

    balances = get_payable_balances(db, location_id)

    assert [(b.employee_id, b.balance_cents) for b in balances] == [(bob, 1200), (alice, 500)]
    assert balances[0].full_name == "Server 2"
