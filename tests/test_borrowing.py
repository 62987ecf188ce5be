import threading
from datetime import datetime, timedelta, timezone

import pytest

from library_app.borrowing import BorrowingLedger, overdue_days
from library_app.errors import CapacityError, ConflictError, NotFoundError, ValidationError


@pytest.fixture
def item(lib):
    return lib.catalog.create_item(
        {"title": "Dune", "author": "Frank Herbert", "isbn": "9780306406157", "total_copies": 2}
    )


def test_borrow_decrements_availability(lib, item, clock):
    borrowing = lib.ledger.borrow("alice", item.id)

    assert borrowing.status == "active"
    assert borrowing.borrow_date == clock.now
    assert borrowing.due_date == clock.now + timedelta(days=14)
    assert borrowing.return_date is None
    assert lib.catalog.get_item(item.id).available_copies == 1


def test_custom_loan_period(lib, item, clock):
    borrowing = lib.ledger.borrow("alice", item.id, loan_period_days=3)
    assert borrowing.due_date == clock.now + timedelta(days=3)


def test_borrow_until_exhausted(lib, item):
    lib.ledger.borrow("alice", item.id)
    lib.ledger.borrow("bob", item.id)

    with pytest.raises(CapacityError):
        lib.ledger.borrow("carol", item.id)
    assert lib.catalog.get_item(item.id).available_copies == 0
    assert len(lib.ledger.list_borrowings(item_id=item.id)) == 2


def test_same_user_cannot_hold_two_copies(lib, item):
    lib.ledger.borrow("alice", item.id)
    with pytest.raises(ConflictError):
        lib.ledger.borrow("alice", item.id)
    assert lib.catalog.get_item(item.id).available_copies == 1


def test_duplicate_loan_reported_before_exhaustion(lib):
    single = lib.catalog.create_item({"title": "Solo", "author": "A", "isbn": "9780134685991"})
    lib.ledger.borrow("alice", single.id)
    with pytest.raises(ConflictError):
        lib.ledger.borrow("alice", single.id)


def test_borrow_missing_item(lib):
    with pytest.raises(NotFoundError):
        lib.ledger.borrow("alice", 999)


@pytest.mark.parametrize("user_id, days", [("", None), ("   ", None), ("alice", 0), ("alice", -5)])
def test_borrow_rejects_invalid_request(lib, item, user_id, days):
    with pytest.raises(ValidationError):
        lib.ledger.borrow(user_id, item.id, days)
    assert lib.catalog.get_item(item.id).available_copies == 2


def test_return_restores_availability(lib, item, clock):
    borrowing = lib.ledger.borrow("alice", item.id)
    clock.advance(days=2)

    returned = lib.ledger.return_item(borrowing.id)

    assert returned.status == "returned"
    assert returned.return_date == clock.now
    assert lib.catalog.get_item(item.id).available_copies == 2


def test_second_return_conflicts(lib, item):
    borrowing = lib.ledger.borrow("alice", item.id)
    lib.ledger.return_item(borrowing.id)

    with pytest.raises(ConflictError):
        lib.ledger.return_item(borrowing.id)
    assert lib.catalog.get_item(item.id).available_copies == 2


def test_return_missing_borrowing(lib):
    with pytest.raises(NotFoundError):
        lib.ledger.return_item(404)


def test_user_can_borrow_again_after_return(lib, item):
    first = lib.ledger.borrow("alice", item.id)
    lib.ledger.return_item(first.id)
    second = lib.ledger.borrow("alice", item.id)
    assert second.id != first.id


def test_sweep_marks_only_past_due(lib, item, clock):
    early = lib.ledger.borrow("alice", item.id, loan_period_days=1)
    late = lib.ledger.borrow("bob", item.id, loan_period_days=10)

    clock.advance(days=2)
    swept = lib.ledger.sweep_overdue()

    assert [b.id for b in swept] == [early.id]
    assert lib.ledger.get_borrowing(early.id).status == "overdue"
    assert lib.ledger.get_borrowing(late.id).status == "active"
    # copies stay out
    assert lib.catalog.get_item(item.id).available_copies == 0
    # nothing new to sweep
    assert lib.ledger.sweep_overdue() == []


def test_sweep_with_explicit_time(lib, item, clock):
    borrowing = lib.ledger.borrow("alice", item.id, loan_period_days=1)
    assert lib.ledger.sweep_overdue(clock.now) == []
    swept = lib.ledger.sweep_overdue(clock.now + timedelta(days=1, seconds=1))
    assert [b.id for b in swept] == [borrowing.id]


def test_overdue_can_be_returned(lib, item, clock):
    borrowing = lib.ledger.borrow("alice", item.id, loan_period_days=1)
    clock.advance(days=5)
    lib.ledger.sweep_overdue()

    returned = lib.ledger.return_item(borrowing.id)
    assert returned.status == "returned"
    assert lib.catalog.get_item(item.id).available_copies == 2
    # returned rows are never swept back
    clock.advance(days=30)
    assert lib.ledger.sweep_overdue() == []


def test_open_user_loan_blocks_while_overdue(lib, item, clock):
    lib.ledger.borrow("alice", item.id, loan_period_days=1)
    clock.advance(days=2)
    lib.ledger.sweep_overdue()
    with pytest.raises(ConflictError):
        lib.ledger.borrow("alice", item.id)


def test_list_borrowings_filters(lib, item):
    a = lib.ledger.borrow("alice", item.id)
    lib.ledger.borrow("bob", item.id)
    lib.ledger.return_item(a.id)

    assert [b.user_id for b in lib.ledger.list_borrowings(user_id="alice")] == ["alice"]
    assert [b.id for b in lib.ledger.list_borrowings(status="returned")] == [a.id]
    assert len(lib.ledger.list_borrowings()) == 2
    with pytest.raises(ValidationError):
        lib.ledger.list_borrowings(status="lost")


def test_availability_matches_open_loans(lib, item, clock):
    loans = [lib.ledger.borrow(user, item.id, loan_period_days=1) for user in ("alice", "bob")]
    clock.advance(days=3)
    lib.ledger.sweep_overdue()
    lib.ledger.return_item(loans[0].id)

    current = lib.catalog.get_item(item.id)
    open_loans = [b for b in lib.ledger.list_borrowings(item_id=item.id) if b.is_open]
    assert current.available_copies + len(open_loans) == current.total_copies


def test_concurrent_borrows_of_last_copy(lib):
    single = lib.catalog.create_item({"title": "Solo", "author": "A", "isbn": "9780134685991"})
    barrier = threading.Barrier(2)
    results = {}

    def borrow(user):
        barrier.wait()
        try:
            results[user] = lib.ledger.borrow(user, single.id)
        except CapacityError as e:
            results[user] = e

    threads = [threading.Thread(target=borrow, args=(user,)) for user in ("alice", "bob")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    failures = [r for r in results.values() if isinstance(r, CapacityError)]
    assert len(failures) == 1
    assert lib.catalog.get_item(single.id).available_copies == 0
    assert len(lib.ledger.list_borrowings(item_id=single.id)) == 1


def test_three_copies_four_readers(lib):
    item = lib.catalog.create_item(
        {"title": "Atlas", "author": "A", "isbn": "9780596007126", "total_copies": 3}
    )
    loans = [lib.ledger.borrow(user, item.id) for user in ("u1", "u2", "u3")]
    assert lib.catalog.get_item(item.id).available_copies == 0

    with pytest.raises(CapacityError):
        lib.ledger.borrow("u4", item.id)

    lib.ledger.return_item(loans[0].id)
    assert lib.catalog.get_item(item.id).available_copies == 1


def test_overdue_after_loan_period(lib, item, clock):
    t0 = clock.now
    borrowing = lib.ledger.borrow("alice", item.id)
    assert borrowing.due_date == t0 + timedelta(days=14)

    swept = lib.ledger.sweep_overdue(t0 + timedelta(days=15))
    assert [b.status for b in swept] == ["overdue"]
    assert lib.ledger.return_item(borrowing.id).status == "returned"


def test_return_missing_borrowing_out_of_range(lib):
    with pytest.raises(NotFoundError):
        lib.ledger.return_item(2**63)


def test_sweep_racing_return(lib, item, clock):
    borrowing = lib.ledger.borrow("alice", item.id, loan_period_days=1)
    clock.advance(days=2)
    barrier = threading.Barrier(2)
    results = {}

    def sweep():
        barrier.wait()
        results["sweep"] = lib.ledger.sweep_overdue()

    def give_back():
        barrier.wait()
        results["return"] = lib.ledger.return_item(borrowing.id)

    threads = [threading.Thread(target=sweep), threading.Thread(target=give_back)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results["return"].status == "returned"
    assert lib.ledger.get_borrowing(borrowing.id).status == "returned"
    current = lib.catalog.get_item(item.id)
    assert current.available_copies == current.total_copies
    assert len(lib.ledger.list_fines(borrowing_id=borrowing.id)) == 1


# --- Fines ---
def test_late_return_records_fine(lib, item, clock):
    borrowing = lib.ledger.borrow("alice", item.id)
    clock.advance(days=17)

    lib.ledger.return_item(borrowing.id)

    fines = lib.ledger.list_fines(user_id="alice")
    assert len(fines) == 1
    fine = fines[0]
    assert fine.borrowing_id == borrowing.id
    assert fine.fine_type == "overdue"
    assert fine.overdue_days == 3
    assert fine.amount == 1.5
    assert fine.status == "unpaid"
    assert fine.created_at == clock.now


def test_part_of_a_day_late_counts_as_a_day(lib, item, clock):
    borrowing = lib.ledger.borrow("alice", item.id, loan_period_days=1)
    clock.advance(days=1, hours=1)
    lib.ledger.return_item(borrowing.id)
    assert [f.amount for f in lib.ledger.list_fines(borrowing_id=borrowing.id)] == [0.5]


def test_on_time_return_has_no_fine(lib, item, clock):
    borrowing = lib.ledger.borrow("alice", item.id)
    clock.advance(days=14)
    lib.ledger.return_item(borrowing.id)
    assert lib.ledger.list_fines() == []


def test_zero_rate_disables_fines(lib, item, clock):
    ledger = BorrowingLedger(lib.db, lib.catalog, clock=clock, fine_daily_rate=0)
    borrowing = ledger.borrow("alice", item.id, loan_period_days=1)
    clock.advance(days=10)
    ledger.return_item(borrowing.id)
    assert ledger.list_fines() == []


def test_pay_fine(lib, item, clock):
    borrowing = lib.ledger.borrow("alice", item.id, loan_period_days=1)
    clock.advance(days=3)
    lib.ledger.return_item(borrowing.id)
    fine = lib.ledger.list_fines(user_id="alice", status="unpaid")[0]

    clock.advance(hours=2)
    paid = lib.ledger.pay_fine(fine.id)

    assert paid.status == "paid"
    assert paid.paid_at == clock.now
    assert lib.ledger.list_fines(status="unpaid") == []
    with pytest.raises(ConflictError):
        lib.ledger.pay_fine(fine.id)
    with pytest.raises(NotFoundError):
        lib.ledger.pay_fine(999)


def test_create_manual_fine(lib, item):
    borrowing = lib.ledger.borrow("alice", item.id)
    fine = lib.ledger.create_fine({
        "user_id": "alice", "amount": 7.126, "reason": "Torn cover",
        "fine_type": "damage", "borrowing_id": borrowing.id,
    })
    assert fine.amount == 7.13
    assert fine.fine_type == "damage"
    assert lib.ledger.get_fine(fine.id).reason == "Torn cover"


@pytest.mark.parametrize("payload", [
    {"user_id": "alice", "amount": 0, "reason": "Nothing"},
    {"user_id": "alice", "amount": 0.001, "reason": "Too small"},
    {"user_id": "alice", "amount": 5, "reason": "   "},
    {"user_id": "", "amount": 5, "reason": "Lost"},
    {"user_id": "alice", "amount": 5, "reason": "Lost", "fine_type": "parking"},
])
def test_create_fine_rejects_invalid(lib, payload):
    with pytest.raises(ValidationError):
        lib.ledger.create_fine(payload)
    assert lib.ledger.list_fines() == []


def test_create_fine_checks_borrowing(lib, item):
    borrowing = lib.ledger.borrow("alice", item.id)
    with pytest.raises(ValidationError):
        lib.ledger.create_fine({"user_id": "bob", "amount": 5, "reason": "Lost", "borrowing_id": borrowing.id})
    with pytest.raises(NotFoundError):
        lib.ledger.create_fine({"user_id": "alice", "amount": 5, "reason": "Lost", "borrowing_id": 999})


def test_list_fines_rejects_unknown_status(lib):
    with pytest.raises(ValidationError):
        lib.ledger.list_fines(status="waived")


def test_fines_survive_item_deletion(lib, item, clock):
    borrowing = lib.ledger.borrow("alice", item.id, loan_period_days=1)
    clock.advance(days=2)
    lib.ledger.return_item(borrowing.id)

    lib.catalog.delete_item(item.id)

    fine = lib.ledger.list_fines(user_id="alice")[0]
    assert fine.borrowing_id is None
    assert fine.overdue_days == 1


@pytest.mark.parametrize("returned_after, days", [
    (timedelta(0), 0),
    (timedelta(seconds=-1), 0),
    (timedelta(seconds=1), 1),
    (timedelta(days=2), 2),
    (timedelta(days=2, minutes=1), 3),
])
def test_overdue_days(returned_after, days):
    due = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
    assert overdue_days(due, due + returned_after) == days
