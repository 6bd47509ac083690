import threading
from datetime import datetime

import pytest

from conftest import TestingSessionLocal, active_count, assert_inventory_consistent, borrow_dates
from library_lending.errors import NotFoundError, RejectedError
from library_lending.lending import LendingEngine
from library_lending.models import Book, BookCondition, BorrowStatus


@pytest.fixture
def lending(db):
    return LendingEngine(db)


def test_borrow_creates_record_and_takes_one_copy(db, lending, make_book):
    book = make_book(quantity=3)

    record = lending.borrow(
        book.id, "John Doe", borrower_email="john@example.com", **borrow_dates()
    )

    assert record.status == BorrowStatus.BORROWED
    assert record.book_id == book.id
    assert record.borrower_email == "john@example.com"
    assert record.actual_return_date is None
    assert record.condition is None
    assert book.available_quantity == 2
    assert_inventory_consistent(db)


def test_borrow_unknown_book(lending):
    with pytest.raises(NotFoundError):
        lending.borrow("no-such-book", "John Doe", **borrow_dates())


def test_borrow_when_no_copy_left_is_rejected(db, lending, make_book):
    book = make_book(quantity=1)
    lending.borrow(book.id, "Alice", **borrow_dates())

    with pytest.raises(RejectedError, match="not available"):
        lending.borrow(book.id, "Bob", **borrow_dates())

    assert book.available_quantity == 0
    assert active_count(db, book.id) == 1
    assert_inventory_consistent(db)


def test_borrow_with_return_date_before_borrow_date_is_rejected(db, lending, make_book):
    book = make_book(quantity=1)

    with pytest.raises(RejectedError):
        lending.borrow(
            book.id,
            "Alice",
            borrow_date=datetime(2024, 2, 1),
            expected_return_date=datetime(2024, 1, 1),
        )

    assert book.available_quantity == 1
    assert active_count(db, book.id) == 0


def test_borrow_then_return_restores_availability(db, lending, make_book):
    book = make_book(quantity=2)

    borrowed = lending.borrow(book.id, "Alice", **borrow_dates())
    returned = lending.return_book(
        book.id, datetime(2024, 1, 10), condition=BookCondition.EXCELLENT, notes="Fine"
    )

    assert returned.id == borrowed.id
    assert returned.status == BorrowStatus.RETURNED
    assert returned.actual_return_date == datetime(2024, 1, 10)
    assert returned.condition == BookCondition.EXCELLENT
    assert returned.notes == "Fine"
    assert book.available_quantity == 2
    assert_inventory_consistent(db)


def test_return_picks_most_recently_borrowed_record(db, lending, make_book):
    book = make_book(quantity=3)
    older = lending.borrow(book.id, "Alice", **borrow_dates(day=1))
    newer = lending.borrow(book.id, "Bob", **borrow_dates(day=5))

    returned = lending.return_book(book.id, datetime(2024, 1, 20))

    assert returned.id == newer.id
    db.refresh(older)
    assert older.status == BorrowStatus.BORROWED


def test_return_without_active_borrow(lending, make_book):
    book = make_book(quantity=1)

    with pytest.raises(NotFoundError, match="No active borrow record"):
        lending.return_book(book.id, datetime(2024, 1, 10))


def test_return_unknown_book(lending):
    with pytest.raises(NotFoundError, match="Book not found"):
        lending.return_book("no-such-book", datetime(2024, 1, 10))


def test_returned_record_is_not_returned_twice(db, lending, make_book):
    book = make_book(quantity=1)
    lending.borrow(book.id, "Alice", **borrow_dates())
    lending.return_book(book.id, datetime(2024, 1, 10))

    with pytest.raises(NotFoundError):
        lending.return_book(book.id, datetime(2024, 1, 11))

    assert book.available_quantity == 1
    assert_inventory_consistent(db)


def test_lifecycle_scenario(db, lending, make_book):
    book = make_book(quantity=3)

    lending.borrow(book.id, "Alice", **borrow_dates(day=1))
    assert book.available_quantity == 2
    assert active_count(db, book.id) == 1

    second = lending.borrow(book.id, "Bob", **borrow_dates(day=2))
    assert book.available_quantity == 1

    returned = lending.return_book(book.id, datetime(2024, 1, 15), condition=BookCondition.GOOD)
    assert returned.id == second.id
    assert returned.condition == BookCondition.GOOD
    assert book.available_quantity == 2

    # one copy still out: 1 - 1 == 0 available is allowed
    lending.change_quantity(book.id, 1)
    assert book.quantity == 1
    assert book.available_quantity == 0

    with pytest.raises(RejectedError):
        lending.change_quantity(book.id, 0)

    assert_inventory_consistent(db)


def test_quantity_reduction_boundary(db, lending, make_book):
    book = make_book(quantity=5)
    for day in (1, 2, 3):
        lending.borrow(book.id, f"Borrower {day}", **borrow_dates(day=day))
    assert book.available_quantity == 2

    updated = lending.change_quantity(book.id, 3)
    assert updated.quantity == 3
    assert updated.available_quantity == 0

    with pytest.raises(RejectedError, match="below borrowed amount"):
        lending.change_quantity(book.id, 2)

    assert book.quantity == 3
    assert_inventory_consistent(db)


def test_change_quantity_increase(db, lending, make_book):
    book = make_book(quantity=2)
    lending.borrow(book.id, "Alice", **borrow_dates())

    lending.change_quantity(book.id, 6)

    assert book.quantity == 6
    assert book.available_quantity == 5
    assert_inventory_consistent(db)


def test_change_quantity_unknown_book(lending):
    with pytest.raises(NotFoundError):
        lending.change_quantity("no-such-book", 3)


def test_remove_book_guarded_by_active_borrows(db, lending, make_book):
    book = make_book(quantity=1)
    book_id = book.id
    lending.borrow(book_id, "Alice", **borrow_dates())

    with pytest.raises(RejectedError, match="active borrows"):
        lending.remove_book(book_id)
    assert db.get(Book, book_id) is not None

    lending.return_book(book_id, datetime(2024, 1, 10))
    lending.remove_book(book_id)

    db.commit()
    assert db.get(Book, book_id) is None
    assert lending.records.list_by_book(book_id) == []


def test_remove_unknown_book(lending):
    with pytest.raises(NotFoundError):
        lending.remove_book("no-such-book")


def test_borrow_history_most_recent_first(lending, make_book):
    book = make_book(quantity=3)
    for day in (5, 1, 3):
        lending.borrow(book.id, f"Borrower {day}", **borrow_dates(day=day))

    history = lending.get_borrow_history(book.id)

    assert [record.borrow_date.day for record in history] == [5, 3, 1]


def test_borrow_history_unknown_book(lending):
    with pytest.raises(NotFoundError):
        lending.get_borrow_history("no-such-book")


def test_active_and_returned_listings(lending, make_book):
    gatsby = make_book(quantity=2)
    ulysses = make_book(quantity=1, title="Ulysses")
    lending.borrow(gatsby.id, "Alice", **borrow_dates(day=1))
    lending.borrow(ulysses.id, "Bob", **borrow_dates(day=2))
    lending.borrow(gatsby.id, "Carol", **borrow_dates(day=3))
    lending.return_book(ulysses.id, datetime(2024, 1, 9))

    active = lending.list_active_borrows()
    returned = lending.list_returned()

    assert [record.borrower_name for record in active] == ["Carol", "Alice"]
    assert all(record.book.title == "The Great Gatsby" for record in active)
    assert [record.borrower_name for record in returned] == ["Bob"]
    assert returned[0].book.title == "Ulysses"


def test_overdue_is_derived_not_stored(lending, make_book):
    book = make_book(quantity=2)
    late = lending.borrow(
        book.id,
        "Alice",
        borrow_date=datetime(2024, 1, 1),
        expected_return_date=datetime(2024, 1, 15),
    )
    lending.borrow(
        book.id,
        "Bob",
        borrow_date=datetime(2024, 1, 10),
        expected_return_date=datetime(2024, 3, 1),
    )

    overdue = lending.list_overdue(now=datetime(2024, 2, 1))

    assert [record.id for record in overdue] == [late.id]
    assert late.is_overdue(now=datetime(2024, 2, 1))
    assert late.status == BorrowStatus.BORROWED


def _run_concurrently(count, action):
    """Run action(session, index) in ``count`` threads released together."""
    barrier = threading.Barrier(count)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker(index):
        session = TestingSessionLocal()
        try:
            barrier.wait()
            action(session, index)
            outcome = "ok"
        except RejectedError:
            outcome = "rejected"
        except NotFoundError:
            outcome = "not_found"
        except Exception as exc:
            outcome = repr(exc)
        finally:
            session.close()
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return sorted(outcomes)


def test_two_concurrent_borrows_of_last_copy(db, make_book):
    book_id = make_book(quantity=1).id

    outcomes = _run_concurrently(
        2,
        lambda session, i: LendingEngine(session).borrow(
            book_id, f"Borrower {i}", **borrow_dates()
        ),
    )

    assert outcomes == ["ok", "rejected"]
    db.commit()
    assert db.get(Book, book_id).available_quantity == 0
    assert active_count(db, book_id) == 1
    assert_inventory_consistent(db)


def test_many_concurrent_borrows_never_oversell(db, make_book):
    book_id = make_book(quantity=3).id

    outcomes = _run_concurrently(
        8,
        lambda session, i: LendingEngine(session).borrow(
            book_id, f"Borrower {i}", **borrow_dates()
        ),
    )

    assert outcomes.count("ok") == 3
    assert outcomes.count("rejected") == 5
    db.commit()
    assert active_count(db, book_id) == 3
    assert_inventory_consistent(db)


def test_concurrent_returns_of_single_borrow(db, lending, make_book):
    book = make_book(quantity=1)
    book_id = book.id
    lending.borrow(book_id, "Alice", **borrow_dates())

    outcomes = _run_concurrently(
        2,
        lambda session, i: LendingEngine(session).return_book(book_id, datetime(2024, 1, 10)),
    )

    assert outcomes == ["not_found", "ok"]
    db.commit()
    assert db.get(Book, book_id).available_quantity == 1
    assert_inventory_consistent(db)
