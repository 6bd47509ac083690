import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from library_lending.database import unit_of_work
from library_lending.errors import NotFoundError, RejectedError
from library_lending.models import Book, BookCondition, BorrowRecord, BorrowStatus, utcnow
from library_lending.reconciler import InventoryReconciler
from library_lending.stores import BookStore, BorrowRecordStore


logger = logging.getLogger(__name__)


class LendingEngine:
    """
    Borrow / return lifecycle for the books of the catalog.

    The engine is the only writer of Book.available_quantity in response to
    borrowing activity. Every mutating operation is one unit of work on the
    session: the availability check, the borrow record write and the counter
    write either all commit or all roll back. Counter changes are conditional
    UPDATE statements (e.g. "available_quantity - 1 WHERE available_quantity >
    0"), so two concurrent borrows of the last copy cannot both succeed.

    After every operation, for every book:

        available_quantity == quantity - count(records with status borrowed)

    Errors:
        NotFoundError: the book, or an active borrow record for it, is missing
        RejectedError: a business rule refused the operation
    """

    def __init__(self, db: Session):
        self.db = db
        self.books = BookStore(db)
        self.records = BorrowRecordStore(db)
        self.reconciler = InventoryReconciler(db)

    def _require_book(self, book_id: str) -> Book:
        book = self.books.get(book_id)
        if book is None:
            raise NotFoundError("Book not found")
        return book

    def borrow(
        self,
        book_id: str,
        borrower_name: str,
        borrow_date: datetime,
        expected_return_date: datetime,
        borrower_email: Optional[str] = None,
    ) -> BorrowRecord:
        """
        Lend one copy of a book.

        Availability is checked by the decrementing UPDATE itself, at commit
        time, not by an earlier read.

        Raises:
            NotFoundError: no such book
            RejectedError: no copy available, or the return date precedes
                the borrow date
        """
        if expected_return_date < borrow_date:
            raise RejectedError("Expected return date must not be before borrow date")

        with unit_of_work(self.db):
            if not self.books.try_decrement_available(book_id):
                self._require_book(book_id)
                logger.warning("Borrow of book %s rejected: no copies available", book_id)
                raise RejectedError("Book is not available for borrowing")

            record = self.records.add(
                BorrowRecord(
                    book_id=book_id,
                    borrower_name=borrower_name,
                    borrower_email=borrower_email,
                    borrow_date=borrow_date,
                    expected_return_date=expected_return_date,
                    status=BorrowStatus.BORROWED,
                )
            )

        logger.info("Book %s borrowed by %s (record %s)", book_id, borrower_name, record.id)
        return record

    def return_book(
        self,
        book_id: str,
        return_date: datetime,
        condition: Optional[BookCondition] = None,
        notes: Optional[str] = None,
    ) -> BorrowRecord:
        """
        Return the most recently borrowed active copy of a book.

        The record is chosen by latest borrow_date because no borrower is
        identified at return time; with several copies out this may not be
        the borrower who is actually returning.

        Raises:
            NotFoundError: no such book, or no active borrow record for it
        """
        with unit_of_work(self.db):
            self._require_book(book_id)
            record = self.records.latest_active_for_book(book_id)
            if record is None:
                raise NotFoundError("No active borrow record found for this book")

            if not self.records.mark_returned(record.id, return_date, condition, notes):
                raise NotFoundError("No active borrow record found for this book")

            if not self.books.increment_available(book_id):
                # Counter was already at quantity, so it had drifted.
                self.reconciler.recompute(book_id)

        self.db.refresh(record)
        logger.info("Book %s returned (record %s)", book_id, record.id)
        return record

    def apply_quantity_change(self, book: Book, new_quantity: int):
        """
        Set a new total copy count inside the caller's unit of work.

        ``book`` must have been loaded with its row locked in the current
        transaction (BookStore.get_for_update).
        """
        borrowed = book.borrowed_count
        new_available = new_quantity - borrowed
        if new_available < 0:
            logger.warning(
                "Quantity change of book %s to %s rejected: %s copies borrowed",
                book.id,
                new_quantity,
                borrowed,
            )
            raise RejectedError("Cannot reduce quantity below borrowed amount")

        if not self.books.set_quantity_if_unchanged(
            book.id, book.quantity, book.available_quantity, new_quantity, new_available
        ):
            raise RejectedError("Book was modified concurrently, retry the request")

        logger.info(
            "Book %s quantity %s -> %s (available %s)",
            book.id,
            book.quantity,
            new_quantity,
            new_available,
        )

    def change_quantity(self, book_id: str, new_quantity: int) -> Book:
        """
        Set the total number of copies of a book, keeping borrowed copies out.

        Raises:
            NotFoundError: no such book
            RejectedError: new_quantity is below the number of borrowed copies
        """
        if new_quantity < 1:
            raise RejectedError("Quantity must be at least 1")

        with unit_of_work(self.db):
            book = self.books.get_for_update(book_id)
            if book is None:
                raise NotFoundError("Book not found")
            self.apply_quantity_change(book, new_quantity)

        return self.books.get(book_id)

    def remove_book(self, book_id: str):
        """
        Delete a book and its (returned) borrow history.

        Raises:
            NotFoundError: no such book
            RejectedError: the book still has active borrows
        """
        with unit_of_work(self.db):
            book = self.books.get_for_update(book_id)
            if book is None:
                raise NotFoundError("Book not found")
            active = self.records.count_active(book_id)
            if active > 0:
                logger.warning("Delete of book %s rejected: %d active borrow(s)", book_id, active)
                raise RejectedError("Cannot delete book with active borrows")
            self.books.delete(book)

        logger.info("Book %s deleted", book_id)

    def get_borrow_history(self, book_id: str) -> List[BorrowRecord]:
        """All borrow records of a book, most recent borrow_date first."""
        self._require_book(book_id)
        return self.records.list_by_book(book_id)

    def list_active_borrows(self) -> List[BorrowRecord]:
        return self.records.list_by_status(
            BorrowStatus.BORROWED, BorrowRecord.borrow_date.desc()
        )

    def list_returned(self) -> List[BorrowRecord]:
        return self.records.list_by_status(
            BorrowStatus.RETURNED, BorrowRecord.actual_return_date.desc()
        )

    def list_overdue(self, now: Optional[datetime] = None) -> List[BorrowRecord]:
        """Active records whose expected return date has passed, oldest due first."""
        return self.records.list_overdue(now or utcnow())
