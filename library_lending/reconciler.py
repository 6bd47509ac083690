import logging
from typing import List

from sqlalchemy.orm import Session

from library_lending.database import unit_of_work
from library_lending.errors import NotFoundError
from library_lending.models import Book
from library_lending.stores import BookStore, BorrowRecordStore


logger = logging.getLogger(__name__)


def compute_available_quantity(quantity: int, active_borrows: int) -> int:
    """The only correct value of available_quantity for a book."""
    return quantity - active_borrows


class InventoryReconciler:
    """
    Repairs available_quantity drift by recomputing it from the borrow records.

    Each book is recomputed and written in its own unit of work with the book
    row locked, so a borrow or return on that book cannot interleave between
    the count and the write. Books already consistent are not written.
    """

    def __init__(self, db: Session):
        self.db = db
        self.books = BookStore(db)
        self.records = BorrowRecordStore(db)

    def recompute(self, book_id: str) -> bool:
        """
        Correct one book inside the caller's transaction. Returns True if the
        stored value had drifted and was rewritten.
        """
        book = self.books.get_for_update(book_id)
        if book is None:
            raise NotFoundError("Book not found")
        expected = compute_available_quantity(
            book.quantity, self.records.count_active(book_id)
        )
        if book.available_quantity == expected:
            return False
        logger.warning(
            "Correcting available_quantity of book %s: %s -> %s",
            book_id,
            book.available_quantity,
            expected,
        )
        self.books.set_available(book_id, expected)
        return True

    def reconcile_one(self, book_id: str) -> Book:
        with unit_of_work(self.db):
            self.recompute(book_id)
        return self.books.get(book_id)

    def reconcile_all(self) -> List[str]:
        """
        Reconcile every book. Returns the ids of the books that were corrected;
        an empty list means the catalog was already consistent.
        """
        corrected = []
        for book_id in self.books.list_ids():
            try:
                with unit_of_work(self.db):
                    changed = self.recompute(book_id)
            except NotFoundError:
                # deleted since the id list was read
                continue
            if changed:
                corrected.append(book_id)
        logger.info("Reconciliation finished, %d book(s) corrected", len(corrected))
        return corrected
