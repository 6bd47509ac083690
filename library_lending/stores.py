from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from library_lending.models import Book, BookCondition, BorrowRecord, BorrowStatus, utcnow


class BookStore:
    """
    Book catalog store over a SQLAlchemy session.

    Stores never commit: the caller owns the unit of work. Counter updates are
    issued as conditional UPDATE statements so the check and the write happen
    in the database under the row's write lock. They bypass the identity map
    (synchronize_session=False), so Book instances already loaded in the
    session are stale until the caller commits or refreshes them.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, book_id: str) -> Optional[Book]:
        return self.db.get(Book, book_id)

    def get_for_update(self, book_id: str) -> Optional[Book]:
        stmt = (
            select(Book)
            .where(Book.id == book_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_isbn(self, isbn: str) -> Optional[Book]:
        return self.db.execute(select(Book).where(Book.isbn == isbn)).scalar_one_or_none()

    def list_ids(self) -> List[str]:
        return list(self.db.execute(select(Book.id).order_by(Book.created_at)).scalars())

    def add(self, book: Book) -> Book:
        self.db.add(book)
        self.db.flush()
        return book

    def delete(self, book: Book):
        self.db.delete(book)
        self.db.flush()

    def _update_counters(self, *criteria, **values) -> bool:
        stmt = (
            update(Book)
            .where(*criteria)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def try_decrement_available(self, book_id: str) -> bool:
        """Take one copy if any is left. False means none was available (or no such book)."""
        return self._update_counters(
            Book.id == book_id,
            Book.available_quantity > 0,
            available_quantity=Book.available_quantity - 1,
        )

    def increment_available(self, book_id: str) -> bool:
        """Give one copy back. Never raises available_quantity above quantity."""
        return self._update_counters(
            Book.id == book_id,
            Book.available_quantity < Book.quantity,
            available_quantity=Book.available_quantity + 1,
        )

    def set_quantity_if_unchanged(
        self,
        book_id: str,
        seen_quantity: int,
        seen_available: int,
        new_quantity: int,
        new_available: int,
    ) -> bool:
        return self._update_counters(
            Book.id == book_id,
            Book.quantity == seen_quantity,
            Book.available_quantity == seen_available,
            quantity=new_quantity,
            available_quantity=new_available,
        )

    def set_available(self, book_id: str, available_quantity: int) -> bool:
        return self._update_counters(
            Book.id == book_id, available_quantity=available_quantity
        )


class BorrowRecordStore:
    """Borrow record store over a SQLAlchemy session. Never commits."""

    def __init__(self, db: Session):
        self.db = db

    def add(self, record: BorrowRecord) -> BorrowRecord:
        self.db.add(record)
        self.db.flush()
        return record

    def list_by_book(self, book_id: str) -> List[BorrowRecord]:
        stmt = (
            select(BorrowRecord)
            .where(BorrowRecord.book_id == book_id)
            .order_by(BorrowRecord.borrow_date.desc(), BorrowRecord.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars())

    def latest_active_for_book(self, book_id: str) -> Optional[BorrowRecord]:
        stmt = (
            select(BorrowRecord)
            .where(
                BorrowRecord.book_id == book_id,
                BorrowRecord.status == BorrowStatus.BORROWED,
            )
            .order_by(BorrowRecord.borrow_date.desc(), BorrowRecord.created_at.desc())
            .limit(1)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def count_active(self, book_id: str) -> int:
        stmt = select(func.count(BorrowRecord.id)).where(
            BorrowRecord.book_id == book_id,
            BorrowRecord.status == BorrowStatus.BORROWED,
        )
        return self.db.execute(stmt).scalar_one()

    def list_by_status(self, status: BorrowStatus, order_by) -> List[BorrowRecord]:
        stmt = (
            select(BorrowRecord)
            .options(joinedload(BorrowRecord.book))
            .where(BorrowRecord.status == status)
            .order_by(order_by)
        )
        return list(self.db.execute(stmt).scalars())

    def list_overdue(self, now: datetime) -> List[BorrowRecord]:
        stmt = (
            select(BorrowRecord)
            .options(joinedload(BorrowRecord.book))
            .where(
                BorrowRecord.status == BorrowStatus.BORROWED,
                BorrowRecord.expected_return_date < now,
            )
            .order_by(BorrowRecord.expected_return_date.asc())
        )
        return list(self.db.execute(stmt).scalars())

    def mark_returned(
        self,
        record_id: str,
        return_date: datetime,
        condition: Optional[BookCondition],
        notes: Optional[str],
    ) -> bool:
        """borrowed -> returned, only if the record is still borrowed."""
        stmt = (
            update(BorrowRecord)
            .where(
                BorrowRecord.id == record_id,
                BorrowRecord.status == BorrowStatus.BORROWED,
            )
            .values(
                status=BorrowStatus.RETURNED,
                actual_return_date=return_date,
                condition=condition,
                notes=notes,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1
