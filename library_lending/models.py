import enum
import uuid
from datetime import datetime, timezone

from library_lending.database import Base
from sqlalchemy.orm import relationship
from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)


def utcnow() -> datetime:
    """Naive UTC timestamp; all stored datetimes are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class BorrowStatus(str, enum.Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"
    OVERDUE = "overdue"


class BookCondition(str, enum.Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class Book(Base):
    """
    Book model representing a catalogued title and its copies.

    quantity is the number of owned copies; available_quantity is the number
    currently loanable. available_quantity is denormalised from the borrow
    records and must always equal quantity minus the count of borrowed
    records for the book. Only the lending engine and the reconciler write it.
    """

    __tablename__ = "books"

    id = Column(String(36), primary_key=True, default=_new_id)
    title = Column(String(500), nullable=False, index=True)
    author = Column(String(200), nullable=False, index=True)
    isbn = Column(String(20), unique=True, nullable=False, index=True)
    year = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    available_quantity = Column(Integer, nullable=False, default=1)

    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    publisher = Column(String(200), nullable=True)
    language = Column(String(50), nullable=True, default="Thai")
    pages = Column(Integer, nullable=True)
    cover_image = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    borrow_records = relationship(
        "BorrowRecord",
        back_populates="book",
        cascade="all, delete-orphan",
    )

    @property
    def borrowed_count(self) -> int:
        return self.quantity - self.available_quantity


class BorrowRecord(Base):
    """
    BorrowRecord model representing one loan of one copy of a book.

    Business Logic:
    - status moves borrowed -> returned exactly once
    - actual_return_date and condition are only set by a return
    - overdue is never stored by the engine; see is_overdue()
    """

    __tablename__ = "borrow_records"

    id = Column(String(36), primary_key=True, default=_new_id)
    book_id = Column(
        String(36),
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    borrower_name = Column(String(200), nullable=False)
    borrower_email = Column(String(200), nullable=True)
    borrow_date = Column(DateTime, nullable=False)
    expected_return_date = Column(DateTime, nullable=False)
    actual_return_date = Column(DateTime, nullable=True)
    condition = Column(
        Enum(BookCondition, native_enum=False, values_callable=_enum_values),
        nullable=True,
    )
    notes = Column(Text, nullable=True)
    status = Column(
        Enum(BorrowStatus, native_enum=False, values_callable=_enum_values),
        default=BorrowStatus.BORROWED,
        nullable=False,
        index=True,
    )

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    book = relationship("Book", back_populates="borrow_records")

    @property
    def is_active(self) -> bool:
        return self.status == BorrowStatus.BORROWED

    def is_overdue(self, now=None) -> bool:
        if not self.is_active:
            return False
        return self.expected_return_date < (now or utcnow())
