import re
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from library_lending.models import BookCondition, BorrowStatus, utcnow


# ISBN-10 / ISBN-13, optionally prefixed "ISBN", with or without hyphen/space
# separators between the groups.
ISBN_PATTERN = re.compile(
    r"^(?:ISBN(?:-1[03])?:? )?(?=[0-9X]{10}$|(?=(?:[0-9]+[- ]){3})[- 0-9X]{13}$"
    r"|97[89][0-9]{10}$|(?=(?:[0-9]+[- ]){4})[- 0-9]{17}$)"
    r"(?:97[89][- ]?)?[0-9]{1,5}[- ]?[0-9]+[- ]?[0-9]+[- ]?[0-9X]$"
)


ISBN_PREFIX = re.compile(r"^ISBN(?:-1[03])?:? ?")


def normalize_isbn(value: str) -> str:
    """Drop the "ISBN" prefix and group separators: 978-0-7432-7356-5 -> 9780743273565."""
    return ISBN_PREFIX.sub("", value.strip()).replace("-", "").replace(" ", "")


def validate_isbn(value: Optional[str]) -> Optional[str]:
    """Check the written form, return the compact form that is stored."""
    if value is None:
        return value
    value = value.strip()
    if not ISBN_PATTERN.match(value):
        raise ValueError("Invalid ISBN format")
    return normalize_isbn(value)


def max_publication_year() -> int:
    return utcnow().year + 1


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored naive UTC; aware inputs are converted."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class BookBase(BaseModel):
    """Base schema with the descriptive book fields."""

    title: str = Field(..., min_length=1, max_length=500)
    author: str = Field(..., min_length=1, max_length=200)
    isbn: str = Field(..., min_length=10, max_length=20)
    year: int = Field(..., ge=1000)
    description: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    publisher: Optional[str] = Field(None, min_length=1, max_length=200)
    language: Optional[str] = Field("Thai", min_length=1, max_length=50)
    pages: Optional[int] = Field(None, ge=1)
    cover_image: Optional[str] = None

    @field_validator("isbn")
    @classmethod
    def _isbn_format(cls, value):
        return validate_isbn(value)

    @field_validator("year")
    @classmethod
    def _year_not_in_future(cls, value):
        if value > max_publication_year():
            raise ValueError(f"year must be at most {max_publication_year()}")
        return value


class BookCreate(BookBase):
    """
    Schema for creating a new book.

    available_quantity is not accepted; it starts equal to quantity.
    """

    quantity: int = Field(..., ge=1)


class BookUpdate(BaseModel):
    """
    Schema for updating a book.

    All fields are optional to support partial updates. available_quantity is
    deliberately absent: it only moves through borrowing, returning, quantity
    changes and reconciliation.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    author: Optional[str] = Field(None, min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, min_length=10, max_length=20)
    year: Optional[int] = Field(None, ge=1000)
    quantity: Optional[int] = Field(None, ge=1)
    description: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    publisher: Optional[str] = Field(None, min_length=1, max_length=200)
    language: Optional[str] = Field(None, min_length=1, max_length=50)
    pages: Optional[int] = Field(None, ge=1)

    @field_validator("title", "author", "isbn", "year", "quantity", mode="before")
    @classmethod
    def _required_column_not_null(cls, value):
        # omit the field to leave it unchanged
        if value is None:
            raise ValueError("field cannot be null")
        return value

    @field_validator("isbn")
    @classmethod
    def _isbn_format(cls, value):
        return validate_isbn(value)

    @field_validator("year")
    @classmethod
    def _year_not_in_future(cls, value):
        if value is not None and value > max_publication_year():
            raise ValueError(f"year must be at most {max_publication_year()}")
        return value


class CoverImageUpdate(BaseModel):
    cover_image: str = Field(..., min_length=1)


class Book(BookBase):
    """Schema for book responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    quantity: int
    available_quantity: int
    created_at: datetime
    updated_at: datetime


class BookSearch(BaseModel):
    """Catalog search filters, pagination and ordering."""

    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    category: Optional[str] = None
    year: Optional[int] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
    sort_by: Literal["title", "author", "year", "created_at"] = "title"
    sort_order: Literal["asc", "desc"] = "asc"


class BookPage(BaseModel):
    items: List[Book]
    total: int
    page: int
    limit: int
    total_pages: int


class BorrowRequest(BaseModel):
    """
    Schema for borrowing a copy of a book.

    book_id comes from the URL path.
    """

    borrower_name: str = Field(..., min_length=1, max_length=200)
    borrower_email: Optional[str] = Field(None, min_length=1, max_length=200)
    borrow_date: datetime
    expected_return_date: datetime

    @field_validator("borrow_date", "expected_return_date")
    @classmethod
    def _naive_utc(cls, value):
        return to_naive_utc(value)

    @model_validator(mode="after")
    def _return_not_before_borrow(self):
        if self.expected_return_date < self.borrow_date:
            raise ValueError("expected_return_date must not be before borrow_date")
        return self


class ReturnRequest(BaseModel):
    """Schema for returning the most recently borrowed copy of a book."""

    return_date: datetime
    condition: Optional[BookCondition] = None
    notes: Optional[str] = None

    @field_validator("return_date")
    @classmethod
    def _naive_utc(cls, value):
        return to_naive_utc(value)


class QuantityChange(BaseModel):
    quantity: int = Field(..., ge=1)


class BorrowRecord(BaseModel):
    """
    Schema for borrow record responses.

    is_overdue is derived at serialisation time: an active record whose
    expected return date has passed.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    book_id: str
    borrower_name: str
    borrower_email: Optional[str] = None
    borrow_date: datetime
    expected_return_date: datetime
    actual_return_date: Optional[datetime] = None
    condition: Optional[BookCondition] = None
    notes: Optional[str] = None
    status: BorrowStatus
    is_overdue: bool = False
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="before")
    @classmethod
    def _derive_overdue(cls, data):
        is_overdue = getattr(data, "is_overdue", None)
        if not callable(is_overdue):
            return data
        fields = {
            name: getattr(data, name)
            for name in cls.model_fields
            if name != "is_overdue" and hasattr(data, name)
        }
        fields["is_overdue"] = is_overdue()
        return fields


class BorrowRecordWithBook(BorrowRecord):
    """Borrow record joined with its book, used by the admin listings."""

    book: Book


class ReconcileResult(BaseModel):
    corrected_book_ids: List[str]
