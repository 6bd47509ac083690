import logging
import math

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from library_lending import schemas
from library_lending.database import unit_of_work
from library_lending.errors import ConflictError, NotFoundError
from library_lending.lending import LendingEngine
from library_lending.models import Book
from library_lending.stores import BookStore


logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "title": Book.title,
    "author": Book.author,
    "year": Book.year,
    "created_at": Book.created_at,
}


def is_isbn_conflict(exc: IntegrityError) -> bool:
    """True when the unique index on books.isbn rejected the write."""
    message = str(exc.orig).lower()
    return "isbn" in message and ("unique" in message or "duplicate" in message)


class CatalogService:
    """
    Book creation, lookup, update and search.

    Business Logic:
    - ISBN must be unique across all books (ConflictError)
    - available_quantity starts equal to quantity and is never set directly;
      quantity changes are delegated to the lending engine
    """

    def __init__(self, db: Session):
        self.db = db
        self.books = BookStore(db)
        self.lending = LendingEngine(db)

    def get_book(self, book_id: str) -> Book:
        book = self.books.get(book_id)
        if book is None:
            raise NotFoundError("Book not found")
        return book

    def create_book(self, data: schemas.BookCreate) -> Book:
        values = data.model_dump()
        try:
            with unit_of_work(self.db):
                if self.books.get_by_isbn(data.isbn) is not None:
                    raise ConflictError("Book with this ISBN already exists")
                book = self.books.add(
                    Book(**values, available_quantity=values["quantity"])
                )
        except IntegrityError as exc:
            if not is_isbn_conflict(exc):
                raise
            raise ConflictError("Book with this ISBN already exists")

        logger.info("Book %s created (isbn %s, %s copies)", book.id, book.isbn, book.quantity)
        return book

    def update_book(self, book_id: str, data: schemas.BookUpdate) -> Book:
        """
        Partial update. A quantity change keeps available_quantity consistent
        with the number of borrowed copies (RejectedError if it would go
        negative).
        """
        update_data = data.model_dump(exclude_unset=True)
        new_quantity = update_data.pop("quantity", None)

        try:
            with unit_of_work(self.db):
                book = self.books.get_for_update(book_id)
                if book is None:
                    raise NotFoundError("Book not found")

                if "isbn" in update_data and update_data["isbn"] != book.isbn:
                    if self.books.get_by_isbn(update_data["isbn"]) is not None:
                        raise ConflictError("Book with this ISBN already exists")

                if new_quantity is not None and new_quantity != book.quantity:
                    self.lending.apply_quantity_change(book, new_quantity)

                for key, value in update_data.items():
                    setattr(book, key, value)
        except IntegrityError as exc:
            if not is_isbn_conflict(exc):
                raise
            raise ConflictError("Book with this ISBN already exists")

        self.db.refresh(book)
        return book

    def set_cover_image(self, book_id: str, cover_image: str) -> Book:
        with unit_of_work(self.db):
            book = self.books.get_for_update(book_id)
            if book is None:
                raise NotFoundError("Book not found")
            book.cover_image = cover_image
        self.db.refresh(book)
        return book

    def search_books(self, search: schemas.BookSearch) -> dict:
        """
        Substring filters on title, author, isbn and category, exact year,
        sorted and paginated.
        """
        query = select(Book)
        for name in ("title", "author", "isbn", "category"):
            value = getattr(search, name)
            if value and name == "isbn":
                value = schemas.normalize_isbn(value)
            if value:
                query = query.where(getattr(Book, name).ilike(f"%{value}%"))
        if search.year is not None:
            query = query.where(Book.year == search.year)

        total = self.db.execute(
            select(func.count()).select_from(query.subquery())
        ).scalar_one()

        column = SORT_COLUMNS[search.sort_by]
        order = column.desc() if search.sort_order == "desc" else column.asc()
        query = (
            query.order_by(order, Book.id)
            .offset((search.page - 1) * search.limit)
            .limit(search.limit)
        )
        items = list(self.db.execute(query).scalars())

        return {
            "items": items,
            "total": total,
            "page": search.page,
            "limit": search.limit,
            "total_pages": math.ceil(total / search.limit),
        }
