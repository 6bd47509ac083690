from datetime import datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from library_lending.config import settings
from library_lending.database import Base, build_engine, get_db
from library_lending.endpoints import app
from library_lending.models import Book, BorrowRecord, BorrowStatus


SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = build_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """
    Override function for the database dependency.

    This replaces the normal get_db() with one that uses the test database.
    """
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def setup_database():
    """
    Create all tables before each test and drop them afterwards, so every test
    starts with an empty catalog.
    """
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"X-API-Key": settings.ADMIN_API_KEY}


@pytest.fixture
def user_headers():
    return {"X-API-Key": settings.USER_API_KEY}


@pytest.fixture
def make_book(db):
    """Insert a consistent book directly, bypassing the catalog service."""
    counter = {"n": 0}

    def _make_book(quantity=3, title="The Great Gatsby", isbn=None, **fields):
        counter["n"] += 1
        book = Book(
            title=title,
            author=fields.pop("author", "F. Scott Fitzgerald"),
            isbn=isbn or f"978000000{counter['n']:04d}",
            year=fields.pop("year", 1925),
            quantity=quantity,
            available_quantity=quantity,
            **fields,
        )
        db.add(book)
        db.commit()
        return book

    return _make_book


def borrow_dates(day=1):
    return {
        "borrow_date": datetime(2024, 1, day, 10, 0),
        "expected_return_date": datetime(2024, 2, day, 10, 0),
    }


def active_count(db, book_id):
    return db.execute(
        select(func.count(BorrowRecord.id)).where(
            BorrowRecord.book_id == book_id,
            BorrowRecord.status == BorrowStatus.BORROWED,
        )
    ).scalar_one()


def assert_inventory_consistent(db):
    """available_quantity == quantity - active borrows, for every book."""
    db.commit()
    for book in db.execute(select(Book)).scalars():
        assert book.available_quantity == book.quantity - active_count(db, book.id), book.title
