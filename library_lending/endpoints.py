import logging
from typing import List, Optional

from sqlalchemy.orm import Session
from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.responses import JSONResponse

from library_lending import models
from library_lending import schemas
from library_lending.auth import get_principal, require_admin
from library_lending.catalog import CatalogService
from library_lending.config import settings
from library_lending.database import engine, get_db
from library_lending.errors import ConflictError, LendingError, NotFoundError, RejectedError
from library_lending.lending import LendingEngine
from library_lending.reconciler import InventoryReconciler


logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Library Lending API",
    description="Book catalog with borrow/return tracking and inventory reconciliation",
    version="1.0.0",
)

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    RejectedError: status.HTTP_400_BAD_REQUEST,
    ConflictError: status.HTTP_409_CONFLICT,
}


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    """
    Map the error kinds raised by the catalog and lending operations to HTTP
    statuses, with the same {"detail": ...} body HTTPException produces.
    """
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


def get_catalog(db: Session = Depends(get_db)) -> CatalogService:
    return CatalogService(db)


def get_lending(db: Session = Depends(get_db)) -> LendingEngine:
    return LendingEngine(db)


def get_reconciler(db: Session = Depends(get_db)) -> InventoryReconciler:
    return InventoryReconciler(db)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring and load balancers."""
    return {"status": "healthy", "service": "library-lending"}


@app.post(
    "/books",
    response_model=schemas.Book,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_book(book: schemas.BookCreate, catalog: CatalogService = Depends(get_catalog)):
    """
    Create a new book (admin).

    Raises 409 if the ISBN already exists.
    """
    return catalog.create_book(book)


@app.get(
    "/books",
    response_model=schemas.BookPage,
    dependencies=[Depends(get_principal)],
)
def list_books(
    title: Optional[str] = Query(None),
    author: Optional[str] = Query(None),
    isbn: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    year: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = Query("title", pattern="^(title|author|year|created_at)$"),
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
    catalog: CatalogService = Depends(get_catalog),
):
    """Search the catalog with filters, sorting and pagination."""
    search = schemas.BookSearch(
        title=title,
        author=author,
        isbn=isbn,
        category=category,
        year=year,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return catalog.search_books(search)


@app.get(
    "/books/borrowed/list",
    response_model=List[schemas.BorrowRecordWithBook],
    dependencies=[Depends(require_admin)],
)
def list_borrowed(lending: LendingEngine = Depends(get_lending)):
    """Active borrows with their books, most recent borrow first (admin)."""
    return lending.list_active_borrows()


@app.get(
    "/books/returned/list",
    response_model=List[schemas.BorrowRecordWithBook],
    dependencies=[Depends(require_admin)],
)
def list_returned(lending: LendingEngine = Depends(get_lending)):
    """Returned borrows with their books, most recent return first (admin)."""
    return lending.list_returned()


@app.get(
    "/books/overdue/list",
    response_model=List[schemas.BorrowRecordWithBook],
    dependencies=[Depends(require_admin)],
)
def list_overdue(lending: LendingEngine = Depends(get_lending)):
    """Active borrows past their expected return date (admin)."""
    return lending.list_overdue()


@app.post(
    "/books/reconcile",
    response_model=schemas.ReconcileResult,
    dependencies=[Depends(require_admin)],
)
def reconcile_all(reconciler: InventoryReconciler = Depends(get_reconciler)):
    """Recompute available_quantity for every book from its borrow records (admin)."""
    return {"corrected_book_ids": reconciler.reconcile_all()}


@app.get(
    "/books/{book_id}",
    response_model=schemas.Book,
    dependencies=[Depends(get_principal)],
)
def get_book(book_id: str, catalog: CatalogService = Depends(get_catalog)):
    return catalog.get_book(book_id)


@app.patch(
    "/books/{book_id}",
    response_model=schemas.Book,
    dependencies=[Depends(require_admin)],
)
def update_book(
    book_id: str,
    book_update: schemas.BookUpdate,
    catalog: CatalogService = Depends(get_catalog),
):
    """
    Update a book's information (admin).

    Only provided fields are changed. Raises 409 on ISBN conflict, 400 if
    the quantity would drop below the number of borrowed copies.
    """
    return catalog.update_book(book_id, book_update)


@app.put(
    "/books/{book_id}/quantity",
    response_model=schemas.Book,
    dependencies=[Depends(require_admin)],
)
def change_quantity(
    book_id: str,
    change: schemas.QuantityChange,
    lending: LendingEngine = Depends(get_lending),
):
    return lending.change_quantity(book_id, change.quantity)


@app.put(
    "/books/{book_id}/cover",
    response_model=schemas.Book,
    dependencies=[Depends(require_admin)],
)
def set_cover(
    book_id: str,
    cover: schemas.CoverImageUpdate,
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.set_cover_image(book_id, cover.cover_image)


@app.delete(
    "/books/{book_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
def delete_book(book_id: str, lending: LendingEngine = Depends(get_lending)):
    """Delete a book (admin). Raises 400 while any copy is still borrowed."""
    lending.remove_book(book_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post(
    "/books/{book_id}/borrow",
    response_model=schemas.BorrowRecord,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(get_principal)],
)
def borrow_book(
    book_id: str,
    borrow: schemas.BorrowRequest,
    lending: LendingEngine = Depends(get_lending),
):
    """
    Borrow one copy of a book.

    Raises 404 if the book does not exist, 400 if no copy is available.
    """
    return lending.borrow(
        book_id,
        borrower_name=borrow.borrower_name,
        borrower_email=borrow.borrower_email,
        borrow_date=borrow.borrow_date,
        expected_return_date=borrow.expected_return_date,
    )


@app.post(
    "/books/{book_id}/return",
    response_model=schemas.BorrowRecord,
    dependencies=[Depends(get_principal)],
)
def return_book(
    book_id: str,
    returned: schemas.ReturnRequest,
    lending: LendingEngine = Depends(get_lending),
):
    """
    Return the most recently borrowed active copy of a book.

    Raises 404 if the book or an active borrow record does not exist.
    """
    return lending.return_book(
        book_id,
        return_date=returned.return_date,
        condition=returned.condition,
        notes=returned.notes,
    )


@app.get(
    "/books/{book_id}/borrow-history",
    response_model=List[schemas.BorrowRecord],
    dependencies=[Depends(require_admin)],
)
def borrow_history(book_id: str, lending: LendingEngine = Depends(get_lending)):
    """All borrow records of a book, most recent borrow first (admin)."""
    return lending.get_borrow_history(book_id)


@app.post(
    "/books/{book_id}/reconcile",
    response_model=schemas.Book,
    dependencies=[Depends(require_admin)],
)
def reconcile_book(book_id: str, reconciler: InventoryReconciler = Depends(get_reconciler)):
    """Recompute one book's available_quantity from its borrow records (admin)."""
    return reconciler.reconcile_one(book_id)
