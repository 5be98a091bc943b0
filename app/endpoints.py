from app import models
from app import schemas
from app import catalog, issuance, reports, reviews
from app.auth import require_admin, verify_api_key
from app.config import DEFAULT_PAGE_SIZE, configure_logging
from app.database import engine, get_db
from app.errors import Result

from typing import Optional
from contextlib import asynccontextmanager
from sqlalchemy.orm import Session
from fastapi import FastAPI, Depends, HTTPException, status, Query


configure_logging()


@asynccontextmanager
async def lifespan(_: FastAPI):
    """
    Open the record store at startup and release its connections at shutdown.
    """
    models.Base.metadata.create_all(bind=engine)
    yield
    engine.dispose()


app = FastAPI(
    title="Library Issuance API",
    description="Book issue/return accounting, reviews, ratings and library reports",
    version="1.0.0",
    lifespan=lifespan,
)


def unwrap(result: Result):
    """
    Translate a core Result into a response value or an HTTP error.

    The error kind decides the status code; the body carries both the
    machine-readable kind and the human-readable message.
    """
    if not result.ok:
        raise HTTPException(
            status_code=result.error.kind.status_code,
            detail=result.error.as_detail(),
        )
    return result.value


def page_params(
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=100),
) -> schemas.PageParams:
    return schemas.PageParams(page=page, page_size=page_size)


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.
    """
    return {"status": "healthy", "service": "library-api"}


# Admin plumbing


@app.post(
    "/admins",
    response_model=schemas.ApiResponse[schemas.Admin],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def create_admin(admin: schemas.AdminCreate, db: Session = Depends(get_db)):
    """
    Register an admin (requires API key only, so the first admin can be created).
    """
    created = unwrap(catalog.create_admin(db, admin))
    return {"data": schemas.Admin.model_validate(created)}


@app.post(
    "/users",
    response_model=schemas.ApiResponse[schemas.User],
    status_code=status.HTTP_201_CREATED,
)
async def create_user(
    user: schemas.UserCreate,
    db: Session = Depends(get_db),
    _: models.Admin = Depends(require_admin),
):
    created = unwrap(catalog.create_user(db, user))
    return {"data": schemas.User.model_validate(created)}


@app.post(
    "/books",
    response_model=schemas.ApiResponse[schemas.Book],
    status_code=status.HTTP_201_CREATED,
)
async def create_book(
    book: schemas.BookCreate,
    db: Session = Depends(get_db),
    _: models.Admin = Depends(require_admin),
):
    """
    Add a book to the catalog (requires an admin).

    Business Logic:
    - book_code must be unique
    - quantity_available starts equal to quantity_total
    """
    created = unwrap(catalog.create_book(db, book))
    return {"data": schemas.Book.model_validate(created)}


# Reports. Static /books/... paths are declared before /books/{book_code}.


@app.get("/books/search", response_model=schemas.ApiResponse[schemas.BookSearchPage])
async def search_books(
    book_code: Optional[str] = Query(None),
    name: Optional[str] = Query(None),
    page: schemas.PageParams = Depends(page_params),
    db: Session = Depends(get_db),
):
    """
    Search active books by business ID and/or case-insensitive name fragment.

    Internal Working:
    1. Query parameters become a BookSearchCriteria
    2. The reporting layer counts matches, validates the page, then runs
       the joined aggregate query for that page only
    3. Each result carries stock, average rating (0 when unrated),
       review count, publish year and cover image

    Raises:
        HTTPException: 404 BookNotFound, 400 InvalidPageNumber,
        500 ErrorCountingBooks when the catalog is empty
    """
    criteria = schemas.BookSearchCriteria(book_code=book_code, name=name)
    return {"data": unwrap(reports.search_books(db, criteria, page))}


@app.get("/books/details", response_model=schemas.ApiResponse[schemas.BookDetailsReport])
async def get_all_book_details(db: Session = Depends(get_db)):
    return {"data": unwrap(reports.get_all_book_details(db))}


@app.get("/books/{book_code}", response_model=schemas.ApiResponse[schemas.Book])
async def get_book(book_code: str, db: Session = Depends(get_db)):
    book = unwrap(catalog.get_book(db, book_code))
    return {"data": schemas.Book.model_validate(book)}


@app.delete("/books/{book_code}", response_model=schemas.ApiResponse[schemas.Book])
async def delete_book(
    book_code: str,
    db: Session = Depends(get_db),
    _: models.Admin = Depends(require_admin),
):
    """
    Soft delete a book. Its history stays intact and open loans can still be returned.
    """
    book = unwrap(catalog.soft_delete_book(db, book_code))
    return {"data": schemas.Book.model_validate(book), "message": "Book deleted(Soft)!"}


@app.post(
    "/books/{book_code}/gallery",
    response_model=schemas.ApiResponse[schemas.GalleryImage],
    status_code=status.HTTP_201_CREATED,
)
async def add_gallery_image(
    book_code: str,
    image: schemas.GalleryImageCreate,
    db: Session = Depends(get_db),
    _: models.Admin = Depends(require_admin),
):
    created = unwrap(catalog.add_gallery_image(db, book_code, image))
    return {"data": schemas.GalleryImage.model_validate(created)}


@app.get("/books/{book_code}/ratings", response_model=schemas.ApiResponse[schemas.RatingsSummary])
async def get_book_ratings_summary(book_code: str, db: Session = Depends(get_db)):
    return {"data": unwrap(reports.get_book_ratings_summary(db, book_code))}


@app.get("/books/{book_code}/reviews", response_model=schemas.ApiResponse[schemas.ReviewsPage])
async def get_book_reviews_summary(
    book_code: str,
    page: schemas.PageParams = Depends(page_params),
    db: Session = Depends(get_db),
):
    """
    One page of a book's reviews with page metadata.

    Raises:
        HTTPException: 400 InvalidPageNumber when the page is past the last one,
        which is every page for a book without reviews
    """
    return {
        "data": unwrap(reports.get_book_reviews_summary(db, book_code, page)),
        "message": "Successful",
    }


# Issuance


@app.post(
    "/issues",
    response_model=schemas.ApiResponse[schemas.BookHistory],
    status_code=status.HTTP_201_CREATED,
)
async def issue_book(
    request: schemas.IssueRequest,
    db: Session = Depends(get_db),
    admin: models.Admin = Depends(require_admin),
):
    """
    Issue a book to a user (requires an admin).

    Business Logic (first failed check wins):
    1. User exists and is active (404 UserNotFound)
    2. Book exists and is not deleted (404 BookNotFound)
    3. No outstanding due charges (400 OutstandingDueCharges)
    4. Fewer than five active loans (400 BookLimitExceeded)
    5. Not already holding this book (400 CannotIssueSameBook)
    6. A copy is in stock (400 BookOutOfStock)

    Returns:
        The created issuance record with submit_date null
    """
    history = unwrap(issuance.issue_book(db, request.email, request.book_code))
    return {
        "data": schemas.BookHistory.model_validate(history),
        "message": f"Issued by {admin.email}",
    }


@app.post("/issues/return", response_model=schemas.ApiResponse[schemas.ReturnReceipt])
async def return_book(
    request: schemas.ReturnRequest,
    db: Session = Depends(get_db),
    admin: models.Admin = Depends(require_admin),
):
    """
    Return an issued book and bill the user (requires an admin).

    Internal Working:
    1. The user's active loan of the book is located
    2. used days = ceil((submit - issue) / 1 day), charge = days * rate
    3. The loan is closed, stock goes back up by one, and the charge is
       added to the user's due charges in a single transaction

    Raises:
        HTTPException: 404 BookNotIssued, 400 SubmitDateInvalid
    """
    outcome = unwrap(
        issuance.return_book(db, request.email, request.book_code, request.submit_date)
    )
    receipt = schemas.ReturnReceipt(
        history=schemas.BookHistory.model_validate(outcome.history),
        used_days=outcome.breakdown.used_days,
        charges=outcome.breakdown.total_amount,
        due_charges=outcome.due_charges,
    )
    return {"data": receipt, "message": f"Returned to {admin.email}"}


# User activity


@app.post(
    "/users/{email}/reviews",
    response_model=schemas.ApiResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def add_book_review(
    email: str, review: schemas.ReviewCreate, db: Session = Depends(get_db)
):
    """
    Write a review for a book. Each user may review a given book once.
    """
    unwrap(reviews.add_book_review(db, email, review.book_code, review.review))
    return {"message": "Successful"}


@app.post(
    "/users/{email}/ratings",
    response_model=schemas.ApiResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def add_book_rating(
    email: str, rating: schemas.RatingCreate, db: Session = Depends(get_db)
):
    unwrap(reviews.add_book_rating(db, email, rating.book_code, rating.rating))
    return {"message": "Successful"}


@app.get("/users/{email}/history", response_model=schemas.ApiResponse[schemas.IssueHistoryReport])
async def get_book_issue_history(email: str, db: Session = Depends(get_db)):
    """
    A user's issue history with used days and amounts recomputed from the
    stored dates. Open loans report null submit date, days and amount.
    """
    return {"data": unwrap(reports.get_book_issue_history(db, email))}


@app.get("/users/{email}/summary", response_model=schemas.ApiResponse[schemas.LibrarySummary])
async def get_library_summary(email: str, db: Session = Depends(get_db)):
    return {"data": unwrap(reports.get_library_summary(db, email))}


if __name__ == "__main__":
    import os
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
