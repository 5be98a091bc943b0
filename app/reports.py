"""
Read-only reporting over the record store.

Every function takes a session, never writes, and returns a Result
carrying a response schema. Aggregates are computed by the database
through grouped sub-queries joined back onto books.
"""
import math
import logging
from functools import wraps
from collections import defaultdict

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from app import models, schemas
from app.charges import calculate_charge
from app.config import COVER_IMAGE_NAME
from app.errors import ErrorKind, Result, failure, success


logger = logging.getLogger(__name__)


def _store_guarded(report):
    """Turn store failures inside a report into a StoreError result."""

    @wraps(report)
    def wrapper(*args, **kwargs):
        try:
            return report(*args, **kwargs)
        except SQLAlchemyError:
            logger.exception("Record store failure in %s", report.__name__)
            return failure(ErrorKind.STORE_ERROR)

    return wrapper


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _criteria_clause(criteria: schemas.BookSearchCriteria):
    clauses = []
    if criteria.book_code:
        clauses.append(models.Book.book_code == criteria.book_code)
    if criteria.name:
        clauses.append(
            models.Book.name.ilike(f"%{_escape_like(criteria.name)}%", escape="\\")
        )
    return or_(*clauses) if clauses else None


def _rating_stats(db: Session):
    return (
        db.query(
            models.BookRating.book_id.label("book_id"),
            func.avg(models.BookRating.rating).label("average"),
        )
        .group_by(models.BookRating.book_id)
        .subquery()
    )


def _review_stats(db: Session):
    return (
        db.query(
            models.BookReview.book_id.label("book_id"),
            func.count(models.BookReview.id).label("total"),
        )
        .group_by(models.BookReview.book_id)
        .subquery()
    )


def _cover_images(db: Session, book_ids):
    covers = defaultdict(list)
    if not book_ids:
        return covers
    rows = (
        db.query(models.BookGallery)
        .filter(
            models.BookGallery.book_id.in_(book_ids),
            models.BookGallery.image_name == COVER_IMAGE_NAME,
        )
        .all()
    )
    for row in rows:
        covers[row.book_id].append(schemas.GalleryImage.model_validate(row))
    return covers


def _count_active_books(db: Session) -> int:
    return (
        db.query(func.count(models.Book.id))
        .filter(models.Book.deleted_at.is_(None))
        .scalar()
    )


def _find_user(db: Session, email: str):
    return (
        db.query(models.User)
        .filter(models.User.email == email, models.User.deleted_at.is_(None))
        .first()
    )


def _find_book(db: Session, book_code: str):
    return (
        db.query(models.Book)
        .filter(models.Book.book_code == book_code, models.Book.deleted_at.is_(None))
        .first()
    )


def _reviewer_name(user):
    return f"{user.first_name} {user.last_name}" if user else None


@_store_guarded
def search_books(
    db: Session, criteria: schemas.BookSearchCriteria, page: schemas.PageParams
) -> Result[schemas.BookSearchPage]:
    """
    Search active books by business ID and/or name fragment.

    Business Logic:
    1. An empty catalog is ErrorCountingBooks
    2. A filter matching no book is BookNotFound
    3. A page beyond the matching page count is InvalidPageNumber

    Internal Working:
    - Rating averages and review counts are grouped sub-queries outer
      joined onto books; a book with no ratings averages 0
    - Cover images are fetched for the page's books in one query
    - Rows are ordered by book_code so pages are stable
    """
    if not _count_active_books(db):
        return failure(ErrorKind.ERROR_COUNTING_BOOKS)

    clause = _criteria_clause(criteria)
    matching = db.query(func.count(models.Book.id)).filter(models.Book.deleted_at.is_(None))
    if clause is not None:
        matching = matching.filter(clause)
    total = matching.scalar()
    if not total:
        return failure(ErrorKind.BOOK_NOT_FOUND)

    total_pages = math.ceil(total / page.page_size)
    if page.page > total_pages:
        return failure(ErrorKind.INVALID_PAGE_NUMBER)

    ratings = _rating_stats(db)
    reviews = _review_stats(db)
    query = (
        db.query(
            models.Book,
            func.coalesce(ratings.c.average, 0).label("rating"),
            func.coalesce(reviews.c.total, 0).label("review_count"),
        )
        .outerjoin(ratings, ratings.c.book_id == models.Book.id)
        .outerjoin(reviews, reviews.c.book_id == models.Book.id)
        .filter(models.Book.deleted_at.is_(None))
    )
    if clause is not None:
        query = query.filter(clause)
    rows = (
        query.order_by(models.Book.book_code)
        .offset(page.skip)
        .limit(page.page_size)
        .all()
    )
    if not rows:
        return failure(ErrorKind.BOOK_NOT_FOUND)

    covers = _cover_images(db, [book.id for book, _, _ in rows])
    searched = [
        schemas.SearchedBook(
            book_code=book.book_code,
            name=book.name,
            author=book.author,
            stock=book.quantity_available,
            rating=float(rating),
            review_count=int(review_count),
            publish_year=book.published_date.year if book.published_date else None,
            cover_image=covers[book.id],
        )
        for book, rating, review_count in rows
    ]
    return success(
        schemas.BookSearchPage(
            searched_books=searched,
            pagination=schemas.Pagination(
                page=page.page, page_size=page.page_size, total_pages=total_pages
            ),
        )
    )


@_store_guarded
def get_all_book_details(db: Session) -> Result[schemas.BookDetailsReport]:
    """
    Every active book with its cover, gallery, ratings and reviews.
    """
    books = (
        db.query(models.Book)
        .options(
            selectinload(models.Book.gallery),
            selectinload(models.Book.ratings),
            selectinload(models.Book.reviews).joinedload(models.BookReview.user),
        )
        .filter(models.Book.deleted_at.is_(None))
        .order_by(models.Book.book_code)
        .all()
    )
    if not books:
        return failure(ErrorKind.ERROR_COUNTING_BOOKS)

    details = []
    for book in books:
        gallery = [schemas.GalleryImage.model_validate(image) for image in book.gallery]
        scores = [entry.rating for entry in book.ratings]
        details.append(
            schemas.BookDetail(
                book_code=book.book_code,
                name=book.name,
                author=book.author,
                stock=book.quantity_available,
                published_date=book.published_date,
                cover_image=[image for image in gallery if image.image_name == COVER_IMAGE_NAME],
                gallery=gallery,
                ratings=[
                    schemas.RatingEntry(user_id=entry.user_id, rating=entry.rating)
                    for entry in book.ratings
                ],
                rating=sum(scores) / len(scores) if scores else 0.0,
                reviews=[
                    schemas.ReviewEntry(
                        user_id=entry.user_id,
                        reviewer=_reviewer_name(entry.user),
                        review=entry.review,
                        created_at=entry.created_at,
                    )
                    for entry in book.reviews
                ],
                review_count=len(book.reviews),
            )
        )
    return success(schemas.BookDetailsReport(books=details, total_books=len(details)))


@_store_guarded
def get_book_issue_history(db: Session, email: str) -> Result[schemas.IssueHistoryReport]:
    """
    All of a user's loans with used days and amount recomputed from the
    stored dates. Active loans have no submit date, days or amount.
    """
    user = _find_user(db, email)
    if user is None:
        return failure(ErrorKind.USER_NOT_FOUND)

    rows = (
        db.query(models.BookHistory, models.Book)
        .join(models.Book, models.Book.id == models.BookHistory.book_id)
        .filter(models.BookHistory.user_id == user.id)
        .order_by(models.BookHistory.issue_date, models.BookHistory.id)
        .all()
    )
    if not rows:
        return failure(ErrorKind.BOOK_HISTORY_NOT_FOUND)

    entries = []
    for history, book in rows:
        used_days = total_amount = None
        if history.submit_date is not None:
            charge = calculate_charge(history.issue_date, history.submit_date, book.charges)
            if not charge.ok:
                return charge
            used_days = charge.value.used_days
            total_amount = charge.value.total_amount
        entries.append(
            schemas.IssueHistoryEntry(
                book_code=book.book_code,
                book_name=book.name,
                charges_per_day=book.charges,
                issue_date=history.issue_date,
                submit_date=history.submit_date,
                used_days=used_days,
                total_amount=total_amount,
            )
        )
    return success(schemas.IssueHistoryReport(book_histories=entries))


@_store_guarded
def get_library_summary(db: Session, email: str) -> Result[schemas.LibrarySummary]:
    user = _find_user(db, email)
    if user is None:
        return failure(ErrorKind.USER_NOT_FOUND)

    issued = (
        db.query(func.count(models.BookHistory.id))
        .filter(models.BookHistory.user_id == user.id)
        .scalar()
    )
    submitted = (
        db.query(func.count(models.BookHistory.id))
        .filter(
            models.BookHistory.user_id == user.id,
            models.BookHistory.submit_date.isnot(None),
        )
        .scalar()
    )
    return success(
        schemas.LibrarySummary(
            total_issued_books=issued,
            total_submitted_books=submitted,
            total_not_submitted_books=issued - submitted,
            total_paid_amount=user.paid_amount,
            total_due_charges=user.due_charges,
        )
    )


@_store_guarded
def get_book_ratings_summary(db: Session, book_code: str) -> Result[schemas.RatingsSummary]:
    """
    Count, average and per-star distribution of a book's ratings.
    An unknown book and a book nobody rated are both NoRatingsFound.
    """
    book = _find_book(db, book_code)
    if book is None:
        return failure(ErrorKind.NO_RATINGS_FOUND)

    buckets = (
        db.query(models.BookRating.rating, func.count(models.BookRating.id))
        .filter(models.BookRating.book_id == book.id)
        .group_by(models.BookRating.rating)
        .all()
    )
    total = sum(count for _, count in buckets)
    if not total:
        return failure(ErrorKind.NO_RATINGS_FOUND)

    return success(
        schemas.RatingsSummary(
            book_code=book.book_code,
            total_ratings=total,
            average_rating=sum(stars * count for stars, count in buckets) / total,
            distribution={stars: count for stars, count in buckets},
        )
    )


@_store_guarded
def get_book_reviews_summary(
    db: Session, book_code: str, page: schemas.PageParams
) -> Result[schemas.ReviewsPage]:
    """
    One page of a book's reviews, oldest first.

    The review count is taken first and decides the page: an unknown book
    or one without reviews has zero pages, so any page is
    InvalidPageNumber. An empty slice is NoReviewsFound.
    """
    book = _find_book(db, book_code)
    book_id = book.id if book is not None else None

    total = (
        db.query(func.count(models.BookReview.id))
        .filter(models.BookReview.book_id == book_id)
        .scalar()
    )
    total_pages = math.ceil(total / page.page_size)
    if page.page > total_pages:
        return failure(ErrorKind.INVALID_PAGE_NUMBER)

    rows = (
        db.query(models.BookReview)
        .options(joinedload(models.BookReview.user))
        .filter(models.BookReview.book_id == book_id)
        .order_by(models.BookReview.created_at, models.BookReview.id)
        .offset(page.skip)
        .limit(page.page_size)
        .all()
    )
    if not rows:
        return failure(ErrorKind.NO_REVIEWS_FOUND)

    return success(
        schemas.ReviewsPage(
            reviews=[
                schemas.ReviewEntry(
                    user_id=row.user_id,
                    reviewer=_reviewer_name(row.user),
                    review=row.review,
                    created_at=row.created_at,
                )
                for row in rows
            ],
            pagination=schemas.Pagination(
                page=page.page, page_size=page.page_size, total_pages=total_pages
            ),
        )
    )
