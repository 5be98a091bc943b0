import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import models
from app.config import MAX_RATING, MIN_RATING
from app.errors import ErrorKind, Result, failure, success


logger = logging.getLogger(__name__)


def _resolve(db: Session, email: str, book_code: str):
    user = (
        db.query(models.User)
        .filter(models.User.email == email, models.User.deleted_at.is_(None))
        .first()
    )
    if user is None:
        return None, None, failure(ErrorKind.USER_NOT_FOUND)

    book = (
        db.query(models.Book)
        .filter(models.Book.book_code == book_code, models.Book.deleted_at.is_(None))
        .first()
    )
    if book is None:
        return user, None, failure(ErrorKind.BOOK_NOT_FOUND)
    return user, book, None


def _insert_once(db: Session, row, duplicate: ErrorKind) -> Result:
    """
    Insert a per-(user, book) row. The unique constraint settles races
    that slip past the existence check.
    """
    try:
        db.add(row)
        db.commit()
    except IntegrityError:
        db.rollback()
        return failure(duplicate)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Record store failure")
        return failure(ErrorKind.STORE_ERROR)
    db.refresh(row)
    return success(row)


def add_book_review(
    db: Session, email: str, book_code: str, review: str
) -> Result[models.BookReview]:
    """
    Let a user review a book once.

    Raises nothing; failures are UserNotFound, BookNotFound or
    ReviewAlreadyExist.
    """
    try:
        user, book, error = _resolve(db, email, book_code)
        if error is not None:
            return error

        existing = (
            db.query(models.BookReview)
            .filter(models.BookReview.user_id == user.id, models.BookReview.book_id == book.id)
            .first()
        )
    except SQLAlchemyError:
        logger.exception("Record store failure")
        return failure(ErrorKind.STORE_ERROR)

    if existing is not None:
        return failure(ErrorKind.REVIEW_ALREADY_EXIST)

    result = _insert_once(
        db,
        models.BookReview(user_id=user.id, book_id=book.id, review=review),
        ErrorKind.REVIEW_ALREADY_EXIST,
    )
    if result.ok:
        logger.info("Review added by %s for book %s", email, book_code)
    return result


def add_book_rating(
    db: Session, email: str, book_code: str, rating: int
) -> Result[models.BookRating]:
    """Let a user rate a book once, with a whole number of stars."""
    if not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        return failure(ErrorKind.INVALID_RATING, low=MIN_RATING, high=MAX_RATING)

    try:
        user, book, error = _resolve(db, email, book_code)
        if error is not None:
            return error

        existing = (
            db.query(models.BookRating)
            .filter(models.BookRating.user_id == user.id, models.BookRating.book_id == book.id)
            .first()
        )
    except SQLAlchemyError:
        logger.exception("Record store failure")
        return failure(ErrorKind.STORE_ERROR)

    if existing is not None:
        return failure(ErrorKind.RATING_ALREADY_EXIST)

    result = _insert_once(
        db,
        models.BookRating(user_id=user.id, book_id=book.id, rating=rating),
        ErrorKind.RATING_ALREADY_EXIST,
    )
    if result.ok:
        logger.info("Rating %s added by %s for book %s", rating, email, book_code)
    return result
