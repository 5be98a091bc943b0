import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import models, schemas
from app.charges import utc_now
from app.errors import ErrorKind, Result, failure, success


logger = logging.getLogger(__name__)


def _save(db: Session, row, duplicate: ErrorKind) -> Result:
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


def create_admin(db: Session, admin: schemas.AdminCreate) -> Result[models.Admin]:
    result = _save(db, models.Admin(**admin.model_dump()), ErrorKind.USER_ALREADY_EXISTS)
    if result.ok:
        logger.info("Created admin id=%s email=%s", result.value.id, admin.email)
    return result


def create_user(db: Session, user: schemas.UserCreate) -> Result[models.User]:
    result = _save(db, models.User(**user.model_dump()), ErrorKind.USER_ALREADY_EXISTS)
    if result.ok:
        logger.info("Created user id=%s email=%s", result.value.id, user.email)
    return result


def create_book(db: Session, book: schemas.BookCreate) -> Result[models.Book]:
    """
    Add a title to the catalog, fully in stock.

    book_code must be unique across all books, soft-deleted ones included.
    """
    row = models.Book(**book.model_dump(), quantity_available=book.quantity_total)
    result = _save(db, row, ErrorKind.BOOK_ALREADY_EXISTS)
    if result.ok:
        logger.info("Created book id=%s code=%s", result.value.id, book.book_code)
    return result


def get_book(db: Session, book_code: str) -> Result[models.Book]:
    book = (
        db.query(models.Book)
        .filter(models.Book.book_code == book_code, models.Book.deleted_at.is_(None))
        .first()
    )
    if book is None:
        return failure(ErrorKind.BOOK_NOT_FOUND)
    return success(book)


def soft_delete_book(db: Session, book_code: str) -> Result[models.Book]:
    """
    Hide a book from the catalog while keeping it for history rows.
    Active loans of the book can still be returned afterwards.
    """
    found = get_book(db, book_code)
    if not found.ok:
        return found

    book = found.value
    book.deleted_at = utc_now()
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Record store failure")
        return failure(ErrorKind.STORE_ERROR)
    db.refresh(book)
    logger.info("Soft deleted book code=%s", book_code)
    return success(book)


def add_gallery_image(
    db: Session, book_code: str, image: schemas.GalleryImageCreate
) -> Result[models.BookGallery]:
    found = get_book(db, book_code)
    if not found.ok:
        return found

    row = models.BookGallery(book_id=found.value.id, **image.model_dump())
    result = _save(db, row, ErrorKind.STORE_ERROR)
    if result.ok:
        logger.info("Added image %s to book %s", image.image_name, book_code)
    return result
