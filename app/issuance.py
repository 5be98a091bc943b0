import logging
from datetime import datetime
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import models
from app.charges import ChargeBreakdown, calculate_charge, to_naive_utc, utc_now
from app.config import MAX_ACTIVE_LOANS
from app.errors import ErrorKind, Result, failure, success
from app.locks import issuance_locks


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReturnOutcome:
    history: models.BookHistory
    breakdown: ChargeBreakdown
    due_charges: float


def _find_user(db: Session, email: str, for_update: bool = False, active_only: bool = True):
    query = db.query(models.User).filter(
        models.User.email == email, models.User.deleted_at.is_(None)
    )
    if active_only:
        query = query.filter(models.User.is_active.is_(True))
    if for_update:
        query = query.with_for_update()
    return query.first()


def _count_active_loans(db: Session, user_id: int) -> int:
    return (
        db.query(func.count(models.BookHistory.id))
        .filter(
            models.BookHistory.user_id == user_id,
            models.BookHistory.submit_date.is_(None),
        )
        .scalar()
    )


def _find_active_loan(db: Session, user_id: int, book_id: int):
    return (
        db.query(models.BookHistory)
        .filter(
            models.BookHistory.user_id == user_id,
            models.BookHistory.book_id == book_id,
            models.BookHistory.submit_date.is_(None),
        )
        .first()
    )


def _run_in_transaction(
    db: Session, operation, on_integrity_error: ErrorKind, finish=None
) -> Result:
    """
    Run one read-then-write operation as a single transaction.

    The operation returns a Result. A failed Result or any store error
    rolls back everything the operation wrote; a successful one commits.
    IntegrityError means a database constraint caught a conflicting
    concurrent write and is reported as on_integrity_error.

    finish, when given, maps the committed value to the final Result and
    may reload rows; store errors it raises are reported as StoreError.
    """
    try:
        result = operation()
        if not result.ok:
            db.rollback()
            logger.info("Operation rejected: %s", result.error.kind.value)
            return result
        db.commit()
        return finish(result.value) if finish else result
    except IntegrityError:
        db.rollback()
        logger.info("Constraint violation reported as %s", on_integrity_error.value)
        return failure(on_integrity_error)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Record store failure")
        return failure(ErrorKind.STORE_ERROR)


def issue_book(
    db: Session, email: str, book_code: str, now: Optional[datetime] = None
) -> Result[models.BookHistory]:
    """
    Issue one copy of a book to a user.

    Business Logic (checked in order, first failure wins):
    1. User exists and is active
    2. Book exists and is not soft-deleted
    3. User has no outstanding due charges
    4. User holds fewer than MAX_ACTIVE_LOANS active loans
    5. User does not already hold this book
    6. Book has a copy available

    Internal Working:
    - The keyed lock serialises callers on the same user or book
    - Stock is decremented with a conditional UPDATE (quantity_available > 0)
      so two transactions can never both take the last copy
    - The partial unique index on active loans rejects a concurrent
      duplicate issue with IntegrityError

    Returns:
        Result carrying the created BookHistory row
    """
    issue_date = to_naive_utc(now or utc_now())

    def operation() -> Result:
        user = _find_user(db, email, for_update=True)
        if user is None:
            return failure(ErrorKind.USER_NOT_FOUND)

        book = (
            db.query(models.Book)
            .filter(models.Book.book_code == book_code, models.Book.deleted_at.is_(None))
            .first()
        )
        if book is None:
            return failure(ErrorKind.BOOK_NOT_FOUND)

        if user.due_charges > 0:
            return failure(ErrorKind.OUTSTANDING_DUE_CHARGES)

        if _count_active_loans(db, user.id) >= MAX_ACTIVE_LOANS:
            return failure(ErrorKind.BOOK_LIMIT_EXCEEDED, limit=MAX_ACTIVE_LOANS)

        if _find_active_loan(db, user.id, book.id) is not None:
            return failure(ErrorKind.CANNOT_ISSUE_SAME_BOOK)

        if book.quantity_available <= 0:
            return failure(ErrorKind.BOOK_OUT_OF_STOCK)

        taken = (
            db.query(models.Book)
            .filter(models.Book.id == book.id, models.Book.quantity_available > 0)
            .update(
                {models.Book.quantity_available: models.Book.quantity_available - 1},
                synchronize_session=False,
            )
        )
        if not taken:
            return failure(ErrorKind.BOOK_OUT_OF_STOCK)

        history = models.BookHistory(user_id=user.id, book_id=book.id, issue_date=issue_date)
        db.add(history)
        db.flush()
        return success(history)

    def finish(history) -> Result:
        db.refresh(history)
        logger.info("Issued book %s to %s (history %s)", book_code, email, history.id)
        return success(history)

    with issuance_locks.hold(("user", email), ("book", book_code)):
        return _run_in_transaction(
            db, operation, ErrorKind.CANNOT_ISSUE_SAME_BOOK, finish=finish
        )


def return_book(
    db: Session, email: str, book_code: str, submit_date: Optional[datetime] = None
) -> Result[ReturnOutcome]:
    """
    Close the user's active loan of a book and bill it.

    Business Logic:
    1. An active loan must exist for (user, book), else BookNotIssued
    2. submit_date must not precede the issue date, else SubmitDateInvalid
    3. used days and charge come from the charge calculator with the
       book's per-day rate; the charge is added to the user's due_charges

    Internal Working:
    - The history row is closed with a conditional UPDATE on
      submit_date IS NULL so a concurrent double return closes it once
    - Stock is incremented only while it stays within quantity_total; a
      loan whose copy is already back in stock means stock and ledger
      disagree, so the return is rolled back as StoreError
    - A soft-deleted book can still be returned, and so can a book held
      by a user who was deactivated after the issue

    Returns:
        Result carrying the closed history, the charge breakdown and the
        user's new due_charges total
    """
    submitted_at = to_naive_utc(submit_date or utc_now())

    def operation() -> Result:
        user = _find_user(db, email, for_update=True, active_only=False)
        if user is None:
            return failure(ErrorKind.USER_NOT_FOUND)

        book = db.query(models.Book).filter(models.Book.book_code == book_code).first()
        if book is None:
            return failure(ErrorKind.BOOK_NOT_FOUND)

        history = _find_active_loan(db, user.id, book.id)
        if history is None:
            return failure(ErrorKind.BOOK_NOT_ISSUED)

        if submitted_at < history.issue_date:
            return failure(ErrorKind.SUBMIT_DATE_INVALID)

        charge = calculate_charge(history.issue_date, submitted_at, book.charges)
        if not charge.ok:
            return charge
        breakdown = charge.value

        closed = (
            db.query(models.BookHistory)
            .filter(
                models.BookHistory.id == history.id,
                models.BookHistory.submit_date.is_(None),
            )
            .update(
                {
                    models.BookHistory.submit_date: submitted_at,
                    models.BookHistory.charges: breakdown.total_amount,
                },
                synchronize_session=False,
            )
        )
        if not closed:
            return failure(ErrorKind.BOOK_NOT_ISSUED)

        restocked = (
            db.query(models.Book)
            .filter(
                models.Book.id == book.id,
                models.Book.quantity_available < models.Book.quantity_total,
            )
            .update(
                {models.Book.quantity_available: models.Book.quantity_available + 1},
                synchronize_session=False,
            )
        )
        if not restocked:
            logger.error("Book %s already fully in stock with loan %s open", book_code, history.id)
            return failure(ErrorKind.STORE_ERROR)

        db.query(models.User).filter(models.User.id == user.id).update(
            {models.User.due_charges: models.User.due_charges + breakdown.total_amount},
            synchronize_session=False,
        )
        db.flush()
        return success((history, user, breakdown))

    def finish(returned) -> Result:
        history, user, breakdown = returned
        db.refresh(history)
        db.refresh(user)
        logger.info(
            "Returned book %s from %s after %s day(s), charged %s",
            book_code,
            email,
            breakdown.used_days,
            breakdown.total_amount,
        )
        return success(
            ReturnOutcome(history=history, breakdown=breakdown, due_charges=user.due_charges)
        )

    with issuance_locks.hold(("user", email), ("book", book_code)):
        return _run_in_transaction(db, operation, ErrorKind.BOOK_NOT_ISSUED, finish=finish)
