from enum import Enum
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from fastapi import status


T = TypeVar("T")


class ErrorKind(str, Enum):
    """
    Machine-distinguishable failure kinds emitted by the core services.

    Each member knows its human-readable message and the HTTP status the
    boundary should answer with. The core never picks status codes itself,
    it only hands back the kind.
    """

    USER_NOT_FOUND = "UserNotFound"
    USER_ALREADY_EXISTS = "UserAlreadyExists"
    BOOK_NOT_FOUND = "BookNotFound"
    BOOK_ALREADY_EXISTS = "BookAlreadyExists"
    BOOK_OUT_OF_STOCK = "BookOutOfStock"
    BOOK_LIMIT_EXCEEDED = "BookLimitExceeded"
    CANNOT_ISSUE_SAME_BOOK = "CannotIssueSameBook"
    OUTSTANDING_DUE_CHARGES = "OutstandingDueCharges"
    BOOK_NOT_ISSUED = "BookNotIssued"
    SUBMIT_DATE_INVALID = "SubmitDateInvalid"
    INVALID_DATE_RANGE = "InvalidDateRange"
    REVIEW_ALREADY_EXIST = "ReviewAlreadyExist"
    RATING_ALREADY_EXIST = "RatingAlreadyExist"
    INVALID_RATING = "InvalidRating"
    BOOK_HISTORY_NOT_FOUND = "BookHistoryNotFound"
    INVALID_PAGE_NUMBER = "InvalidPageNumber"
    NO_RATINGS_FOUND = "NoRatingsFound"
    NO_REVIEWS_FOUND = "NoReviewsFound"
    ERROR_COUNTING_BOOKS = "ErrorCountingBooks"
    STORE_ERROR = "StoreError"

    @property
    def message(self) -> str:
        return _MESSAGES[self]

    @property
    def status_code(self) -> int:
        if self in _NOT_FOUND:
            return status.HTTP_404_NOT_FOUND
        if self in _INTERNAL:
            return status.HTTP_500_INTERNAL_SERVER_ERROR
        return status.HTTP_400_BAD_REQUEST


_MESSAGES = {
    ErrorKind.USER_NOT_FOUND: "User not found!",
    ErrorKind.USER_ALREADY_EXISTS: "User already exists!",
    ErrorKind.BOOK_NOT_FOUND: "Book not found!",
    ErrorKind.BOOK_ALREADY_EXISTS: "Book already exists!",
    ErrorKind.BOOK_OUT_OF_STOCK: "Book out of stock",
    ErrorKind.BOOK_LIMIT_EXCEEDED: "User cannot have more than {limit} books issued",
    ErrorKind.CANNOT_ISSUE_SAME_BOOK: "User cannot issue the same book again!",
    ErrorKind.OUTSTANDING_DUE_CHARGES: (
        "User has outstanding due charges. Please clear them before issuing a book."
    ),
    ErrorKind.BOOK_NOT_ISSUED: "Book is not issued to this user!",
    ErrorKind.SUBMIT_DATE_INVALID: "Submit date cannot be before to the issue date",
    ErrorKind.INVALID_DATE_RANGE: "End date must not be before start date and rate must not be negative",
    ErrorKind.REVIEW_ALREADY_EXIST: "Review done already!",
    ErrorKind.RATING_ALREADY_EXIST: "Rating done already!",
    ErrorKind.INVALID_RATING: "Rating must be between {low} and {high}",
    ErrorKind.BOOK_HISTORY_NOT_FOUND: "Book history not found!",
    ErrorKind.INVALID_PAGE_NUMBER: "Page number must be less than total pages",
    ErrorKind.NO_RATINGS_FOUND: "No ratings found!",
    ErrorKind.NO_REVIEWS_FOUND: "No reviews found!",
    ErrorKind.ERROR_COUNTING_BOOKS: "Error counting books!",
    ErrorKind.STORE_ERROR: "Error while accessing the record store",
}

_NOT_FOUND = {
    ErrorKind.USER_NOT_FOUND,
    ErrorKind.BOOK_NOT_FOUND,
    ErrorKind.BOOK_NOT_ISSUED,
    ErrorKind.BOOK_HISTORY_NOT_FOUND,
    ErrorKind.NO_RATINGS_FOUND,
    ErrorKind.NO_REVIEWS_FOUND,
}

_INTERNAL = {ErrorKind.ERROR_COUNTING_BOOKS, ErrorKind.STORE_ERROR}


@dataclass(frozen=True)
class LibraryError:
    kind: ErrorKind
    message: str

    def as_detail(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of a core operation: either a value or a LibraryError.

    Business failures travel back as values so callers can branch on
    `result.ok` and `result.error.kind` without catching exceptions.
    """

    value: Optional[T] = None
    error: Optional[LibraryError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def success(value=None) -> Result:
    return Result(value=value)


def failure(kind: ErrorKind, **fmt) -> Result:
    message = kind.message.format(**fmt) if fmt else kind.message
    return Result(error=LibraryError(kind=kind, message=message))
