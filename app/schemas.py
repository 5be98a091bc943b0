from datetime import date, datetime
from typing import Dict, Generic, List, Optional, TypeVar
from pydantic import BaseModel, ConfigDict, Field

from app.config import DEFAULT_PAGE_SIZE, MAX_RATING, MIN_RATING


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """
    Envelope returned by every successful endpoint.

    data carries the payload, message an optional human-readable note.
    """

    data: Optional[T] = None
    message: Optional[str] = None


class Pagination(BaseModel):
    page: int
    page_size: int
    total_pages: int


class PageParams(BaseModel):
    """Pagination inputs shared by the paginated reports."""

    page: int = Field(1, ge=1)
    page_size: int = Field(DEFAULT_PAGE_SIZE, ge=1, le=100)

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.page_size


class BookSearchCriteria(BaseModel):
    """
    Search filter: by business ID, by name fragment, or both.

    When both are given a book matches if either one matches.
    When neither is given every active book matches.
    """

    book_code: Optional[str] = None
    name: Optional[str] = None


# Admin plumbing


class AdminCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)


class Admin(AdminCreate):
    id: int

    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)


class User(UserCreate):
    """
    Schema for user responses, including the running money totals.
    """

    id: int
    is_active: bool
    paid_amount: float
    due_charges: float

    model_config = ConfigDict(from_attributes=True)


class BookCreate(BaseModel):
    """
    Schema for creating a book.

    quantity_available is not accepted: a new book starts fully in stock.
    """

    book_code: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=500)
    author: str = Field(..., min_length=1, max_length=200)
    quantity_total: int = Field(1, ge=0)
    charges: float = Field(0, ge=0)
    published_date: Optional[date] = None


class Book(BaseModel):
    id: int
    book_code: str
    name: str
    author: str
    quantity_total: int
    quantity_available: int
    charges: float
    published_date: Optional[date] = None
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class GalleryImageCreate(BaseModel):
    image_path: str = Field(..., min_length=1)
    image_name: str = Field(..., min_length=1, max_length=100)


class GalleryImage(GalleryImageCreate):
    id: int

    model_config = ConfigDict(from_attributes=True)


# Issuance


class IssueRequest(BaseModel):
    email: str
    book_code: str


class ReturnRequest(BaseModel):
    """
    Return request. submit_date defaults to the time the request is handled.
    """

    email: str
    book_code: str
    submit_date: Optional[datetime] = None


class BookHistory(BaseModel):
    id: int
    user_id: int
    book_id: int
    issue_date: datetime
    submit_date: Optional[datetime] = None
    charges: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class ReturnReceipt(BaseModel):
    history: BookHistory
    used_days: int
    charges: float
    due_charges: float


# Reviews and ratings


class ReviewCreate(BaseModel):
    book_code: str
    review: str = Field(..., min_length=1, max_length=5000)


class RatingCreate(BaseModel):
    book_code: str
    rating: int = Field(..., ge=MIN_RATING, le=MAX_RATING)


# Reports


class SearchedBook(BaseModel):
    book_code: str
    name: str
    author: str
    stock: int
    rating: float
    review_count: int
    publish_year: Optional[int] = None
    cover_image: List[GalleryImage] = []


class BookSearchPage(BaseModel):
    searched_books: List[SearchedBook]
    pagination: Pagination


class RatingEntry(BaseModel):
    user_id: int
    rating: int


class ReviewEntry(BaseModel):
    user_id: int
    reviewer: Optional[str] = None
    review: str
    created_at: Optional[datetime] = None


class BookDetail(BaseModel):
    book_code: str
    name: str
    author: str
    stock: int
    published_date: Optional[date] = None
    cover_image: List[GalleryImage] = []
    gallery: List[GalleryImage] = []
    ratings: List[RatingEntry] = []
    rating: float
    reviews: List[ReviewEntry] = []
    review_count: int


class BookDetailsReport(BaseModel):
    books: List[BookDetail]
    total_books: int


class IssueHistoryEntry(BaseModel):
    book_code: str
    book_name: str
    charges_per_day: float
    issue_date: datetime
    submit_date: Optional[datetime] = None
    used_days: Optional[int] = None
    total_amount: Optional[float] = None


class IssueHistoryReport(BaseModel):
    book_histories: List[IssueHistoryEntry]


class LibrarySummary(BaseModel):
    total_issued_books: int
    total_submitted_books: int
    total_not_submitted_books: int
    total_paid_amount: float
    total_due_charges: float


class RatingsSummary(BaseModel):
    book_code: str
    total_ratings: int
    average_rating: float
    distribution: Dict[int, int]


class ReviewsPage(BaseModel):
    reviews: List[ReviewEntry]
    pagination: Pagination
