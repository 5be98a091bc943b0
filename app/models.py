from app.charges import utc_now
from app.database import Base
from sqlalchemy.orm import relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Date,
    DateTime,
    Boolean,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
    text,
)


class Book(Base):
    """
    Book model representing a catalog title and its stock.

    Relationships:
    - One book has many issuance records, reviews, ratings and gallery images

    Business Logic:
    - book_code is the external business identifier; id is the storage key
    - quantity_available moves down on issue and up on return, never
      leaving the range [0, quantity_total]
    - charges is the per-day rental/late rate applied at return time
    - deleted_at marks a soft delete; history rows keep referencing the book
    """

    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint(
            "quantity_available >= 0 AND quantity_available <= quantity_total",
            name="ck_books_stock_range",
        ),
        CheckConstraint("charges >= 0", name="ck_books_charges_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    book_code = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False)
    quantity_total = Column(Integer, nullable=False, default=1)
    quantity_available = Column(Integer, nullable=False, default=1)
    charges = Column(Float, nullable=False, default=0)
    published_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    histories = relationship("BookHistory", back_populates="book")
    reviews = relationship("BookReview", back_populates="book")
    ratings = relationship("BookRating", back_populates="book")
    gallery = relationship("BookGallery", back_populates="book")


class User(Base):
    """
    User model for library members.

    paid_amount and due_charges are running totals. A user with
    due_charges above zero is blocked from issuing new books.
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("due_charges >= 0", name="ck_users_due_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    paid_amount = Column(Float, default=0, nullable=False)
    due_charges = Column(Float, default=0, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    histories = relationship("BookHistory", back_populates="user")
    reviews = relationship("BookReview", back_populates="user")
    ratings = relationship("BookRating", back_populates="user")


class Admin(Base):
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    deleted_at = Column(DateTime, nullable=True)


class BookHistory(Base):
    """
    Issuance record, the audit trail of every loan.

    Lifecycle:
    - Created at issue time with submit_date NULL (an active loan)
    - Updated exactly once at return time (submit_date and charges set)
    - Never deleted

    Internal Working:
    - The partial unique index allows many closed rows per (user, book)
      but at most one row whose submit_date is still NULL
    """

    __tablename__ = "book_histories"
    __table_args__ = (
        Index(
            "uq_book_histories_active_loan",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("submit_date IS NULL"),
            postgresql_where=text("submit_date IS NULL"),
        ),
        CheckConstraint(
            "submit_date IS NULL OR submit_date >= issue_date",
            name="ck_book_histories_dates",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    issue_date = Column(DateTime, nullable=False)
    submit_date = Column(DateTime, nullable=True)
    charges = Column(Float, nullable=True)

    user = relationship("User", back_populates="histories")
    book = relationship("Book", back_populates="histories")


class BookReview(Base):
    __tablename__ = "book_reviews"
    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_book_reviews_user_book"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    review = Column(String, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    user = relationship("User", back_populates="reviews")
    book = relationship("Book", back_populates="reviews")


class BookRating(Base):
    __tablename__ = "book_ratings"
    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_book_ratings_user_book"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_book_ratings_range"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    user = relationship("User", back_populates="ratings")
    book = relationship("Book", back_populates="ratings")


class BookGallery(Base):
    """
    Gallery image of a book. The row named "coverImage" is the cover.
    """

    __tablename__ = "book_galleries"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    image_path = Column(String, nullable=False)
    image_name = Column(String, nullable=False)

    book = relationship("Book", back_populates="gallery")
