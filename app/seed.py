"""
Small maintenance utility: create tables and load sample records.

    python -m app.seed --initdb
    python -m app.seed --seed
"""
import argparse
import logging
from datetime import date

from app import models
from app.config import COVER_IMAGE_NAME, configure_logging
from app.database import Base, SessionLocal, engine


logger = logging.getLogger(__name__)

SAMPLE_BOOKS = [
    ("BK-1001", "Clean Code", "Robert C. Martin", 3, 10.0, date(2008, 8, 1)),
    ("BK-1002", "The Pragmatic Programmer", "Andrew Hunt", 2, 12.5, date(1999, 10, 20)),
    ("BK-1003", "Designing Data-Intensive Applications", "Martin Kleppmann", 4, 15.0, date(2017, 3, 16)),
    ("BK-1004", "Refactoring", "Martin Fowler", 1, 8.0, date(1999, 7, 8)),
]

SAMPLE_USERS = [
    ("alice@example.com", "Alice", "Reader"),
    ("bob@example.com", "Bob", "Borrower"),
]

SAMPLE_ADMINS = [("admin@example.com", "Ada", "Admin")]

SAMPLE_REVIEWS = [
    (0, 0, "Amazing book with great insights."),
    (1, 1, "Very informative and well-written."),
    (2, 0, "Good book, but could be better."),
    (3, 1, "Interesting read, highly recommended!"),
]

SAMPLE_RATINGS = [(0, 0, 5), (0, 1, 4), (1, 1, 4), (2, 0, 3)]


def seed(db) -> bool:
    """
    Insert the sample records unless books already exist.

    Returns:
        True when records were inserted, False when the store was already seeded
    """
    if db.query(models.Book).count():
        logger.info("Store already holds books, skipping seed")
        return False

    books = [
        models.Book(
            book_code=code,
            name=name,
            author=author,
            quantity_total=quantity,
            quantity_available=quantity,
            charges=charges,
            published_date=published,
        )
        for code, name, author, quantity, charges, published in SAMPLE_BOOKS
    ]
    users = [
        models.User(email=email, first_name=first, last_name=last)
        for email, first, last in SAMPLE_USERS
    ]
    admins = [
        models.Admin(email=email, first_name=first, last_name=last)
        for email, first, last in SAMPLE_ADMINS
    ]
    db.add_all(books + users + admins)
    db.flush()

    db.add_all(
        models.BookGallery(
            book_id=book.id,
            image_path=f"/images/{book.book_code}/cover.jpg",
            image_name=COVER_IMAGE_NAME,
        )
        for book in books
    )
    db.add_all(
        models.BookReview(book_id=books[b].id, user_id=users[u].id, review=text)
        for b, u, text in SAMPLE_REVIEWS
    )
    db.add_all(
        models.BookRating(book_id=books[b].id, user_id=users[u].id, rating=stars)
        for b, u, stars in SAMPLE_RATINGS
    )
    db.commit()
    logger.info(
        "Seeded %s books, %s users, %s admins", len(books), len(users), len(admins)
    )
    return True


def main(argv=None):
    parser = argparse.ArgumentParser(description="Library store utilities")
    parser.add_argument("--initdb", action="store_true", help="Create tables")
    parser.add_argument("--seed", action="store_true", help="Seed sample data")
    args = parser.parse_args(argv)

    configure_logging()
    Base.metadata.create_all(bind=engine)
    logger.info("Tables created")

    if args.seed:
        db = SessionLocal()
        try:
            seed(db)
        finally:
            db.close()


if __name__ == "__main__":
    main()
