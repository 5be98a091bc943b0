from app import models, schemas
from app import issuance, reports, reviews, seed
from app.database import Base
from app.errors import ErrorKind
from app.locks import issuance_locks

import threading
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker


SQLALCHEMY_DATABASE_URL = "sqlite:///./test_services.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

ISSUED = datetime(2024, 1, 1, 9, 0, 0)


@pytest.fixture
def db():
    """
    A session over a freshly created schema, dropped again after the test.
    """
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


def make_user(db, email="reader@example.com", **overrides):
    fields = {"email": email, "first_name": "Rea", "last_name": "Der"}
    fields.update(overrides)
    user = models.User(**fields)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_book(db, code="BK-1", quantity=1, charges=10.0, **overrides):
    fields = {
        "book_code": code,
        "name": f"Book {code}",
        "author": "Some Author",
        "quantity_total": quantity,
        "quantity_available": quantity,
        "charges": charges,
        "published_date": date(2020, 5, 17),
    }
    fields.update(overrides)
    book = models.Book(**fields)
    db.add(book)
    db.commit()
    db.refresh(book)
    return book


def active_loans(db, user):
    return (
        db.query(models.BookHistory)
        .filter(
            models.BookHistory.user_id == user.id,
            models.BookHistory.submit_date.is_(None),
        )
        .all()
    )


# Issuance


def test_issue_decrements_stock_and_opens_loan(db):
    user = make_user(db)
    book = make_book(db, quantity=2)

    result = issuance.issue_book(db, user.email, book.book_code, now=ISSUED)

    assert result.ok
    assert result.value.submit_date is None
    assert result.value.issue_date == ISSUED
    db.refresh(book)
    assert book.quantity_available == 1
    assert len(active_loans(db, user)) == 1


def test_issue_unknown_or_inactive_user(db):
    make_book(db)
    make_user(db, email="sleeper@example.com", is_active=False)

    assert issuance.issue_book(db, "ghost@example.com", "BK-1").error.kind == ErrorKind.USER_NOT_FOUND
    assert issuance.issue_book(db, "sleeper@example.com", "BK-1").error.kind == ErrorKind.USER_NOT_FOUND


def test_issue_unknown_or_deleted_book(db):
    user = make_user(db)
    make_book(db, code="GONE", deleted_at=datetime(2024, 1, 1))

    assert issuance.issue_book(db, user.email, "NOPE").error.kind == ErrorKind.BOOK_NOT_FOUND
    assert issuance.issue_book(db, user.email, "GONE").error.kind == ErrorKind.BOOK_NOT_FOUND


def test_outstanding_dues_checked_before_stock(db):
    """
    Precondition order matters: dues are reported even when the book
    is also out of stock.
    """
    user = make_user(db, due_charges=15.0)
    make_book(db, quantity=0)

    result = issuance.issue_book(db, user.email, "BK-1")
    assert result.error.kind == ErrorKind.OUTSTANDING_DUE_CHARGES


def test_sixth_active_loan_is_refused(db):
    user = make_user(db)
    for index in range(6):
        make_book(db, code=f"BK-{index}")
    for index in range(5):
        assert issuance.issue_book(db, user.email, f"BK-{index}").ok

    result = issuance.issue_book(db, user.email, "BK-5")

    assert result.error.kind == ErrorKind.BOOK_LIMIT_EXCEEDED
    assert "5" in result.error.message
    assert len(active_loans(db, user)) == 5


def test_same_book_twice_then_other_user_out_of_stock(db):
    """
    Stock 1: the holder gets CannotIssueSameBook, anyone else BookOutOfStock.
    """
    user = make_user(db)
    other = make_user(db, email="other@example.com")
    book = make_book(db, quantity=1)

    assert issuance.issue_book(db, user.email, book.book_code).ok
    db.refresh(book)
    assert book.quantity_available == 0

    again = issuance.issue_book(db, user.email, book.book_code)
    assert again.error.kind == ErrorKind.CANNOT_ISSUE_SAME_BOOK

    theirs = issuance.issue_book(db, other.email, book.book_code)
    assert theirs.error.kind == ErrorKind.BOOK_OUT_OF_STOCK

    db.refresh(book)
    assert book.quantity_available == 0


def test_return_bills_used_days(db):
    user = make_user(db)
    book = make_book(db, quantity=1, charges=12.5)
    issuance.issue_book(db, user.email, book.book_code, now=ISSUED)

    result = issuance.return_book(db, user.email, book.book_code, ISSUED + timedelta(days=3))

    assert result.ok
    assert result.value.breakdown.used_days == 3
    assert result.value.breakdown.total_amount == 37.5
    assert result.value.due_charges == 37.5
    assert result.value.history.submit_date == ISSUED + timedelta(days=3)
    assert result.value.history.charges == 37.5
    db.refresh(book)
    assert book.quantity_available == 1
    assert active_loans(db, user) == []


def test_partial_day_return_rounds_up(db):
    user = make_user(db)
    make_book(db, charges=2.0)
    issuance.issue_book(db, user.email, "BK-1", now=ISSUED)

    result = issuance.return_book(db, user.email, "BK-1", ISSUED + timedelta(days=2, hours=1))

    assert result.value.breakdown.used_days == 3
    assert result.value.due_charges == 6.0


def test_return_without_loan(db):
    user = make_user(db)
    make_book(db)

    result = issuance.return_book(db, user.email, "BK-1", ISSUED)
    assert result.error.kind == ErrorKind.BOOK_NOT_ISSUED


def test_return_before_issue_changes_nothing(db):
    user = make_user(db)
    book = make_book(db, quantity=1)
    issuance.issue_book(db, user.email, book.book_code, now=ISSUED)

    result = issuance.return_book(db, user.email, book.book_code, ISSUED - timedelta(hours=1))

    assert result.error.kind == ErrorKind.SUBMIT_DATE_INVALID
    db.refresh(book)
    db.refresh(user)
    assert book.quantity_available == 0
    assert user.due_charges == 0
    assert len(active_loans(db, user)) == 1


def test_second_return_is_rejected(db):
    user = make_user(db)
    make_book(db, charges=0)
    issuance.issue_book(db, user.email, "BK-1", now=ISSUED)

    assert issuance.return_book(db, user.email, "BK-1", ISSUED + timedelta(days=1)).ok
    again = issuance.return_book(db, user.email, "BK-1", ISSUED + timedelta(days=2))
    assert again.error.kind == ErrorKind.BOOK_NOT_ISSUED


def test_charged_return_blocks_next_issue(db):
    user = make_user(db)
    make_book(db, code="BK-1", charges=5.0)
    make_book(db, code="BK-2")
    issuance.issue_book(db, user.email, "BK-1", now=ISSUED)
    issuance.return_book(db, user.email, "BK-1", ISSUED + timedelta(days=1))

    result = issuance.issue_book(db, user.email, "BK-2")
    assert result.error.kind == ErrorKind.OUTSTANDING_DUE_CHARGES


def test_soft_deleted_book_can_still_be_returned(db):
    user = make_user(db)
    book = make_book(db, charges=0)
    issuance.issue_book(db, user.email, book.book_code, now=ISSUED)
    book.deleted_at = datetime(2024, 1, 2)
    db.commit()

    result = issuance.return_book(db, user.email, book.book_code, ISSUED + timedelta(days=2))
    assert result.ok


def test_deactivated_user_can_still_return(db):
    user = make_user(db)
    book = make_book(db, charges=4.0)
    issuance.issue_book(db, user.email, book.book_code, now=ISSUED)
    user.is_active = False
    db.commit()

    result = issuance.return_book(db, user.email, book.book_code, ISSUED + timedelta(days=2))

    assert result.ok
    assert result.value.due_charges == 8.0
    db.refresh(book)
    assert book.quantity_available == 1
    assert issuance.issue_book(db, user.email, book.book_code).error.kind == ErrorKind.USER_NOT_FOUND


def test_return_with_stock_already_full_is_rolled_back(db):
    """
    A loan whose copy is already counted in stock leaves the ledger untouched.
    """
    user = make_user(db)
    book = make_book(db, quantity=1, charges=3.0)
    issuance.issue_book(db, user.email, book.book_code, now=ISSUED)
    book.quantity_available = 1
    db.commit()

    result = issuance.return_book(db, user.email, book.book_code, ISSUED + timedelta(days=1))

    assert result.error.kind == ErrorKind.STORE_ERROR
    db.refresh(user)
    assert user.due_charges == 0
    assert len(active_loans(db, user)) == 1


def test_store_failure_while_reloading_is_reported(db, monkeypatch):
    user = make_user(db)
    make_book(db)

    def broken_refresh(instance):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "refresh", broken_refresh)
    result = issuance.issue_book(db, user.email, "BK-1", now=ISSUED)

    assert result.error.kind == ErrorKind.STORE_ERROR


def test_lock_table_is_emptied_after_issues(db):
    make_user(db)
    make_book(db)
    for index in range(20):
        issuance.issue_book(db, f"ghost{index}@example.com", f"NOPE-{index}")
    issuance.issue_book(db, "reader@example.com", "BK-1")
    issuance.return_book(db, "reader@example.com", "BK-1")

    assert len(issuance_locks) == 0


def test_lock_entry_survives_while_held():
    with issuance_locks.hold(("user", "a@example.com"), ("book", "BK-1")):
        assert len(issuance_locks) == 2
        with issuance_locks.hold(("book", "BK-2")):
            assert len(issuance_locks) == 3
    assert len(issuance_locks) == 0


def test_reissue_after_return(db):
    user = make_user(db)
    make_book(db, charges=0)
    issuance.issue_book(db, user.email, "BK-1", now=ISSUED)
    issuance.return_book(db, user.email, "BK-1", ISSUED + timedelta(days=1))

    assert issuance.issue_book(db, user.email, "BK-1").ok


def test_store_rejects_two_active_loans_of_same_book(db):
    """
    The partial unique index holds even when the service is bypassed.
    """
    user = make_user(db)
    book = make_book(db, quantity=5)
    db.add(models.BookHistory(user_id=user.id, book_id=book.id, issue_date=ISSUED))
    db.commit()
    db.add(models.BookHistory(user_id=user.id, book_id=book.id, issue_date=ISSUED))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_concurrent_issues_never_oversell(db):
    """
    Eight readers race for the last copy; exactly one wins.
    """
    make_book(db, quantity=1)
    emails = [f"racer{index}@example.com" for index in range(8)]
    for email in emails:
        make_user(db, email=email)

    outcomes = []
    start = threading.Barrier(len(emails))

    def attempt(email):
        session = TestingSessionLocal()
        try:
            start.wait()
            outcomes.append(issuance.issue_book(session, email, "BK-1"))
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(email,)) for email in emails]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for outcome in outcomes if outcome.ok) == 1
    assert {o.error.kind for o in outcomes if not o.ok} == {ErrorKind.BOOK_OUT_OF_STOCK}
    book = db.query(models.Book).filter(models.Book.book_code == "BK-1").one()
    assert book.quantity_available == 0


def test_concurrent_duplicate_issue_by_same_user(db):
    user = make_user(db)
    make_book(db, quantity=5)

    outcomes = []
    start = threading.Barrier(4)

    def attempt():
        session = TestingSessionLocal()
        try:
            start.wait()
            outcomes.append(issuance.issue_book(session, user.email, "BK-1"))
        finally:
            session.close()

    threads = [threading.Thread(target=attempt) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for outcome in outcomes if outcome.ok) == 1
    assert len(active_loans(db, user)) == 1


# Reviews and ratings


def test_review_once_per_user_and_book(db):
    user = make_user(db)
    make_book(db)

    assert reviews.add_book_review(db, user.email, "BK-1", "Loved it").ok
    again = reviews.add_book_review(db, user.email, "BK-1", "Still love it")
    assert again.error.kind == ErrorKind.REVIEW_ALREADY_EXIST
    assert db.query(models.BookReview).count() == 1


def test_review_unknown_user_or_book(db):
    user = make_user(db)
    make_book(db)

    assert reviews.add_book_review(db, "ghost@example.com", "BK-1", "x").error.kind == ErrorKind.USER_NOT_FOUND
    assert reviews.add_book_review(db, user.email, "NOPE", "x").error.kind == ErrorKind.BOOK_NOT_FOUND


def test_rating_once_per_user_and_book(db):
    user = make_user(db)
    make_book(db)

    assert reviews.add_book_rating(db, user.email, "BK-1", 4).ok
    again = reviews.add_book_rating(db, user.email, "BK-1", 5)
    assert again.error.kind == ErrorKind.RATING_ALREADY_EXIST


def test_rating_out_of_range(db):
    user = make_user(db)
    make_book(db)

    result = reviews.add_book_rating(db, user.email, "BK-1", 6)
    assert result.error.kind == ErrorKind.INVALID_RATING
    assert "between 1 and 5" in result.error.message


# Reports


def seed_catalog(db):
    alice = make_user(db, email="alice@example.com", first_name="Alice", last_name="A")
    bob = make_user(db, email="bob@example.com", first_name="Bob", last_name="B")
    clean = make_book(db, code="BK-1", name="Clean Code", quantity=3)
    make_book(db, code="BK-2", name="Clean Architecture", quantity=2, published_date=None)
    make_book(db, code="BK-3", name="Refactoring", quantity=1)
    db.add_all(
        [
            models.BookGallery(book_id=clean.id, image_path="/img/1.jpg", image_name="coverImage"),
            models.BookGallery(book_id=clean.id, image_path="/img/2.jpg", image_name="back"),
            models.BookRating(book_id=clean.id, user_id=alice.id, rating=5),
            models.BookRating(book_id=clean.id, user_id=bob.id, rating=2),
            models.BookReview(book_id=clean.id, user_id=alice.id, review="Great"),
        ]
    )
    db.commit()
    return alice, bob


def test_search_on_empty_catalog(db):
    result = reports.search_books(db, schemas.BookSearchCriteria(), schemas.PageParams())
    assert result.error.kind == ErrorKind.ERROR_COUNTING_BOOKS


def test_search_by_name_fragment_with_aggregates(db):
    seed_catalog(db)

    result = reports.search_books(
        db, schemas.BookSearchCriteria(name="clean"), schemas.PageParams()
    )

    assert result.ok
    books = {book.book_code: book for book in result.value.searched_books}
    assert set(books) == {"BK-1", "BK-2"}
    assert books["BK-1"].rating == 3.5
    assert books["BK-1"].review_count == 1
    assert books["BK-1"].publish_year == 2020
    assert books["BK-1"].stock == 3
    assert [image.image_path for image in books["BK-1"].cover_image] == ["/img/1.jpg"]
    assert books["BK-2"].rating == 0
    assert books["BK-2"].review_count == 0
    assert books["BK-2"].publish_year is None
    assert books["BK-2"].cover_image == []
    assert result.value.pagination.total_pages == 1


def test_search_by_code_or_name(db):
    seed_catalog(db)

    result = reports.search_books(
        db,
        schemas.BookSearchCriteria(book_code="BK-3", name="architecture"),
        schemas.PageParams(),
    )
    assert [book.book_code for book in result.value.searched_books] == ["BK-2", "BK-3"]


def test_search_treats_wildcards_literally(db):
    seed_catalog(db)

    result = reports.search_books(db, schemas.BookSearchCriteria(name="%"), schemas.PageParams())
    assert result.error.kind == ErrorKind.BOOK_NOT_FOUND


def test_search_pagination(db):
    seed_catalog(db)

    second = reports.search_books(
        db, schemas.BookSearchCriteria(), schemas.PageParams(page=2, page_size=2)
    )
    assert [book.book_code for book in second.value.searched_books] == ["BK-3"]
    assert second.value.pagination.total_pages == 2

    beyond = reports.search_books(
        db, schemas.BookSearchCriteria(), schemas.PageParams(page=3, page_size=2)
    )
    assert beyond.error.kind == ErrorKind.INVALID_PAGE_NUMBER


def test_search_skips_deleted_books(db):
    seed_catalog(db)
    db.query(models.Book).filter(models.Book.book_code == "BK-3").update(
        {models.Book.deleted_at: datetime(2024, 1, 1)}
    )
    db.commit()

    result = reports.search_books(db, schemas.BookSearchCriteria(book_code="BK-3"), schemas.PageParams())
    assert result.error.kind == ErrorKind.BOOK_NOT_FOUND


def test_all_book_details(db):
    seed_catalog(db)

    result = reports.get_all_book_details(db)

    assert result.ok
    assert result.value.total_books == 3
    clean = result.value.books[0]
    assert clean.book_code == "BK-1"
    assert len(clean.gallery) == 2
    assert len(clean.cover_image) == 1
    assert sorted(entry.rating for entry in clean.ratings) == [2, 5]
    assert clean.rating == 3.5
    assert clean.reviews[0].reviewer == "Alice A"
    assert clean.review_count == 1
    assert result.value.books[2].rating == 0


def test_all_book_details_on_empty_catalog(db):
    assert reports.get_all_book_details(db).error.kind == ErrorKind.ERROR_COUNTING_BOOKS


def test_issue_history_recomputes_from_dates(db):
    """
    Displayed amounts come from the stored dates, not the stored charge.
    """
    alice, _ = seed_catalog(db)
    issuance.issue_book(db, alice.email, "BK-1", now=ISSUED)
    issuance.return_book(db, alice.email, "BK-1", ISSUED + timedelta(days=2))
    db.query(models.BookHistory).update({models.BookHistory.charges: 999})
    db.commit()
    alice.due_charges = 0
    db.commit()
    issuance.issue_book(db, alice.email, "BK-3", now=ISSUED + timedelta(days=5))

    result = reports.get_book_issue_history(db, alice.email)

    closed, open_loan = result.value.book_histories
    assert closed.book_code == "BK-1"
    assert closed.used_days == 2
    assert closed.total_amount == 20.0
    assert open_loan.book_name == "Refactoring"
    assert open_loan.submit_date is None
    assert open_loan.used_days is None
    assert open_loan.total_amount is None


def test_issue_history_not_found(db):
    user = make_user(db)

    assert reports.get_book_issue_history(db, user.email).error.kind == ErrorKind.BOOK_HISTORY_NOT_FOUND
    assert reports.get_book_issue_history(db, "ghost@example.com").error.kind == ErrorKind.USER_NOT_FOUND


def test_library_summary(db):
    alice, _ = seed_catalog(db)
    issuance.issue_book(db, alice.email, "BK-1", now=ISSUED)
    issuance.issue_book(db, alice.email, "BK-2", now=ISSUED)
    issuance.return_book(db, alice.email, "BK-1", ISSUED + timedelta(days=1))

    result = reports.get_library_summary(db, alice.email)

    assert result.value.total_issued_books == 2
    assert result.value.total_submitted_books == 1
    assert result.value.total_not_submitted_books == 1
    assert result.value.total_due_charges == 10.0
    assert result.value.total_paid_amount == 0


def test_ratings_summary(db):
    seed_catalog(db)

    result = reports.get_book_ratings_summary(db, "BK-1")

    assert result.value.total_ratings == 2
    assert result.value.average_rating == 3.5
    assert result.value.distribution == {5: 1, 2: 1}
    assert reports.get_book_ratings_summary(db, "BK-2").error.kind == ErrorKind.NO_RATINGS_FOUND
    assert reports.get_book_ratings_summary(db, "NOPE").error.kind == ErrorKind.NO_RATINGS_FOUND


def test_reviews_summary_pages(db):
    seed_catalog(db)
    clean = db.query(models.Book).filter(models.Book.book_code == "BK-1").one()
    for index in range(2):
        reader = make_user(db, email=f"reader{index}@example.com")
        db.add(models.BookReview(book_id=clean.id, user_id=reader.id, review=f"Review {index}"))
    db.commit()

    second = reports.get_book_reviews_summary(db, "BK-1", schemas.PageParams(page=2, page_size=2))
    assert [entry.review for entry in second.value.reviews] == ["Review 1"]
    assert second.value.pagination.total_pages == 2

    beyond = reports.get_book_reviews_summary(db, "BK-1", schemas.PageParams(page=3, page_size=2))
    assert beyond.error.kind == ErrorKind.INVALID_PAGE_NUMBER

    empty = reports.get_book_reviews_summary(db, "BK-3", schemas.PageParams())
    assert empty.error.kind == ErrorKind.INVALID_PAGE_NUMBER

    unknown = reports.get_book_reviews_summary(db, "NOPE", schemas.PageParams())
    assert unknown.error.kind == ErrorKind.INVALID_PAGE_NUMBER


def test_seed_is_idempotent(db):
    assert seed.seed(db) is True
    assert seed.seed(db) is False

    assert db.query(models.Book).count() == len(seed.SAMPLE_BOOKS)
    assert db.query(models.Admin).count() == len(seed.SAMPLE_ADMINS)
    summary = reports.get_book_ratings_summary(db, "BK-1001")
    assert summary.value.total_ratings == 2
    covers = reports.search_books(db, schemas.BookSearchCriteria(book_code="BK-1001"), schemas.PageParams())
    assert covers.value.searched_books[0].cover_image[0].image_name == "coverImage"
