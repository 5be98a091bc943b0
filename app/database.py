from app.config import DATABASE_URL, STORE_TIMEOUT
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base


if DATABASE_URL.startswith("sqlite"):
    engine_options = {"connect_args": {"check_same_thread": False, "timeout": STORE_TIMEOUT}}
else:
    engine_options = {"pool_timeout": STORE_TIMEOUT}

engine = create_engine(DATABASE_URL, **engine_options)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Dependency function that provides a database session.

    One session per request: it is opened here, handed to the endpoint,
    and closed once the response has been produced. Services receive the
    session as an argument and own the transaction boundaries.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
