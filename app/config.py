import os
import logging


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./library.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
AUTH_KEY = os.getenv("AUTH_KEY", "dev-secret-key-12345")
MAX_ACTIVE_LOANS = int(os.getenv("MAX_ACTIVE_LOANS", "5"))
DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
STORE_TIMEOUT = float(os.getenv("STORE_TIMEOUT", "15"))

COVER_IMAGE_NAME = "coverImage"
MIN_RATING = 1
MAX_RATING = 5


def configure_logging():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
