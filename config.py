"""
Application configuration: loaded once at startup.
"""

import logging
import os
import sys

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./storefront.db")
DATABASE_NAME = os.getenv("DATABASE_NAME", "horizon_stores")

SECRET_KEY = os.getenv("SECRET_KEY", "super-secret-key-change-me")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 12)))

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@horizonstores.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
SEED_CATALOG = os.getenv("SEED_CATALOG", "1") == "1"

# Only reads are retried; see database.retry_reads
STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
STORE_RETRY_BACKOFF = float(os.getenv("STORE_RETRY_BACKOFF", "0.1"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def setup_logging(level: str = LOG_LEVEL):
    """Configure the root logger once."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"
        ))
        root.addHandler(handler)
