# backend/storeledger/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Catalog (stores/products) lives on the default bind; every owning
    # component gets its own store below.
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///catalog.sqlite3",
    )
    SQLALCHEMY_BINDS = {
        "stock": os.environ.get("STOCK_DATABASE_URL", "sqlite:///stock.sqlite3"),
        "sales": os.environ.get("SALES_DATABASE_URL", "sqlite:///sales.sqlite3"),
        "refunds": os.environ.get("REFUNDS_DATABASE_URL", "sqlite:///refunds.sqlite3"),
    }
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Upper bound (seconds) on waiting for another writer's lock.
    STORAGE_TIMEOUT_SECONDS = _env_int("STORAGE_TIMEOUT_SECONDS", 5)

    # Refund policy
    REFUND_WINDOW_DAYS = _env_int("REFUND_WINDOW_DAYS", 30)
    AMOUNT_TOLERANCE_CENTS = _env_int("AMOUNT_TOLERANCE_CENTS", 1)

    # Saga compensation
    COMPENSATION_ATTEMPTS = _env_int("COMPENSATION_ATTEMPTS", 3)
    COMPENSATION_BACKOFF_SECONDS = 0.1

    # Read cache
    CACHE_BACKEND = os.environ.get("CACHE_BACKEND", "memory")
    STOCK_CACHE_TTL = _env_int("STOCK_CACHE_TTL", 60)
    LIST_CACHE_TTL = _env_int("LIST_CACHE_TTL", 300)
    HISTORY_CACHE_TTL = _env_int("HISTORY_CACHE_TTL", 600)

    LOW_STOCK_THRESHOLD = _env_int("LOW_STOCK_THRESHOLD", 10)

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_BINDS = {
        "stock": "sqlite:///:memory:",
        "sales": "sqlite:///:memory:",
        "refunds": "sqlite:///:memory:",
    }
    COMPENSATION_BACKOFF_SECONDS = 0
    LOG_LEVEL = "DEBUG"
