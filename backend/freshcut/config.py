# backend/freshcut/config.py
from __future__ import annotations
import os


STORE_DURABLE = "durable"
STORE_TRANSIENT = "transient"
STORE_BACKENDS = (STORE_DURABLE, STORE_TRANSIENT)

MISSING_STOCK_REJECT = "reject"
MISSING_STOCK_SKIP = "skip"


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # durable: DATABASE_URL (sqlite file by default); transient: in-memory sqlite
    FRESHCUT_STORE = os.environ.get("FRESHCUT_STORE", STORE_DURABLE)
    DATABASE_URL = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///freshcut.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Concurrency retry policy for ledger writes
    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "5"))
    LEDGER_RETRY_BACKOFF = float(os.environ.get("LEDGER_RETRY_BACKOFF", "0.05"))

    # What reserve() does when a product has no stock row: reject | skip
    RESERVE_MISSING_STOCK = os.environ.get("RESERVE_MISSING_STOCK", MISSING_STOCK_REJECT)

    # Rates are strings so they parse straight into Decimal
    VAT_RATE = os.environ.get("VAT_RATE", "0.05")
    PURCHASE_TAX_RATE = os.environ.get("PURCHASE_TAX_RATE", "0.05")
    CURRENCY = os.environ.get("CURRENCY", "AED")


class TestingConfig(Config):
    TESTING = True
    FRESHCUT_STORE = STORE_TRANSIENT
    LOG_LEVEL = "DEBUG"
    LEDGER_RETRY_BACKOFF = 0.01
    RESERVE_MISSING_STOCK = MISSING_STOCK_REJECT


def resolve_database_uri(store: str, database_url: str | None) -> str:
    """
    Map the configured store backend to a SQLAlchemy URI.

    One backend per application instance; the transient store is an
    in-memory sqlite database and never falls back to the durable one.
    """
    if store not in STORE_BACKENDS:
        raise ValueError(f"FRESHCUT_STORE must be one of {STORE_BACKENDS}, got {store!r}")
    if store == STORE_TRANSIENT:
        return "sqlite://"
    if not database_url:
        raise ValueError("DATABASE_URL is required for the durable store")
    # Heroku-style URLs
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    return database_url
