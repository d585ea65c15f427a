# backend/app/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/pharmacy.sqlite3 unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///pharmacy.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Flat sales tax in basis points (1200 = 12%)
    SALES_TAX_RATE_BPS = int(os.environ.get("SALES_TAX_RATE_BPS", "1200"))

    # Batches expiring within this many days produce validation warnings
    EXPIRY_WARNING_DAYS = int(os.environ.get("EXPIRY_WARNING_DAYS", "30"))

    # Default hold window for reservations created without an explicit expiry
    RESERVATION_TTL_MINUTES = int(os.environ.get("RESERVATION_TTL_MINUTES", "15"))

    # When enabled, sale creation places a reservation for every item
    RESERVE_STOCK_ON_SALE = _env_bool("RESERVE_STOCK_ON_SALE", False)

    AUDIT_LOG_RETENTION_DAYS = int(os.environ.get("AUDIT_LOG_RETENTION_DAYS", "365"))
    MOVEMENT_RETENTION_DAYS = int(os.environ.get("MOVEMENT_RETENTION_DAYS", "1825"))
