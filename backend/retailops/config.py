# backend/retailops/config.py
from __future__ import annotations
import os


def _csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip().lower() for part in value.split(",") if part.strip())


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/retailops.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///retailops.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Cities served by own riders (inside_channel); everything else goes to courier.
    METRO_CITIES = _csv(os.environ.get(
        "METRO_CITIES",
        "kathmandu,lalitpur,bhaktapur,patan,kirtipur,madhyapur thimi,"
        "budhanilkantha,tokha,chandragiri,tarakeshwar,godawari",
    ))

    # Post-transition side effects (tickets, notifications)
    HOOKS_ENABLED = os.environ.get("HOOKS_ENABLED", "true").lower() == "true"

    # Retry policy for lock conflicts on stock rows and order rows
    STOCK_RETRY_ATTEMPTS = int(os.environ.get("STOCK_RETRY_ATTEMPTS", "3"))
    STOCK_RETRY_BACKOFF = float(os.environ.get("STOCK_RETRY_BACKOFF", "0.1"))

    # Maker roles whose inventory transactions skip the checker step
    PRIVILEGED_ROLES = _csv(os.environ.get("PRIVILEGED_ROLES", "admin,manager"))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STOCK_RETRY_BACKOFF = 0.0
    LOG_LEVEL = "DEBUG"
