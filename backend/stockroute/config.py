# backend/stockroute/config.py
from __future__ import annotations
import os


def _split_csv(value: str) -> set[str]:
    return {part.strip() for part in value.split(",") if part.strip()}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockroute.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockroute.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Identity is established upstream; we only read the acting user id
    ACTOR_HEADER = os.environ.get("ACTOR_HEADER", "X-User-Id")

    TRANSFER_NUMBER_PREFIX = os.environ.get("TRANSFER_NUMBER_PREFIX", "TRF")

    CORS_ALLOWED_ORIGINS = _split_csv(os.environ.get(
        "CORS_ALLOWED_ORIGINS",
        "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
    ))
