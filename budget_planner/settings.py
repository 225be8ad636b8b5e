from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_DATABASE_URL = "sqlite:///./budget_planner.db"
DEFAULT_FRONTEND_ORIGIN = "http://localhost:3000"
DEFAULT_BASE_CURRENCY = "MDL"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    frontend_origin: str = DEFAULT_FRONTEND_ORIGIN
    base_currency: str = DEFAULT_BASE_CURRENCY
    log_level: str = "INFO"

    @property
    def connect_args(self) -> dict:
        if self.database_url.startswith("sqlite"):
            return {"check_same_thread": False}
        return {}


def get_base_currency() -> str:
    raw = os.getenv("PLANNER_BASE_CURRENCY", DEFAULT_BASE_CURRENCY)
    try:
        return normalize_currency(raw)
    except ValueError:
        return DEFAULT_BASE_CURRENCY


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", DEFAULT_FRONTEND_ORIGIN),
        base_currency=get_base_currency(),
        log_level=os.getenv("BUDGET_PLANNER_LOG_LEVEL", "INFO"),
    )
