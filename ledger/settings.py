"""Runtime configuration for the ledger service, loaded with pydantic-settings."""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "CAREWALLET_"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseSettings):
    """Process-level settings; every field can be overridden with ``CAREWALLET_<NAME>``."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL; the in-memory backend is used when unset.",
    )
    freshness_window_seconds: int = Field(default=300, gt=0)
    processing_timeout_seconds: float = Field(default=10.0, gt=0)
    amount_places: int = Field(default=6, ge=0, le=18)
    settlement_backend: Literal["mock", "live"] = "mock"
    policies_file: Optional[Path] = None
    signing_key_id: str = "oracle-default"
    log_level: str = "INFO"

    @property
    def amount_quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.amount_places)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("ledger").setLevel(level)
    logging.getLogger("webhooks").setLevel(level)
    logging.getLogger("policies").setLevel(level)
