from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: str = Field(default="sqlite:///./campus_transit.db")
    jwt_secret: str = Field(default="your-secret-key")
    jwt_algorithm: str = Field(default="HS256")

    # voting workflow
    vote_threshold: float = Field(default=25.0)
    cross_region_weight: float = Field(default=0.5)
    vote_cooldown_minutes: int = Field(default=30)
    vote_expiry_minutes: int = Field(default=60)
    driver_response_minutes: int = Field(default=10)
    default_region: str = Field(default="Hubli")

    # poller
    enable_poller: bool = Field(default=True)
    poll_interval_seconds: int = Field(default=60)
    topic_cache_seconds: int = Field(default=5)

    # outbound webhook
    telegram_api_base: str = Field(default="https://api.telegram.org")
    telegram_bot_token: Optional[str] = Field(default=None)
    telegram_chat_ids: List[str] = Field(default_factory=list)
    webhook_retries: int = Field(default=3)
    webhook_retry_delay_seconds: float = Field(default=2.0)

    log_file: str = Field(default="transit.log")


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name, default)
    if value == "":
        return None
    return value


def _csv(raw: Optional[str]) -> List[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


def _load_settings() -> Settings:
    env = os.getenv
    return Settings(
        database_url=env("DATABASE_URL", "sqlite:///./campus_transit.db") or "sqlite:///./campus_transit.db",
        jwt_secret=env("JWT_SECRET", "your-secret-key") or "your-secret-key",
        jwt_algorithm=env("JWT_ALGORITHM", "HS256") or "HS256",
        vote_threshold=float(env("VOTE_THRESHOLD", "25")),
        cross_region_weight=float(env("CROSS_REGION_WEIGHT", "0.5")),
        vote_cooldown_minutes=int(env("VOTE_COOLDOWN_MINUTES", "30")),
        vote_expiry_minutes=int(env("VOTE_EXPIRY_MINUTES", "60")),
        driver_response_minutes=int(env("DRIVER_RESPONSE_MINUTES", "10")),
        default_region=env("DEFAULT_REGION", "Hubli") or "Hubli",
        enable_poller=env("ENABLE_POLLER", "1") == "1",
        poll_interval_seconds=int(env("POLL_INTERVAL_SECONDS", "60")),
        topic_cache_seconds=int(env("TOPIC_CACHE_SECONDS", "5")),
        telegram_api_base=env("TELEGRAM_API_BASE", "https://api.telegram.org") or "https://api.telegram.org",
        telegram_bot_token=_env("TELEGRAM_BOT_TOKEN"),
        telegram_chat_ids=_csv(env("TELEGRAM_CHAT_IDS")),
        webhook_retries=int(env("WEBHOOK_RETRIES", "3")),
        webhook_retry_delay_seconds=float(env("WEBHOOK_RETRY_DELAY_SECONDS", "2")),
        log_file=env("LOG_FILE", "transit.log") or "transit.log",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return _load_settings()


def reload_settings() -> Settings:
    get_settings.cache_clear()
    return get_settings()


__all__ = ["Settings", "get_settings", "reload_settings"]
