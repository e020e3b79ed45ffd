from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide configuration, read once from the environment at startup.

    Every field maps to the upper-case environment variable of the same name
    (BOT_TOKEN, PRIVATE_WEEKLY_LIMIT, ...). Empty values fall back to defaults.
    """

    model_config = SettingsConfigDict(frozen=True, env_ignore_empty=True, extra="ignore")

    bot_token: str = ""
    webhook_url: Optional[str] = None
    port: int = 8080

    # --- Классификатор
    openai_api_key: Optional[str] = None
    model: str = "gpt-4o"
    fallback_model: str = "gpt-4o-mini"
    classifier_attempts: int = Field(3, ge=1)
    classifier_backoff: float = 20.0
    classifier_timeout: float = 60.0

    # --- Внешние базы
    ebird_api_key: Optional[str] = None
    user_agent: str = "WildlifeIDBot/1.0"

    # --- Недельные лимиты
    group_weekly_limit: int = Field(50, ge=0)
    private_weekly_limit: int = Field(10, ge=0)
    limit_timezone: str = "Asia/Singapore"
    limit_reset_weekday: int = Field(0, ge=0, le=6)
    limit_reset_hour: int = Field(0, ge=0, le=23)

    # --- Кэш и запросы
    result_ttl: float = 300.0
    cache_sweep_interval: float = 120.0
    media_group_window: float = 1.0
    request_timeout: float = 180.0
    pending_timeout: float = 300.0
    request_grace: float = 300.0
    request_sweep_interval: float = 60.0
    max_requests_per_user: int = Field(5, ge=1)
