from enum import StrEnum
from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class StrategyType(StrEnum):
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"

class Settings(BaseSettings):
    app_name: str = "Turnstile API"
    redis_url: str
    rate_limit_strategy: StrategyType = StrategyType.SLIDING_WINDOW
    rate_limit_default: int = Field(default=100, ge=0)
    rate_limit_window: int = Field(default=60, gt=0)
    rate_limit_key_prefix: str = "turnstile"
    rate_limit_key_headers: list[str] = ["X-API-Key"]
    rate_limit_fail_open: bool = False
    store_timeout: float | None = 1.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

@lru_cache
def get_settings() -> Settings:
    return Settings()
