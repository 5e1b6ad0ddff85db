from datetime import time
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Subtrack"
    app_env: str = "local"
    app_debug: bool = True
    log_level: str = "INFO"
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./subtrack.db"
    redis_url: str = "redis://redis:6379/0"
    timezone: str = "UTC"
    billing_days_per_year: Decimal = Decimal("365.2425")
    currency_precision: Decimal = Decimal("0.01")
    price_change_alert_window_days: int = 7
    default_reminder_time: time = time(9, 0)
    quiet_hours_enabled: bool = False
    quiet_hours_start: time = time(22, 0)
    quiet_hours_end: time = time(8, 0)
    unused_after_days: int = 30
    max_daily_reminders: int = 10
    reminder_retention_days: int = 30
    renewal_batch_max_workers: int = 1
    renewal_run_hour: int = 6
    metrics_enabled: bool = False
    otel_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
