from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "storescout-api"
    environment: str = "dev"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    url_normalization_overrides_json: str | None = None

    probe_timeout_seconds: float = 8.0
    probe_user_agent: str = "Mozilla/5.0 (compatible; storescout-probe/1.0)"
    probe_max_redirects: int = 5
    fetch_mode: Literal["direct", "scraping_api"] = "direct"
    scraping_api_url: str = "https://api.scrapingapi.com/v2/scrape"
    scraping_api_key: str | None = None

    verification_interval_seconds: float = 60.0
    verification_concurrency: int = 10
    verification_batch_size: int = 200
    verification_sweep_budget_seconds: float = 300.0
    verification_max_attempts: int = 8
    verification_retry_base_seconds: int = 3600
    verification_retry_max_seconds: int = 86400
    verification_recheck_hours: int = 24
    verification_confirmed_recheck_hours: int = 168
    verification_max_confidence_drop: float = 0.2

    health_check_interval_seconds: float = 120.0
    health_check_concurrency: int = 5
    health_check_batch_size: int = 100
    health_check_sweep_budget_seconds: float = 300.0
    health_check_max_attempts: int = 8
    health_check_retry_base_seconds: int = 3600
    health_check_retry_max_seconds: int = 86400
    health_check_recheck_hours: int = 24
    catalog_page_size: int = 250
    catalog_max_pages: int = 4

    classification_interval_seconds: float = 300.0
    classification_concurrency: int = 5
    classification_batch_size: int = 100
    classification_sweep_budget_seconds: float = 300.0
    classification_max_attempts: int = 8
    classification_retry_base_seconds: int = 3600
    classification_retry_max_seconds: int = 86400
    classification_recheck_hours: int = 24
    classification_classified_recheck_hours: int = 168
    classification_confidence_floor: float = 0.7

    scheduler_max_backoff_seconds: float = 900.0

    otel_enabled: bool = True
    otel_service_name: str = "storescout"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
