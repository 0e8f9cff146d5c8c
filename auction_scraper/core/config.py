from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "auction-scraper-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5
    scrape_queue_name: str = "scrape_jobs"
    queue_poll_interval_seconds: float = 1.0
    queue_batch_size: int = 1
    queue_visibility_timeout_seconds: int = 600
    queue_shutdown_grace_seconds: float = 30.0
    job_timeout_seconds: float = 300.0
    stuck_job_sweep_interval_seconds: float = 60.0
    stuck_job_stale_after_seconds: int = 600
    browser_headless: bool = True
    browser_locale: str = "en-US"
    browser_timezone_id: str = "Asia/Kuala_Lumpur"
    page_wait_timeout_ms: int = 15000
    login_url_marker: str = "login.html"
    session_cookie_name: str = "token"
    max_pages: int = 500
    default_currency: str = "RM"
    default_land_area_unit: str = "sqft"
    fail_on_record_count_mismatch: bool = False
    credentials_encryption_key: str | None = None
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "auction-scraper"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SCRAPER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
