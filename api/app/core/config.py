from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "docjobs-api"
    environment: str = "dev"
    store_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    store_timeout_seconds: float = 5.0
    store_retry_backoff_seconds: float = 0.2
    default_total_steps: int = 6
    default_prompt: str = "Generate course documentation"
    max_documents_bytes: int = 5_000_000
    rate_limit_enabled: bool = True
    rate_limit_max_requests: int = 120
    rate_limit_window_seconds: int = 60
    stuck_job_sweep_interval_seconds: float = 0.0
    stuck_job_stale_after_seconds: int = 3600
    worker_url: str | None = None
    worker_token: str | None = None
    worker_timeout_seconds: float = 10.0
    public_base_url: str = "http://localhost:8000"
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "docjobs-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="DOCJOBS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
