from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "claimcheck-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    run_lease_seconds: int = 60
    run_heartbeat_interval_seconds: float = 15.0
    run_recovery_grace_seconds: int = 60
    # 1 initial attempt + 3 retries.
    job_max_attempts: int = 4
    job_retry_base_seconds: int = 30
    job_retry_max_seconds: int = 600
    job_claim_lease_seconds: int = 900
    selector_budget: int = 100
    selector_interval_seconds: float = 60.0
    word_count_limit: int = 10000
    investigation_prompt_id: str = "claimcheck-v1"
    database_encryption_key: str | None = None
    database_encryption_key_id: str = "primary"
    key_source_ttl_seconds: int = 1800
    investigator_url: str | None = None
    investigator_timeout_seconds: float = 600.0
    worker_id: str = "local-worker"
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    worker_batch_size: int = 5
    otel_enabled: bool = True
    otel_service_name: str = "claimcheck"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CC_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
