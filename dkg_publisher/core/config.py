from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "dkg-publisher-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    admin_api_keys_json: str | None = None
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    auto_create_schema: bool = True
    dkg_endpoint: str | None = None
    dkg_publish_path: str = "/publish"
    dkg_blockchain: str = "hardhat1:31337"
    dkg_api_token: str | None = None
    dkg_finalization_confirmations: int = 3
    dkg_node_replications: int = 1
    publish_timeout_seconds: float = 120.0
    default_priority: int = 50
    default_privacy: str = "public"
    default_epochs: int = 2
    default_max_attempts: int = 3
    retry_base_seconds: int = 30
    retry_max_seconds: int = 900
    retry_jitter_ratio: float = 0.2
    dedup_window_seconds: int = 86400
    dedup_include_terminal: bool = False
    max_queue_depth: int = 10000
    max_in_flight: int = 100
    embedded_dispatcher: bool = False
    worker_name: str = "local-publisher"
    worker_count: int = 5
    idle_poll_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    shutdown_grace_seconds: float = 10.0
    lease_grace_seconds: int = 60
    startup_reconcile_all: bool = False
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    retention_purge_after_hours: int = 168
    retention_purge_interval_seconds: float = 3600.0
    retention_purge_batch_size: int = 500
    throughput_window_seconds: int = 900
    health_failure_window_seconds: int = 3600
    health_failure_warning_threshold: int = 10
    tool_session_ttl_seconds: int = 3600
    otel_enabled: bool = True
    otel_service_name: str = "dkg-publisher"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="DKGP_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
