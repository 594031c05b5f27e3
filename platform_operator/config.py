"""Operator configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Operator settings loaded from environment variables."""

    # Desired-state object store
    database_url: str = "sqlite:///./platform-operator.db"

    # Platform inventory API
    platform_url: str = "http://localhost:6385"
    auth_url: str = "http://localhost:5000/v3"
    platform_username: str = "admin"
    platform_password: str = ""
    platform_project: str = "admin"
    platform_verify_tls: bool = True

    # Per-call HTTP timeout and in-call retry policy (seconds)
    platform_timeout: float = 30.0
    platform_max_retries: int = 2
    platform_retry_backoff_base: float = 1.0
    platform_retry_backoff_max: float = 10.0

    # Worker pool
    workers: int = 4
    reconcile_timeout: float = 120.0
    resync_interval: float = 300.0

    # Requeue policy (seconds)
    retry_backoff_base: float = 2.0
    retry_backoff_max: float = 300.0
    blocked_requeue_delay: float = 10.0
    poll_interval: float = 5.0

    # Optimistic status writes
    status_write_retries: int = 5

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    # HTTP surface
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080

    class Config:
        env_prefix = "PLATFORM_OPERATOR_"


settings = Settings()
