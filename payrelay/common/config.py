"""Central environment-driven settings for the gateway and the queue worker.

Both processes load this once at startup. Behavior is controlled by
environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_WEBHOOK_IP_WHITELIST = [
    # Provider production
    "196.201.214.0/24",
    "196.201.214.200",
    "196.201.214.206",
    "196.201.214.207",
    "196.201.214.208",
    # Provider sandbox
    "196.201.212.0/24",
    "196.201.212.127",
    "196.201.212.128",
    "196.201.212.129",
    "196.201.212.138",
    "41.215.136.0/24",
    "41.215.137.0/24",
    # Local testing
    "127.0.0.1",
    "::1",
    "localhost",
]


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "payrelay"
    log_level: str = "INFO"
    database_url: str
    auto_create_schema: bool = True
    redis_url: str = "redis://redis:6379/0"
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    mpesa_environment: str = "sandbox"
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = "174379"
    mpesa_business_shortcode: str = ""
    mpesa_passkey: str = ""
    mpesa_initiator_name: str = "testapi"
    mpesa_security_credential: str = ""
    mpesa_callback_base_url: str = "https://your-domain.com"
    mpesa_request_timeout_seconds: float = 30.0

    retry_initial_delay_ms: int = 1000
    retry_max_delay_ms: int = 300_000
    retry_backoff_multiplier: float = 2.0
    retry_jitter_factor: float = 0.1
    retry_batch_size: int = 10
    retry_concurrency: int = 3
    retry_http_timeout_seconds: float = 30.0
    retry_default_max_retries: int = 5
    retry_poll_interval_ms: int = 30_000
    retry_processor_enabled: bool = False
    retry_processing_lease_seconds: int | None = None

    mpesa_skip_ip_verification: bool = False
    webhook_ip_whitelist: list[str] = DEFAULT_WEBHOOK_IP_WHITELIST
    rate_limit_backend: str = "memory"
    webhook_rate_limit: int = 100
    webhook_rate_window_seconds: int = 60
    webhook_rate_sweep_seconds: int = 60

    broadcaster_sweep_seconds: int = 30
    broadcaster_stale_seconds: int = 60
    sse_heartbeat_seconds: int = 30
    sse_queue_size: int = 1000

    c2b_min_amount: float = 1
    c2b_max_amount: float = 150_000
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
