"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    postgres_dsn: str
    api_key: str
    provider_url: str = "http://payment-provider:8080"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    otel_sample_ratio: float = 1.0

    ledger_max_attempts: int = 3
    ledger_retry_backoff_seconds: float = 0.02
    platform_fee_percent: int = 20

    billing_tick_interval_seconds: int = 60
    billing_tick_timeout_seconds: float = 10.0
    billing_heartbeat_timeout_seconds: int = 90
    billing_minimum_minutes: int = 1

    settlement_providers: str = "stripe"
    settlement_currency: str = "USD"
    settlement_max_attempts: int = 5
    settlement_backoff_base_seconds: float = 1.0
    cents_per_coin: int = 1

    reconciliation_window_minutes: int = 60
    reconciliation_interval_seconds: int = 3600
    reconciliation_tolerance_coins: int = 0
    reconciliation_claim_timeout_seconds: int = 300

    show_heartbeat_timeout_seconds: int = 120
    show_reaper_interval_seconds: int = 30
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def allowed_providers(self) -> set[str]:
        return {p.strip().lower() for p in self.settlement_providers.split(",") if p.strip()}


settings = CommonSettings()
