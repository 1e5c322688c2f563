"""Central environment-driven settings for the checkout core.

The API process loads this once at startup. Behavior is controlled by
environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "orderflow"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./orderflow.db"
    api_key: str = ""
    redis_url: str = "redis://localhost:6379/0"
    checkout_rate_limit_per_minute: int = 15

    payment_provider: str = "simulated"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    webhook_simulated_mode: bool = False
    max_payment_retries: int = 3
    retry_backoff_base_seconds: int = 300
    retry_backoff_cap_seconds: int = 3600

    base_currency: str = "GBP"
    tax_inclusive_currencies: str = ""
    free_shipping_threshold_cents: int = 7500

    event_relay_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9092"
    otel_exporter_otlp_endpoint: str = ""
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def inclusive_currencies(self) -> frozenset[str]:
        """Currencies whose displayed prices already include tax."""

        codes = {
            code.strip().upper()
            for code in self.tax_inclusive_currencies.replace(",", " ").split()
            if code.strip()
        }
        codes.add(self.base_currency.upper())
        return frozenset(codes)


settings = Settings()
