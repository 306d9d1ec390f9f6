"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str

    # Envelope encryption
    # local: KMS_KEY_ID is a base64 32-byte master key
    # aws: KMS_KEY_ID is a key id, alias or ARN
    KMS_PROVIDER: str = "local"
    KMS_KEY_ID: str = ""
    KMS_ENDPOINT_URL: str = ""
    KMS_TIMEOUT_SECONDS: float = 5.0
    DEK_CACHE_TTL_SECONDS: int = 60

    # AWS credentials (optional; falls back to the default boto3 chain)
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""

    # Fallback cipher secret (used only while the KMS is unreachable)
    FALLBACK_ENCRYPTION_SECRET: str = ""

    # Google OAuth
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    TOKEN_REFRESH_LEAD_MINUTES: int = 10  # refresh access tokens this long before expiry

    # Push notifications
    GOOGLE_CALENDAR_WEBHOOK_URL: str = "http://localhost:8000/webhooks/google-calendar"
    GOOGLE_CALENDAR_WEBHOOK_TOKEN: str = ""
    GOOGLE_PUBSUB_TOPIC: str = ""  # projects/<project>/topics/<topic>
    WATCH_RENEWAL_LEAD_HOURS: int = 24

    # Outbound provider calls
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Health probes
    HEALTH_PROBE_CONCURRENCY: int = 4
    HEALTH_PROBE_FRESHNESS_MINUTES: int = 30
    HEALTH_PROBE_CACHE_SECONDS: int = 600
    HEALTH_PROBE_FAILURE_CACHE_SECONDS: int = 120

    # Worker
    WORKER_POLL_INTERVAL: int = 10
    WORKER_BATCH_SIZE: int = 10
    WORKER_CONCURRENCY: int = 1
    JOB_RETENTION_DAYS: int = 7

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    @property
    def fallback_configured(self) -> bool:
        return bool(self.FALLBACK_ENCRYPTION_SECRET)

    @property
    def calendar_channel_token(self) -> str | None:
        """Shared secret sent back by Google on every calendar push."""
        return self.GOOGLE_CALENDAR_WEBHOOK_TOKEN or None


settings = Settings()
