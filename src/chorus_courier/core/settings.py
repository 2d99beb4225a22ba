"""Application settings and configuration.

This module defines all configuration options for the Chorus Courier federation
queues. Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files. Queue
    components never read this object directly; the worker entry points turn
    it into explicit constructor arguments.
    """

    # Application metadata
    app_name: str = Field(default="Chorus Courier", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database configuration
    database_url: str = Field(default="sqlite:///./courier.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Instance identity
    instance_domain: str = Field(default="localhost", alias="INSTANCE_DOMAIN")
    user_agent: str = Field(default="Chorus-Courier/0.1", alias="FEDERATION_USER_AGENT")

    # Federation policy (comma separated domain lists)
    federation_enabled: bool = Field(default=True, alias="FEDERATION_ENABLED")
    blocked_instances: str = Field(default="", alias="FEDERATION_BLOCKED_INSTANCES")
    allowed_instances: str = Field(default="", alias="FEDERATION_ALLOWED_INSTANCES")
    auto_accept_followers: bool = Field(default=False, alias="FEDERATION_AUTO_ACCEPT_FOLLOWERS")

    # Delivery worker
    delivery_batch_size: int = Field(default=20, alias="DELIVERY_BATCH_SIZE")
    delivery_max_retries: int = Field(default=5, alias="DELIVERY_MAX_RETRIES")
    delivery_direct_max_retries: int = Field(default=2, alias="DELIVERY_DIRECT_MAX_RETRIES")
    delivery_reclaim_guard_minutes: int = Field(
        default=5,
        alias="DELIVERY_RECLAIM_GUARD_MINUTES",
    )
    delivery_stale_minutes: int = Field(default=5, alias="DELIVERY_STALE_MINUTES")
    delivery_concurrency: int = Field(default=8, alias="DELIVERY_CONCURRENCY")
    delivery_http_timeout_seconds: float = Field(
        default=10.0,
        alias="DELIVERY_HTTP_TIMEOUT_SECONDS",
    )

    # Inbox worker
    inbox_batch_size: int = Field(default=10, alias="INBOX_BATCH_SIZE")
    inbox_stuck_grace_minutes: int = Field(default=15, alias="INBOX_STUCK_GRACE_MINUTES")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_inbox_instance_max: int = Field(default=100, alias="RATE_LIMIT_INBOX_INSTANCE_MAX")
    rate_limit_inbox_instance_window_seconds: int = Field(
        default=3600,
        alias="RATE_LIMIT_INBOX_INSTANCE_WINDOW_SECONDS",
    )
    rate_limit_inbox_actor_max: int = Field(default=20, alias="RATE_LIMIT_INBOX_ACTOR_MAX")
    rate_limit_inbox_actor_window_seconds: int = Field(
        default=3600,
        alias="RATE_LIMIT_INBOX_ACTOR_WINDOW_SECONDS",
    )

    # Remote actor cache
    actor_cache_max_age_hours: int = Field(default=24, alias="ACTOR_CACHE_MAX_AGE_HOURS")

    # Cleanup retention
    retention_inbox_processed_days: int = Field(default=7, alias="RETENTION_INBOX_PROCESSED_DAYS")
    retention_rate_limit_hours: int = Field(default=24, alias="RETENTION_RATE_LIMIT_HOURS")

    # Shared secret expected from the external scheduler on tick endpoints
    cron_secret: str | None = Field(default=None, alias="CRON_SECRET")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling such as Alembic."""
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url


settings = Settings()
