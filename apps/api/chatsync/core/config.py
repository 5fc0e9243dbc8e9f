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

    # Logging
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""  # Secret for /internal/scheduled/* endpoints

    # Google service account with domain-wide delegation (Chat + Admin Directory)
    GOOGLE_SERVICE_ACCOUNT_FILE: str = ""
    GOOGLE_DIRECTORY_SUBJECT: str = ""  # Admin user impersonated for directory lookups
    GOOGLE_WORKSPACE_DOMAIN: str = ""  # Fallback domain for synthesized identities

    # Remote Chat API behaviour
    CHAT_API_TIMEOUT_SECONDS: float = 30.0
    CHAT_API_MAX_CONCURRENCY: int = 5  # Outbound calls in flight across all syncs
    CHAT_API_PAGE_SIZE: int = 100

    # Synchronizer
    CHAT_SYNC_MAX_MESSAGE_PAGES: int = 50  # Safety cap per space per pass
    CHAT_SYNC_MAX_MEMBER_PAGES: int = 50  # Membership pages per space; truncated lists are not applied
    CHAT_SYNC_STALE_RUN_MINUTES: int = 60  # Running sync rows older than this are ignored

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def workspace_domain(self) -> str | None:
        """Lowercased workspace domain, or None when unset."""
        domain = self.GOOGLE_WORKSPACE_DOMAIN.strip().lower()
        return domain or None


settings = Settings()
