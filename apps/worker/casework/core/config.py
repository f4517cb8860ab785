"""Worker configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


class Settings(BaseSettings):
    """Worker settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # Database (jobs table + shadow store)
    DATABASE_URL: str
    DB_CREATE_TABLES: bool = False

    # Legacy API adapter supplied by the host, as "package.module:factory".
    # The factory is called with the Settings instance and returns a LegacyApiClient.
    LEGACY_API_FACTORY: str = ""

    # Queue
    QUEUE_POLL_INTERVAL_SECONDS: float = 2.0
    QUEUE_MAINTENANCE_INTERVAL_SECONDS: float = 60.0
    QUEUE_DELETE_AFTER_DAYS: int = 7

    # Sync
    SYNC_BATCH_SIZE: int = 100
    SYNC_STALE_AFTER_MINUTES: int = 30
    SYNC_DEFAULT_LOOKBACK_HOURS: int = 24
    POLL_DEFAULT_LOOKBACK_HOURS: int = 24

    # Concurrency per job family
    SYNC_CONCURRENCY: int = 2
    PUSH_CONCURRENCY: int = 3
    TRIAGE_CONCURRENCY: int = 5
    SCHEDULED_CONCURRENCY: int = 1
    MAINTENANCE_CONCURRENCY: int = 1

    # Triage
    TRIAGE_CACHE_TTL_SECONDS: int = 3600
    TRIAGE_CACHE_MAX_ENTRIES: int = 1000
    TRIAGE_PREFETCH_AHEAD: int = 3
    EMAIL_CONTACT_TYPE_ID: int = 1  # Legacy contact type used for email addresses

    # LLM analysis (optional)
    LLM_PROVIDER: str = "gemini"
    LLM_API_KEY: str = ""
    LLM_MODEL: str = ""
    LLM_TIMEOUT_SECONDS: float = 30.0

    # Recurring schedules
    SCHEDULE_TIMEZONE: str = "Europe/London"
    POLL_CRON: str = "*/5 * * * *"
    FULL_SYNC_CRON: str = "0 2 * * *"
    CLEANUP_CRON: str = "0 3 * * 0"
    CLEANUP_OLDER_THAN_DAYS: int = 30

    # Offices to set up schedules for on worker start (comma-separated UUIDs)
    WORKER_OFFICE_IDS: str = ""

    @property
    def llm_enabled(self) -> bool:
        """LLM analysis runs only when an API key is configured."""
        return bool(self.LLM_API_KEY.strip())

    @property
    def office_ids_list(self) -> list[str]:
        """Parse WORKER_OFFICE_IDS into a list."""
        return [o.strip() for o in self.WORKER_OFFICE_IDS.split(",") if o.strip()]

    @property
    def concurrency_by_family(self) -> dict[str, int]:
        return {
            "sync": self.SYNC_CONCURRENCY,
            "push": self.PUSH_CONCURRENCY,
            "triage": self.TRIAGE_CONCURRENCY,
            "scheduled": self.SCHEDULED_CONCURRENCY,
            "maintenance": self.MAINTENANCE_CONCURRENCY,
        }


def load_settings() -> Settings:
    """Load settings, converting a missing DATABASE_URL into a configuration fault."""
    from pydantic import ValidationError

    try:
        return Settings()
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid worker configuration: {exc}") from exc
