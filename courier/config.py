"""Configuration settings for the courier services."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "courier"
    db_user: str = "courier"
    db_password: str = "courier"
    database_url_override: str | None = None

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_publish_enabled: bool = False

    # LLM provider (relevance checks and rendering)
    llm_api_url: str = "https://api.anthropic.com"
    llm_api_key: str = ""
    llm_model: str = "claude-sonnet-4-20250514"
    relevance_timeout_seconds: float = 15.0
    render_timeout_seconds: float = 20.0

    # Delivery discipline defaults (per-user overrides live on users row)
    max_messages_per_day: int = 10
    max_messages_per_hour: int = 2
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    default_timezone: str = "America/New_York"
    active_override_minutes: int = 10
    urgent_bypasses_quiet_hours: bool = True

    # Orchestrator loop
    orchestrator_interval_seconds: int = 60
    orchestrator_batch_size: int = 50
    message_backoff_base_seconds: int = 60
    message_backoff_max_seconds: int = 3600
    relevance_delta_limit: int = 20

    # Dispatcher loop
    dispatcher_interval_seconds: int = 30
    dispatcher_batch_size: int = 10
    task_default_max_retries: int = 3
    task_backoff_base_seconds: int = 60
    task_backoff_max_seconds: int = 3600
    handler_modules: list[str] = []

    # Reconciliation
    attempting_stale_seconds: int = 600
    claimed_stale_seconds: int = 1800

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override.replace("+asyncpg", "")
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "COURIER_"
        env_file = ".env"


# Global settings instance
settings = Settings()
