"""Configuration management using Pydantic settings."""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (prefix ``QONTALK_``)."""

    model_config = SettingsConfigDict(
        env_prefix="QONTALK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application Settings
    environment: str = "development"
    log_level: str = "INFO"
    log_dir: str = ""  # Empty = console logging only

    # Session Rule Engine
    starting_state: str = "start"
    session_timeout_seconds: float = 30 * 60  # Idle age before eviction
    session_cleanup_interval_seconds: float = 60 * 60  # Sweep period (0 disables)
    concurrent_access: bool = False  # Per-user locking instead of one bot-wide lock
    listener_timeout_seconds: float = 5.0  # Upper bound for async listeners

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


# Global settings instance
settings = Settings()
