"""
Convotag Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables.
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for Convotag logs.

    Follows XDG Base Directory Specification:
    - Uses $XDG_STATE_HOME/convotag if XDG_STATE_HOME is set
    - Falls back to $HOME/.local/state/convotag if not set
    - Returns relative path ./logs if HOME not available (dev/testing)

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "convotag" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "convotag" / "logs")

    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    # Explicit URL wins; otherwise the postgres_* components are used when
    # postgres_host is set, and a local SQLite file is the fallback.
    database_url_override: str = ""
    postgres_db: str = "convotag"
    postgres_user: str = "convotag"
    postgres_password: str = "convotag_dev_password"
    postgres_host: str = ""
    postgres_port: int = 5432
    sqlite_path: str = "./convotag.db"

    db_pool_size: int = 5
    db_pool_max_overflow: int = 5
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800
    db_retry_attempts: int = 3  # Retries for transient storage errors
    db_retry_initial_delay: float = 0.05  # Seconds, doubled per attempt

    @property
    def postgres_url(self) -> str:
        """Construct PostgreSQL URL from components."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def database_url(self) -> str:
        """Resolve the database URL to connect to."""
        if self.database_url_override:
            return self.database_url_override
        if self.postgres_host:
            return self.postgres_url
        return f"sqlite:///{self.sqlite_path}"

    # Analysis
    analysis_enabled: bool = True  # Enqueue analysis jobs after qualifying appends
    analysis_provider: str = "rule"  # rule or openai
    analysis_timeout_seconds: float = 30.0  # Bound on a single analyzer call
    analysis_max_workers: int = 2  # Worker threads polling the job queue
    analysis_poll_interval: float = 2.0  # Seconds between polls when idle
    analysis_stale_job_minutes: int = 30  # Reset processing jobs older than this
    analysis_purge_days: int = 7  # Delete finished jobs older than this

    # OpenAI (used when analysis_provider=openai)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 1200

    # Recommendations
    recommendation_min_confidence: float = 0.3  # Drop weaker candidates

    # Cache
    cache_enabled: bool = True
    cache_ttl_seconds: int = 1800  # Memory bound only; invalidation keeps it fresh
    cache_max_entries: int = 10_000

    # Application
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True  # Enable console (stdout/stderr) logging
    log_file_enabled: bool = False  # Enable file-based logging
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5  # Keep 5 backup files

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())


# Global settings instance
settings = Settings()
