"""
Application configuration for the case lifecycle engine.

Settings are grouped into nested section models and loaded by pydantic-settings
from the environment and an optional ``.env`` file. Top-level fields use their
own name (``DEBUG``, ``APP_NAME``); section fields use a double underscore,
e.g. ``LIFECYCLE__SETTLEMENT_APPROVAL_THRESHOLD``. Names are case-insensitive.
"""

from functools import lru_cache
from typing import Dict, Any, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LifecycleSettings(BaseModel):
    """Case lifecycle rule configuration."""
    settlement_approval_threshold: float = Field(
        default=100_000.0,
        description="Settlement amount above which court approval is required before resolution"
    )
    max_upcoming_milestones: int = Field(
        default=5,
        description="Number of soonest-due open tasks reported as upcoming milestones"
    )
    repository_backend: Literal["memory", "mongodb"] = Field(
        default="memory",
        description="Persistence backend for case lifecycle state"
    )
    default_task_assignee: Optional[str] = Field(
        default=None,
        description="Assignee of phase-entry tasks; the acting user when unset"
    )


class DatabaseSettings(BaseModel):
    """MongoDB connection used by the ``mongodb`` repository backend."""
    mongodb_url: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection URL"
    )
    mongodb_database: str = Field(
        default="case_lifecycle",
        description="MongoDB database name"
    )
    use_transactions: bool = Field(
        default=True,
        description="Wrap lifecycle commits in MongoDB multi-document transactions (requires a replica set)"
    )
    server_selection_timeout_ms: int = Field(
        default=5000,
        description="MongoDB server selection timeout"
    )


class LoggingSettings(BaseModel):
    """structlog output configuration."""
    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    use_json: bool = Field(
        default=False,
        description="Render JSON lines instead of rich console output"
    )
    enable_correlation_ids: bool = Field(
        default=True,
        description="Attach request correlation IDs to log records"
    )
    log_file: Optional[str] = Field(
        default=None,
        description="Optional log file path"
    )


class Settings(BaseSettings):
    """Root settings: service identity plus the lifecycle, database and logging sections."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=True,
    )

    app_name: str = Field(
        default="Case Lifecycle Service",
        description="Service name shown in the OpenAPI document"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )
    debug: bool = Field(
        default=False,
        description="FastAPI debug mode"
    )
    environment: str = Field(
        default="development",
        description="Environment (development/staging/production)"
    )

    lifecycle: LifecycleSettings = Field(
        default_factory=LifecycleSettings,
        description="Lifecycle rule configuration"
    )
    database: DatabaseSettings = Field(
        default_factory=DatabaseSettings,
        description="Database configuration"
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration"
    )

    def get_nested_setting(self, path: str, default: Any = None) -> Any:
        """
        Get a nested setting using dot notation.

        Args:
            path: Dot-separated path (e.g., "lifecycle.settlement_approval_threshold")
            default: Value returned when the path does not exist
        """
        try:
            current = self
            for part in path.split('.'):
                current = getattr(current, part)
            return current
        except AttributeError:
            return default

    def validate_configuration(self) -> Dict[str, list[str]]:
        """
        Validate the entire configuration.

        Returns:
            Dictionary with validation errors by section
        """
        errors: Dict[str, list[str]] = {}

        if self.lifecycle.settlement_approval_threshold < 0:
            errors.setdefault("lifecycle", []).append(
                "settlement_approval_threshold must not be negative"
            )
        if self.lifecycle.max_upcoming_milestones <= 0:
            errors.setdefault("lifecycle", []).append(
                "max_upcoming_milestones must be a positive integer"
            )
        if not self.database.mongodb_url.startswith(("mongodb://", "mongodb+srv://")):
            errors.setdefault("database", []).append(
                f"Invalid MongoDB URL: {self.database.mongodb_url}"
            )
        if self.logging.level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            errors.setdefault("logging", []).append(
                f"Invalid logging level: {self.logging.level}"
            )

        return errors


# Environment variable mapping examples:
# DEBUG=true
# ENVIRONMENT=production
# LIFECYCLE__SETTLEMENT_APPROVAL_THRESHOLD=250000
# LIFECYCLE__REPOSITORY_BACKEND=mongodb
# DATABASE__MONGODB_URL=mongodb://mongo:27017
# LOGGING__LEVEL=DEBUG

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings built once per process from the environment and ``.env``."""
    return Settings()
