"""Configuration management for the flowrunner service.

Every ``AppConfig`` field can be set through an environment variable named
``FLOWRUNNER_`` plus the upper-cased field name, e.g. ``FLOWRUNNER_DATABASE_URL``.
A dotenv file is loaded first when present.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "FLOWRUNNER_"

SUPPORTED_DATABASE_SCHEMES = ("sqlite", "postgresql", "mysql")


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application
    app_name: str = Field(default="Flowrunner", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")
    environment: Environment = Field(default=Environment.DEVELOPMENT, description="Deployment environment")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Durable store
    database_url: str = Field(default="sqlite:///./flowrunner.db", description="SQLAlchemy database URL")
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Execution engine
    max_concurrent_executions: int = Field(
        default=10, ge=1, description="Worker threads driving runs"
    )
    wait_poll_interval: float = Field(
        default=1.0, gt=0, description="Seconds between scans for due delays and approval timeouts"
    )
    test_node_count: int = Field(
        default=3, ge=1, description="Nodes executed by a test run when the caller gives no count"
    )
    http_timeout: float = Field(default=30.0, gt=0, description="Timeout in seconds for outbound HTTP calls")
    approval_max_renotifications: int = Field(
        default=3, ge=0, description="Reminders sent before a renotify approval falls back to failing"
    )
    slack_webhook_url: Optional[str] = Field(default=None, description="Incoming webhook for Slack notifications")

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s%(run_context)s",
        description="Plain log line format; %(run_context)s expands to the run ids"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    structured_logging: bool = Field(default=False, description="Emit JSON log lines")
    log_max_size: int = Field(default=10 * 1024 * 1024, description="Bytes before the log file rotates")
    log_backup_count: int = Field(default=5, description="Rotated log files kept")

    # Health and monitoring
    health_check_timeout: float = Field(default=5.0, gt=0, description="Per-check timeout in seconds")
    slow_request_threshold: float = Field(default=5.0, description="Requests slower than this are logged")
    enable_performance_monitoring: bool = Field(default=True, description="Install the timing middleware")

    # Security
    cors_origins: List[str] = Field(default=["*"], description="CORS allowed origins")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Only dialects the store has been run against are accepted."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        scheme = v.split('://')[0].split('+')[0].lower()
        if scheme not in SUPPORTED_DATABASE_SCHEMES:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {list(SUPPORTED_DATABASE_SCHEMES)}")
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator('cors_origins', mode='before')
    @classmethod
    def split_origins(cls, v):
        """Accept a comma separated string, as environment variables provide."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.lower().startswith("sqlite")

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Keyword arguments for ``uvicorn.run``."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'AppConfig':
        """Build a configuration from ``FLOWRUNNER_*`` variables; unset fields keep their defaults.

        Values are strings; pydantic coerces them to each field's type
        (``"yes"`` to ``True``, ``"9001"`` to ``9001``).
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw
        return cls.model_validate(values)


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load ``config_file`` (or ``./.env``) into the environment, then build the global configuration."""
    global _config

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def _ensure_parent_dir(path: str, purpose: str) -> Optional[str]:
    directory = os.path.dirname(path)
    if not directory or os.path.exists(directory):
        return None
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        return f"Cannot create {purpose} directory {directory}: {e}"
    return None


def validate_config(config: AppConfig) -> None:
    """Cross-field and filesystem checks that a single field validator cannot make.

    Raises:
        ValueError: Listing every problem found
    """
    errors = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        errors.append(_ensure_parent_dir(config.database_url.split("///", 1)[-1], "database"))
    if config.log_file:
        errors.append(_ensure_parent_dir(config.log_file, "log"))

    if config.max_concurrent_executions > 100:
        errors.append("High concurrent execution limit may impact performance")
    if config.is_production and "*" in config.cors_origins:
        errors.append("Wildcard CORS origins are not allowed in production")

    errors = [error for error in errors if error]
    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment presets
def get_development_config() -> AppConfig:
    return AppConfig(
        debug=True,
        reload=True,
        environment=Environment.DEVELOPMENT,
        log_level=LogLevel.DEBUG,
        database_echo=True,
    )


def get_production_config() -> AppConfig:
    return AppConfig(
        environment=Environment.PRODUCTION,
        log_level=LogLevel.INFO,
        structured_logging=True,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    """In-memory store, small pool and a fast wait scheduler."""
    return AppConfig(
        debug=True,
        environment=Environment.TESTING,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_executions=2,
        wait_poll_interval=0.05,
    )
