"""
Settings for the questionnaire and scoring engine.

Each concern reads its own environment prefix through pydantic-settings:

    DB_        database backend and pool
    LOG_       log level, rotating file, JSON output
    SECURITY_  bearer tokens, admin roles, CORS
    AI_        providers, timeouts, generation cache
    SCORING_   percentile floor, insight limit, planning thresholds
    APP_       environment and API metadata

``get_settings()`` returns one lazily populated ``Settings`` per process;
tests change the environment and call ``reset_settings()``.
"""

from __future__ import annotations

import os
from functools import cached_property, lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

Environment = Literal["development", "testing", "production"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

LEVEL_BY_ENVIRONMENT: dict[str, LogLevel] = {
    "development": "DEBUG",
    "testing": "WARNING",
    "production": "WARNING",
}


class DatabaseConfig(BaseSettings):
    """
    Where templates, campaigns and results are stored.

    ``DB_URL`` overrides the backend-specific fields, which is how Alembic and
    the sweeper are pointed at another database.

    Example:
        >>> DatabaseConfig(backend="sqlite", sqlite_path="./data/moobee").get_connection_url()
        'sqlite:///data/moobee.db'
    """

    url: str | None = Field(None, description="Full SQLAlchemy URL; wins over the fields below")
    backend: Literal["sqlite", "mysql"] = Field("sqlite", description="Database backend type")

    sqlite_path: str | None = Field("./moobee.db", description="SQLite database file path")

    mysql_host: str | None = Field("localhost")
    mysql_port: int | None = Field(3306, ge=1, le=65535)
    mysql_user: str | None = Field("root")
    mysql_password: str | None = Field("")
    mysql_database: str | None = Field("moobee")
    mysql_charset: str = Field("utf8mb4")

    pool_pre_ping: bool = Field(True, description="Test pooled connections before use")
    pool_recycle: int = Field(3600, ge=60, description="Seconds before a pooled connection is replaced")
    echo: bool = Field(False, description="Log every SQL statement")

    model_config = {"env_prefix": "DB_", "case_sensitive": False}

    @field_validator("sqlite_path")
    def prepare_sqlite_file(cls, v):
        if v and v != ":memory:":
            path = Path(v)
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.suffix:
                v = str(path.with_suffix(".db"))
        return v

    @model_validator(mode="after")
    def require_mysql_fields(self):
        if self.url is None and self.backend == "mysql":
            missing = [
                name
                for name in ("mysql_host", "mysql_user", "mysql_database")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(f"MySQL backend requires: {', '.join(missing)}")
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.get_connection_url().startswith("sqlite")

    def get_connection_url(self) -> str:
        if self.url:
            return self.url
        if self.backend == "mysql":
            password = f":{self.mysql_password}" if self.mysql_password else ""
            return (
                f"mysql+pymysql://{self.mysql_user}{password}@{self.mysql_host}:"
                f"{self.mysql_port}/{self.mysql_database}?charset={self.mysql_charset}"
            )
        return f"sqlite:///{self.sqlite_path}"

    def get_engine_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"echo": self.echo, "future": True, "pool_pre_ping": self.pool_pre_ping}
        if not self.is_sqlite:
            options["pool_recycle"] = self.pool_recycle
        return options


class LoggingConfig(BaseSettings):
    """Handlers installed by ``configure_logging``."""

    level: LogLevel = Field("INFO", description="Minimum level for the moobee loggers")
    file_path: str | None = Field("./logs/moobee.log", description="Rotating log file; None disables it")
    max_bytes: int = Field(10 * 1024 * 1024, ge=1024)
    backup_count: int = Field(5, ge=1)
    structured: bool = Field(True, description="JSON lines on the console")
    console_enabled: bool = Field(True)

    model_config = {"env_prefix": "LOG_", "case_sensitive": False}

    @field_validator("file_path")
    def create_log_directory(cls, v):
        if v:
            Path(v).parent.mkdir(parents=True, exist_ok=True)
        return v

    def get_file_handler_config(self) -> dict[str, Any] | None:
        if not self.file_path:
            return None
        return {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": self.file_path,
            "maxBytes": self.max_bytes,
            "backupCount": self.backup_count,
            "encoding": "utf-8",
        }


class SecurityConfig(BaseSettings):
    """Bearer token verification, admin roles, CORS and input size limits."""

    jwt_secret: str = Field("change-me", min_length=8, description="Shared secret for HS* tokens")
    jwt_algorithm: str = Field("HS256")
    jwt_audience: str | None = Field(None, description="Expected token audience, if any")

    admin_roles: list[str] = Field(
        ["admin", "hr_manager"], description="Roles allowed to manage templates and campaigns"
    )

    max_input_length: int = Field(10000, ge=100)
    max_text_answer_length: int = Field(5000, ge=50)

    cors_origins: list[str] = Field(["*"])
    cors_methods: list[str] = Field(["GET", "POST", "PUT", "DELETE"])

    model_config = {"env_prefix": "SECURITY_", "case_sensitive": False}


class AIConfig(BaseSettings):
    """
    AI provider settings for question generation.

    Example:
        >>> ai = AIConfig(openai_api_key="sk-test")
        >>> ai.timeout_for(5)
        30.0
    """

    default_provider: Literal["openai", "anthropic"] = Field("openai")
    default_model: str = Field("gpt-4o-mini")
    default_temperature: float = Field(0.7, ge=0.0, le=2.0)
    default_max_tokens: int = Field(4000, ge=64, le=32000)

    openai_api_key: str | None = Field(None)
    openai_base_url: str = Field("https://api.openai.com/v1")
    anthropic_api_key: str | None = Field(None)
    anthropic_base_url: str = Field("https://api.anthropic.com/v1")
    anthropic_version: str = Field("2023-06-01")

    small_timeout_seconds: float = Field(30.0, gt=0)
    large_timeout_seconds: float = Field(90.0, gt=0)
    large_count_threshold: int = Field(20, ge=1)
    cache_ttl_seconds: int = Field(3600, ge=0)
    max_questions: int = Field(50, ge=1, le=200)

    model_config = {"env_prefix": "AI_", "case_sensitive": False}

    def timeout_for(self, count: int) -> float:
        """Hard deadline for a generation call of ``count`` questions."""
        if count > self.large_count_threshold:
            return self.large_timeout_seconds
        return self.small_timeout_seconds

    def api_key_for(self, provider: str) -> str | None:
        return {"openai": self.openai_api_key, "anthropic": self.anthropic_api_key}.get(provider)


class ScoringConfig(BaseSettings):
    """Tunable scoring and planning thresholds."""

    percentile_floor: int = Field(10, ge=1, description="Minimum population for percentiles")
    default_target_score: float = Field(70.0, ge=0, le=100)
    insight_limit: int = Field(3, ge=1, le=10)
    required_penalty: float = Field(0.7, gt=0, le=1)
    deadline_warning_days: int = Field(3, ge=0)
    overload_minutes: int = Field(120, ge=1)

    model_config = {"env_prefix": "SCORING_", "case_sensitive": False}


class ApplicationConfig(BaseSettings):
    environment: Environment = Field("development")
    debug: bool = Field(False)
    title: str = Field("Moobee Questionnaire Engine")
    version: str = Field("0.1.0")

    model_config = {"env_prefix": "APP_", "case_sensitive": False}

    @model_validator(mode="after")
    def forbid_debug_in_production(self):
        if self.debug and self.environment == "production":
            raise ValueError("Debug mode cannot be enabled in production")
        return self


class Settings:
    """
    All configuration sections, each read from the environment on first access.

    Example:
        >>> settings = get_settings()
        >>> settings.scoring.percentile_floor
        10
    """

    @cached_property
    def app(self) -> ApplicationConfig:
        return ApplicationConfig()

    @cached_property
    def database(self) -> DatabaseConfig:
        return DatabaseConfig()

    @cached_property
    def logging(self) -> LoggingConfig:
        # LOG_LEVEL wins; otherwise the level follows the environment.
        if os.getenv("LOG_LEVEL"):
            return LoggingConfig()
        level = "DEBUG" if self.app.debug else LEVEL_BY_ENVIRONMENT[self.app.environment]
        return LoggingConfig(level=level)

    @cached_property
    def security(self) -> SecurityConfig:
        return SecurityConfig()

    @cached_property
    def ai(self) -> AIConfig:
        return AIConfig()

    @cached_property
    def scoring(self) -> ScoringConfig:
        return ScoringConfig()

    def is_production(self) -> bool:
        return self.app.environment == "production"

    def get_environment_info(self) -> dict[str, Any]:
        """Non-secret summary of the active configuration."""
        return {
            "environment": self.app.environment,
            "version": self.app.version,
            "debug": self.app.debug,
            "database_backend": self.database.backend,
            "logging_level": self.logging.level,
            "ai_provider": self.ai.default_provider,
            "percentile_floor": self.scoring.percentile_floor,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def override_settings(**kwargs: Any) -> Settings:
    """
    Set environment variables and rebuild the cached settings.

    Example:
        >>> override_settings(scoring_percentile_floor=3).scoring.percentile_floor
        3
    """
    for key, value in kwargs.items():
        os.environ[key.upper()] = str(value)

    get_settings.cache_clear()
    return get_settings()


def reset_settings() -> None:
    get_settings.cache_clear()
