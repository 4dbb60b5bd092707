"""
Configuration management using Pydantic Settings.

All configuration values are loaded from environment variables
with sensible defaults where appropriate.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tenantguard.authz.vocabulary import Vocabulary

# Project root (where the .env file is located)
ROOT_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE = ROOT_DIR / ".env"

# Load .env into environment for nested settings models
load_dotenv(ENV_FILE)


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class AppSettings(BaseSettings):
    """Application-level configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_env: Literal["development", "staging", "production"] = "development"
    app_name: str = "tenantguard"
    app_version: str = "0.1.0"
    app_debug: bool = False


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="DB_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Full SQLAlchemy URL; takes precedence over the discrete fields
    url: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    name: str = "tenantguard"
    user: str = "tenantguard"
    password: str = ""
    pool_size: int = 20
    max_overflow: int = 10

    @property
    def dsn(self) -> str:
        """Get async database DSN."""
        if self.url:
            return self.url
        auth_part = f"{self.user}:{self.password}@" if self.password else f"{self.user}@"
        return f"postgresql+asyncpg://{auth_part}{self.host}:{self.port}/{self.name}"


class RedisSettings(BaseSettings):
    """Redis configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="REDIS_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    password: str = ""
    db: int = 0
    pool_size: int = 50
    version_prefix: str = "authz:version:"

    @property
    def dsn(self) -> str:
        """Get Redis DSN."""
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class LogSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="LOG_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class AuthzSettings(BaseSettings):
    """Authorization engine configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="AUTHZ_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Nested resources borrow an ancestor's permission for undefined actions
    hierarchical_fallback: bool = False
    max_resource_depth: int = Field(default=32, ge=1)

    # Audit queue
    audit_queue_size: int = Field(default=10000, ge=1)
    audit_overflow_policy: Literal["drop_oldest", "block"] = "drop_oldest"
    audit_block_timeout: float = Field(default=0.05, ge=0)
    audit_sink: Literal["database", "log", "none"] = "database"

    # Seconds between persisted version polls; 0 disables polling
    version_poll_interval: float = Field(default=5.0, ge=0)

    # Comma-separated allow-lists; empty keeps the full vocabulary
    actions: str = ""
    module_categories: str = ""
    resource_types: str = ""

    @field_validator("actions", "module_categories", "resource_types")
    @classmethod
    def validate_vocabulary_list(cls, v: str, info: ValidationInfo) -> str:
        """Reject names outside the built-in vocabularies at startup."""
        names = _split_csv(v)
        if info.field_name == "actions":
            Vocabulary.from_names(actions=names)
        elif info.field_name == "module_categories":
            Vocabulary.from_names(categories=names)
        else:
            Vocabulary.from_names(resource_types=names)
        return ",".join(names)

    @property
    def vocabulary(self) -> Vocabulary:
        return Vocabulary.from_names(
            actions=_split_csv(self.actions),
            categories=_split_csv(self.module_categories),
            resource_types=_split_csv(self.resource_types),
        )


class Settings(BaseSettings):
    """Main settings class that aggregates all configuration sections."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    log: LogSettings = Field(default_factory=LogSettings)
    authz: AuthzSettings = Field(default_factory=AuthzSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
