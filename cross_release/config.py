"""Configuration settings for cross_release.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import re
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cross_release.types import HostClass

# Refs that trigger push builds; mirrors the branch whitelist of the release CI
DEFAULT_TRACKED_REFS = [r"^v\d+\.\d+\.\d+.*$", "auto", "try"]


def _default_cache_dir() -> Path:
    """Return the default dependency cache store directory."""
    return Path.home() / ".cache" / "cross-release" / "deps"


def _default_work_dir() -> Path:
    """Return the default per-leg working directory root."""
    return Path.home() / ".cache" / "cross-release" / "work"


def _default_dist_dir() -> Path:
    """Return the default directory for packaged archives."""
    return Path.cwd() / "dist"


def _default_db_url() -> str:
    """Return the default cache index URL (SQLite)."""
    db_path = Path.home() / ".cache" / "cross-release" / "index.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the CROSS_RELEASE_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="CROSS_RELEASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory of the shared dependency cache store",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for per-leg logs and dependency homes",
    )
    dist_dir: Path = Field(
        default_factory=_default_dist_dir,
        description="Directory receiving packaged archives",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Cache index database URL",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    host_class: HostClass | None = Field(
        default=None,
        description="Host class override (detected from the platform if not set)",
    )
    tracked_refs: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TRACKED_REFS),
        description="Regex patterns of refs that trigger push builds (empty = all)",
    )

    # Toolchain
    linux_toolchain: str = Field(
        default="cross",
        description="Build tool used on Linux hosts",
    )
    darwin_toolchain: str = Field(
        default="cargo",
        description="Build tool used on Darwin hosts",
    )
    lockfile_name: str = Field(
        default="Cargo.lock",
        description="Dependency lockfile hashed into the cache key",
    )
    archive_extension: str = Field(
        default="tar.gz",
        description="Extension of packaged archives",
    )

    # Concurrency
    max_parallel_legs: int | None = Field(
        default=None,
        ge=1,
        description="Maximum legs running at once (default: all legs)",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for one toolchain invocation",
    )
    upload_timeout: int = Field(
        default=300,
        ge=10,
        description="Timeout for one release upload request",
    )

    # Release host
    release_repo: str | None = Field(
        default=None,
        description="Release repository as owner/name",
    )
    release_api_url: str = Field(
        default="https://api.github.com",
        description="Release host API base URL",
    )
    release_upload_url: str = Field(
        default="https://uploads.github.com",
        description="Release host asset upload base URL",
    )
    release_token: SecretStr | None = Field(
        default=None,
        description="Release host credential",
    )

    @field_validator("tracked_refs")
    @classmethod
    def validate_tracked_refs(cls, v: list[str]) -> list[str]:
        """Reject patterns that are not valid regular expressions."""
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid tracked ref pattern {pattern!r}: {e}") from e
        return v


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    The release token is rendered masked.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["DEFAULT_TRACKED_REFS", "Settings", "get_settings", "print_settings_json"]
