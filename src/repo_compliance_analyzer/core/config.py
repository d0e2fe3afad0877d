"""
Configuration management for the compliance analyzer.

Uses Pydantic Settings for validation and environment variable support.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational store configuration."""

    path: str = Field(default="compliance_analysis.db", description="Path to the SQLite database file")


class AnalysisSettings(BaseSettings):
    """Analysis pipeline configuration."""

    default_frameworks: list[str] = Field(default=["SOC2"], description="Frameworks used when none are requested")
    default_depth: str = Field(default="security_relevant", description="Default analysis depth")
    phase_timeout_seconds: Optional[float] = Field(
        default=600,
        description="Timeout per analysis phase in seconds (None disables the limit)",
    )
    stale_run_seconds: int = Field(
        default=3600,
        ge=1,
        description="Runs whose heartbeat is older than this are reconciled as failed",
    )
    heartbeat_interval_seconds: float = Field(
        default=30,
        gt=0,
        description="How often a running phase refreshes its run's heartbeat",
    )
    max_file_size_mb: float = Field(default=1, description="Maximum file size to scan in MB")
    secrets_patterns_file: str = Field(
        default="patterns/secrets.yaml",
        description="Optional YAML file with extra secrets patterns",
    )

    exclude_paths: list[str] = Field(
        default=[
            "node_modules/",
            "vendor/",
            ".git/",
            "*.min.js",
            "*.lock",
            "__pycache__/",
            ".venv/",
            "venv/",
            "dist/",
            "build/",
        ],
        description="Paths to exclude from scanning",
    )

    @field_validator("default_depth")
    @classmethod
    def validate_default_depth(cls, v: str) -> str:
        """Validate analysis depth."""
        valid = ["structure_only", "security_relevant", "full"]
        if v not in valid:
            raise ValueError(f"default_depth must be one of {valid}")
        return v

    @model_validator(mode="after")
    def validate_heartbeat_interval(self) -> "AnalysisSettings":
        """Heartbeats must arrive inside the stale-run window."""
        if self.heartbeat_interval_seconds >= self.stale_run_seconds:
            raise ValueError("heartbeat_interval_seconds must be less than stale_run_seconds")
        return self


class ApiSettings(BaseSettings):
    """HTTP API configuration."""

    host: str = Field(default="127.0.0.1", description="Bind host")
    port: int = Field(default=8000, description="Bind port")
    allowed_origins: list[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:5173",
        ],
        description="CORS allowed origins",
    )


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: Optional[str] = Field(default=None, description="Log format string")
    file: Optional[str] = Field(default=None, description="Log file path")


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration.

    Settings are loaded from:
    1. Environment variables (highest priority), e.g. RCA_ANALYSIS__PHASE_TIMEOUT_SECONDS
    2. .env file
    3. config.yaml file
    4. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="RCA_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        data = cls._process_env_vars(data)

        return cls(**data)

    @classmethod
    def _process_env_vars(cls, data: Any) -> Any:
        """Recursively process environment variable references in config."""
        if isinstance(data, dict):
            return {k: cls._process_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [cls._process_env_vars(item) for item in data]
        elif isinstance(data, str):
            # ${ENV_VAR}
            if data.startswith("${") and data.endswith("}"):
                return os.environ.get(data[2:-1], "")
            return data
        return data


@lru_cache
def get_settings(config_path: Optional[str] = None) -> Settings:
    """
    Get cached settings instance.

    Args:
        config_path: Optional path to config.yaml file

    Returns:
        Settings instance
    """
    if config_path:
        return Settings.from_yaml(config_path)

    possible_configs = [
        Path.cwd() / "config.yaml",
        Path.cwd() / ".repo-compliance.yaml",
        Path.home() / ".config" / "repo-compliance" / "config.yaml",
    ]

    for config in possible_configs:
        if config.exists():
            return Settings.from_yaml(config)

    return Settings()


def create_default_config(path: str | Path) -> None:
    """Create a default configuration file."""
    default_config = """# Repository Compliance Analyzer Configuration

database:
  path: compliance_analysis.db

analysis:
  # Frameworks: SOC2, ISO27001, NIST80053, FedRAMP
  default_frameworks:
    - SOC2

  # Depth: structure_only, security_relevant, full
  default_depth: security_relevant

  # Per-phase timeout (seconds); null disables it
  phase_timeout_seconds: 600

  # In-flight runs without a heartbeat for this long are marked failed
  stale_run_seconds: 3600

  # Running phases refresh the heartbeat this often
  heartbeat_interval_seconds: 30

  max_file_size_mb: 1
  secrets_patterns_file: patterns/secrets.yaml

  exclude_paths:
    - "node_modules/"
    - "vendor/"
    - ".git/"
    - "*.min.js"
    - "*.lock"
    - "__pycache__/"
    - ".venv/"

api:
  host: 127.0.0.1
  port: 8000
  allowed_origins:
    - http://localhost:3000

logging:
  level: INFO
  file: null
"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(default_config)
