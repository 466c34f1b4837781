"""
Configuration models for trade reconstruction.

Uses Pydantic for validation and type safety.
"""
from datetime import time
from typing import Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

CONFIG_SCHEMA_VERSION = "2026-09-01"


class DatabaseConfig(BaseSettings):
    """Database configuration."""
    model_config = SettingsConfigDict(env_prefix="TRADEBOOK_DATABASE_", extra="ignore")

    # DATABASE_URL in the environment always wins (see resolve_database_url)
    url: Optional[str] = None
    pool_size: int = Field(default=10, ge=1, le=100)
    max_overflow: int = Field(default=20, ge=0, le=200)


class MatchingConfig(BaseSettings):
    """Order replay configuration."""
    model_config = SettingsConfigDict(env_prefix="TRADEBOOK_MATCHING_", extra="ignore")

    # Orders with equal (bucketed) execution time are ordered by this field.
    # import_sequence preserves upload order; order_id is a fallback for brokers
    # that do not supply a stable sequence.
    tie_break: Literal["import_sequence", "order_id"] = "import_sequence"

    # Execution times are truncated to this many seconds before sorting.
    # 0 disables truncation. Raise it when a broker reports coarse timestamps.
    timestamp_granularity_seconds: int = Field(default=0, ge=0, le=86400)


class MarketHoursConfig(BaseSettings):
    """Market-hours table used for session classification."""
    model_config = SettingsConfigDict(env_prefix="TRADEBOOK_MARKET_HOURS_", extra="ignore")

    timezone: str = "America/New_York"
    regular_open: time = time(9, 30)
    regular_close: time = time(16, 0)

    @model_validator(mode="after")
    def _check_window(self) -> "MarketHoursConfig":
        if self.regular_open >= self.regular_close:
            raise ValueError(
                f"regular_open ({self.regular_open}) must be before regular_close ({self.regular_close})"
            )
        return self


class TradeConfig(BaseSettings):
    """Trade aggregation configuration."""
    model_config = SettingsConfigDict(env_prefix="TRADEBOOK_TRADES_", extra="ignore")

    swing_threshold_hours: float = Field(default=24.0, gt=0.0, le=24.0 * 365)
    price_places: int = Field(default=8, ge=0, le=12)
    pnl_places: int = Field(default=2, ge=0, le=8)


class RebuildConfig(BaseSettings):
    """Rebuild and deletion concurrency configuration."""
    model_config = SettingsConfigDict(env_prefix="TRADEBOOK_REBUILD_", extra="ignore")

    # Cross-process exclusion via transaction-scoped advisory locks (PostgreSQL only)
    use_advisory_locks: bool = True


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(env_prefix="TRADEBOOK_MONITORING_", extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_prefix="TRADEBOOK_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    market_hours: MarketHoursConfig = Field(default_factory=MarketHoursConfig)
    trades: TradeConfig = Field(default_factory=TradeConfig)
    rebuild: RebuildConfig = Field(default_factory=RebuildConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "test", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # Expand ${VAR} or $VAR; unknown variables are left as written
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("database", {})
            config_dict["database"]["url"] = db_url

        return cls(**config_dict)

    def resolve_database_url(self) -> str:
        """Return the database URL, preferring the DATABASE_URL environment variable."""
        url = os.getenv("DATABASE_URL") or self.database.url
        if not url:
            raise ValueError(
                "No database configured. Set DATABASE_URL or database.url in config.yaml."
            )
        return url


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses tradebook/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        pydantic.ValidationError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    return Config.from_yaml(config_path)
