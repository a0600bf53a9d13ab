"""
Configuration models for the DeRadar playback core.

Uses Pydantic for validation and type safety.
"""
import os
import re
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deradar import constants
from deradar.config.dotenv_loader import load_dotenv_files

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_ENV_VAR_PATTERN = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')


class GatewayConfig(BaseSettings):
    """Gateway resolution configuration."""
    model_config = SettingsConfigDict(env_prefix="DERADAR_GATEWAY_", extra="ignore")

    placeholder: str = constants.GATEWAY_PLACEHOLDER
    fallback_domain: str = constants.FALLBACK_GATEWAY_DOMAIN
    unprobable_suffixes: List[str] = Field(default_factory=lambda: list(constants.UNPROBABLE_DOMAIN_SUFFIXES))
    probe_timeout_seconds: float = Field(default=constants.PROBE_TIMEOUT_SECONDS, gt=0.0, le=60.0)

    # Page hostname the candidate gateway is derived from. None = localhost.
    hostname: Optional[str] = None

    @field_validator("placeholder", "fallback_domain")
    @classmethod
    def validate_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class HistoricalConfig(BaseSettings):
    """Snapshot index and payload endpoint configuration."""
    model_config = SettingsConfigDict(env_prefix="DERADAR_HISTORICAL_", extra="ignore")

    graphql_url: str = constants.GRAPHQL_URL_TEMPLATE
    data_url: str = constants.DATA_URL_TEMPLATE
    owner: str = constants.DEFAULT_OWNER
    app_name: str = constants.DEFAULT_APP_NAME
    timeout_seconds: float = Field(default=constants.PAYLOAD_TIMEOUT_SECONDS, gt=0.0, le=120.0)
    retries: int = Field(default=constants.PAYLOAD_RETRIES, ge=1, le=10)
    retry_base_delay_seconds: float = Field(default=constants.RETRY_BASE_DELAY_SECONDS, ge=0.0, le=30.0)
    retry_max_backoff_seconds: float = Field(default=constants.RETRY_MAX_BACKOFF_SECONDS, ge=0.0, le=120.0)
    cache_max_age_seconds: int = Field(default=constants.CACHE_MAX_AGE_SECONDS, ge=0)


class PlaybackConfig(BaseSettings):
    """Playback and progressive loading configuration."""
    model_config = SettingsConfigDict(env_prefix="DERADAR_PLAYBACK_", extra="ignore")

    default_speed: float = Field(default=constants.DEFAULT_SPEED, gt=0.0)
    base_interval_ms: int = Field(default=constants.BASE_INTERVAL_MS, ge=50, le=60000)
    default_range: int = Field(default=constants.DEFAULT_RANGE, ge=1, le=1000)

    # Progressive loading
    early_load_count: int = Field(default=constants.EARLY_LOAD_COUNT, ge=1, le=100)
    batch_size: int = Field(default=constants.BATCH_SIZE, ge=1, le=200)
    batch_pause_ms: int = Field(default=int(constants.BATCH_PAUSE_SECONDS * 1000), ge=0, le=10000)
    concurrency_initial: int = Field(default=constants.CONCURRENCY_INITIAL, ge=1, le=64)
    concurrency_background: int = Field(default=constants.CONCURRENCY_BACKGROUND, ge=1, le=64)
    concurrency_parallel: int = Field(default=constants.CONCURRENCY_PARALLEL, ge=1, le=64)

    speed_options: List[float] = Field(default_factory=lambda: list(constants.SPEED_OPTIONS))
    range_options: List[int] = Field(default_factory=lambda: list(constants.RANGE_OPTIONS))
    auto_play: bool = True

    @field_validator("speed_options")
    @classmethod
    def validate_speeds(cls, v):
        if not v or any(s <= 0 for s in v):
            raise ValueError("speed_options must be non-empty and positive")
        return sorted(v)

    @model_validator(mode="after")
    def validate_default_speed(self):
        if self.default_speed not in self.speed_options:
            raise ValueError(
                f"default_speed {self.default_speed} is not one of speed_options {self.speed_options}"
            )
        return self


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(env_prefix="DERADAR_MONITORING_", extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_prefix="DERADAR_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    historical: HistoricalConfig = Field(default_factory=HistoricalConfig)
    playback: PlaybackConfig = Field(default_factory=PlaybackConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Leave unresolved references as-is

        expanded_content = _ENV_VAR_PATTERN.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        hostname = os.getenv("DERADAR_HOSTNAME")
        if hostname:
            config_dict.setdefault("gateway", {})["hostname"] = hostname

        return cls(**config_dict)


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses deradar/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    load_dotenv_files()

    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    return Config.from_yaml(config_path)
