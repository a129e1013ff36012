"""Audit log configuration."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple, Type, Union

from pydantic import Field, ValidationError, field_validator
from pydantic.alias_generators import to_snake
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIRECTORY = Path(".sorta/audit")
DEFAULT_ROTATION_SIZE = 10 * 1024 * 1024  # 10 MiB
DEFAULT_RETENTION_DAYS = 30
DEFAULT_MIN_RETENTION_DAYS = 7
DEFAULT_LOCK_TIMEOUT = 10.0


class AuditConfig(BaseSettings):
    """
    Settings for the audit log.

    Values come from (highest priority first) ``SORTA_AUDIT_*`` environment
    variables, the ``audit`` section of a JSON config file, then defaults.
    """

    log_directory: Path = DEFAULT_LOG_DIRECTORY
    rotation_size_bytes: int = Field(default=DEFAULT_ROTATION_SIZE, gt=0)
    rotation_period: Literal["", "daily", "weekly"] = ""
    retention_days: int = Field(default=DEFAULT_RETENTION_DAYS, ge=0)  # 0 = unlimited
    retention_runs: int = Field(default=0, ge=0)  # 0 = unlimited
    min_retention_days: int = Field(default=DEFAULT_MIN_RETENTION_DAYS, ge=0)
    lock_timeout: float = Field(default=DEFAULT_LOCK_TIMEOUT, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="SORTA_AUDIT_",
        extra="ignore",
    )

    @field_validator("rotation_period", mode="before")
    @classmethod
    def _normalize_period(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("log_directory", mode="before")
    @classmethod
    def _require_directory(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError("log directory is required")
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # Init kwargs carry the config file section, which env vars override
        return env_settings, init_settings


def _file_section(config_file: Path) -> Dict[str, Any]:
    try:
        with open(config_file, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"config file not found: {config_file}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"cannot read config file {config_file}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {config_file} must contain an object")

    section = data.get("audit", {})
    if not isinstance(section, dict):
        raise ConfigurationError(f"'audit' section of {config_file} must be an object")

    return {to_snake(key): value for key, value in section.items()}


def load_audit_config(
    config_file: Optional[Union[str, Path]] = None,
    log_directory: Optional[Union[str, Path]] = None,
) -> AuditConfig:
    """
    Load and validate the audit configuration.

    Args:
        config_file: Optional JSON config file with an ``audit`` section
        log_directory: Overrides every other source for the log directory

    Returns:
        Validated AuditConfig

    Raises:
        ConfigurationError: If the file cannot be read or a value is invalid
    """
    values: Dict[str, Any] = {}
    if config_file is not None:
        values = _file_section(Path(config_file))
        logger.debug(f"Loaded audit settings from {config_file}: {sorted(values)}")

    try:
        config = AuditConfig(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"invalid audit configuration: {problems}") from e

    if log_directory is not None:
        config = config.model_copy(update={"log_directory": Path(log_directory)})

    return config
