from __future__ import annotations

import logging
import os
import re
import socket
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from certchain.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_REPOSITORIES = {
    "backend": "/repos/backend",
    "frontend": "/repos/frontend",
    "twincat": "/repos/twincat",
}


def expand_env_vars(config_str: str) -> str:
    """
    Expand environment variables in the format ${VAR_NAME} within a YAML string.
    Skips expansion in YAML comments (lines starting with #).

    Raises:
        KeyError: If a referenced environment variable is not set
    """

    def replace_var(match: re.Match[str]) -> str:
        var_name = match.group(1)
        try:
            return os.environ[var_name]
        except KeyError:
            msg = f"Environment variable '{var_name}' referenced in config.yaml but not set"
            raise KeyError(msg) from None

    lines = []
    for line in config_str.split("\n"):
        if line.lstrip().startswith("#"):
            lines.append(line)
        else:
            lines.append(re.sub(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}", replace_var, line))

    return "\n".join(lines)


def load_config_from_yaml(config_path: str | None = None) -> dict[str, Any]:
    """
    Load YAML configuration file and expand environment variables.

    Args:
        config_path: Path to config.yaml file. If None, uses CONFIG_PATH environment variable.
                     Defaults to /app/config.yaml if neither is set.

    Raises:
        FileNotFoundError: If config file is not found
        ValueError: If the YAML is invalid or a referenced variable is not set
    """
    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "/app/config.yaml")

    config_file = Path(config_path)
    if not config_file.exists():
        msg = (
            f"Configuration file not found at {config_path}\n"
            f"Use CONFIG_PATH environment variable to override location."
        )
        raise FileNotFoundError(msg)

    with open(config_file, encoding="utf-8") as f:
        config_str = f.read()

    try:
        expanded_config = expand_env_vars(config_str)
    except KeyError as e:
        msg = f"Error expanding environment variables in config.yaml: {e}"
        raise ValueError(msg) from None

    try:
        config_dict = yaml.safe_load(expanded_config)
    except yaml.YAMLError as e:
        msg = f"Invalid YAML in config.yaml: {e}"
        raise ValueError(msg) from None

    if not isinstance(config_dict, dict):
        msg = "config.yaml must contain a YAML mapping/dictionary at root level"
        raise ValueError(msg)

    return config_dict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
    )

    # Security
    auth_token: str  # Required
    environment: str = "development"

    # Observability
    log_level: str = "INFO"
    log_use_json: bool = True

    # Identity of this installation on certificates and backups
    machine_id: str = Field(default_factory=socket.gethostname)

    # Persistent state (certificate log, backup log, audit segments)
    data_path: str = "/data"

    # Repository name -> working tree path
    repositories: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_REPOSITORIES))

    git_timeout_seconds: float = Field(
        default=30,
        description="Timeout for git queries and local mutations",
    )
    git_push_timeout_seconds: float = Field(
        default=120,
        description="Timeout for push operations (network bound)",
    )

    audit_max_entries_per_segment: int = Field(default=10000, ge=1)
    audit_max_segment_age_hours: float = Field(default=24, gt=0)
    audit_retention_days: int = Field(default=30, ge=1)
    audit_retention_interval_seconds: int = Field(default=3600, ge=0)

    certificates_max_entries: int = Field(default=200, ge=1)

    backup_log_max_entries: int = Field(default=100, ge=1)
    backup_max_file_bytes: int = Field(default=5 * 1024 * 1024, ge=1)
    backup_exclude_extensions: list[str] = Field(
        default=[".exe", ".dll", ".pdb", ".cache", ".log"]
    )

    integrity_verification_interval_seconds: int = Field(
        default=120,
        ge=0,
        description="Interval of the background integrity check (0 disables it)",
    )

    sbom_summary_file: str | None = None

    @field_validator("repositories", mode="after")
    @classmethod
    def normalize_repository_names(cls, v: dict[str, str]) -> dict[str, str]:
        """Repository names are matched case-insensitively."""
        normalized = {name.strip().lower(): path for name, path in v.items()}
        if len(normalized) != len(v):
            msg = "repositories contains names that differ only in case"
            raise ValueError(msg)
        return normalized

    @field_validator("auth_token", mode="after")
    @classmethod
    def validate_auth_token(cls, v: str) -> str:
        if not v or not v.strip():
            msg = "auth.token must not be empty"
            raise ValueError(msg)
        return v

    @property
    def audit_path(self) -> Path:
        return Path(self.data_path) / "audit"

    @property
    def certificates_file(self) -> Path:
        return Path(self.data_path) / "deployment_certificates.json"

    @property
    def backup_log_file(self) -> Path:
        return Path(self.data_path) / "backup_log.json"


def _section(config_dict: dict[str, Any], name: str) -> dict[str, Any]:
    value = config_dict.get(name)
    return value if isinstance(value, dict) else {}


def flatten_config(config_dict: dict[str, Any]) -> dict[str, Any]:
    """Flatten the nested config.yaml structure into Settings field names."""
    flat_config: dict[str, Any] = {}

    auth = _section(config_dict, "auth")
    if "token" in auth:
        flat_config["auth_token"] = auth["token"]

    flat_config["environment"] = config_dict.get("environment", "development")

    logging_section = _section(config_dict, "logging")
    if "level" in logging_section:
        flat_config["log_level"] = logging_section["level"]
    if "use_json" in logging_section:
        flat_config["log_use_json"] = logging_section["use_json"]

    if config_dict.get("machine_id"):
        flat_config["machine_id"] = config_dict["machine_id"]

    storage = _section(config_dict, "storage")
    if "data_path" in storage:
        flat_config["data_path"] = storage["data_path"]

    if isinstance(config_dict.get("repositories"), dict):
        flat_config["repositories"] = {
            str(name): str(path) for name, path in config_dict["repositories"].items()
        }

    git_section = _section(config_dict, "git")
    if "timeout_seconds" in git_section:
        flat_config["git_timeout_seconds"] = git_section["timeout_seconds"]
    if "push_timeout_seconds" in git_section:
        flat_config["git_push_timeout_seconds"] = git_section["push_timeout_seconds"]

    for section, keys in (
        ("audit", ("max_entries_per_segment", "max_segment_age_hours", "retention_days", "retention_interval_seconds")),
        ("certificates", ("max_entries",)),
        ("backup", ("log_max_entries", "max_file_bytes", "exclude_extensions")),
        ("integrity", ("verification_interval_seconds",)),
        ("sbom", ("summary_file",)),
    ):
        values = _section(config_dict, section)
        for key in keys:
            if key in values:
                flat_config[f"{section}_{key}"] = values[key]

    return flat_config


def build_settings_from_yaml(config_path: str | None = None) -> Settings:
    """
    Load settings from the YAML config file with environment variable expansion.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    try:
        config_dict = load_config_from_yaml(config_path)
        return Settings(**flatten_config(config_dict))
    except (FileNotFoundError, ValueError, ValidationError) as e:
        logger.error("Configuration error: %s", e)
        raise ConfigurationError(
            f"Configuration error: {e}",
            context={"config_path": config_path or os.environ.get("CONFIG_PATH", "/app/config.yaml")},
        ) from e


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings loaded once from config.yaml and cached for the process."""
    return build_settings_from_yaml()


def reset_settings_for_testing() -> None:
    """Drop cached settings so the next get_settings() re-reads config.yaml (testing only)."""
    get_settings.cache_clear()
