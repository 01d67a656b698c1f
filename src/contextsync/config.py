"""Configuration loader for ContextSync.

This module handles loading and parsing configuration from YAML files,
with support for environment variable expansion.

Example:
    config = load_config()
    if config.providers.jira.enabled:
        print(f"Jira gateway: {config.providers.jira.api_base_url}")
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from contextsync.constants import CONFIG_FILE_NAME
from contextsync.exceptions import ConfigError
from contextsync.models import ContextSyncConfig

# Pattern to match ${VAR_NAME} or $VAR_NAME
ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def expand_env_vars(value: Any) -> Any:
    """Recursively expand environment variables in config values.

    Supports both ${VAR_NAME} and $VAR_NAME syntax.
    If the env var is not set, the placeholder is left unchanged.

    Args:
        value: The value to expand (can be str, dict, list, or primitive).

    Returns:
        The value with environment variables expanded.
    """
    if isinstance(value, str):

        def replace_env_var(match: re.Match[str]) -> str:
            # Group 1 is ${VAR}, group 2 is $VAR
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        return ENV_VAR_PATTERN.sub(replace_env_var, value)

    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]

    else:
        return value


def find_config_file() -> Path | None:
    """Search for .contextsync.yaml in current and parent directories.

    Returns:
        Path to the config file if found, None otherwise.
    """
    current = Path.cwd()

    for directory in [current, *current.parents]:
        config_file = directory / CONFIG_FILE_NAME
        if config_file.exists():
            return config_file

    return None


def load_config(config_path: Path | None = None) -> ContextSyncConfig:
    """Load configuration from a YAML file.

    Environment variables in the format ${VAR_NAME} or $VAR_NAME are expanded.
    A missing file yields the defaults.

    Args:
        config_path: Path to config file. If None, searches for .contextsync.yaml
                    in current directory and parent directories.

    Returns:
        Loaded configuration with env vars expanded.

    Raises:
        ConfigError: If the file is not valid YAML or fails validation.
    """
    if config_path is None:
        config_path = find_config_file()

    if config_path is None or not config_path.exists():
        return ContextSyncConfig()

    try:
        with open(config_path) as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(
            "Invalid YAML in configuration file",
            details={"path": str(config_path), "error": str(e)},
        ) from e

    if not isinstance(data, dict):
        raise ConfigError(
            "Configuration root must be a mapping",
            details={"path": str(config_path)},
        )

    data = expand_env_vars(data)

    try:
        return ContextSyncConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            "Configuration failed validation",
            details={"path": str(config_path), "errors": e.error_count()},
        ) from e
