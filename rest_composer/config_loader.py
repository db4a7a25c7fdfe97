"""Config Loader - Loads the composer configuration file.

Handles loading YAML config files with environment variable substitution
and applying the result to a fresh Store.

Example config:
    timeout_ms: 10000
    log_level: INFO
    default_headers:
      accept: application/json
    auth:
      type: wsse
      params:
        key: my-key
        secret: ${WSSE_SECRET}
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from rest_composer.models import ComposerConfig, Header, get_auth_type_info
from rest_composer.store import Mutation, Store


class ConfigError(Exception):
    """Raised when configuration loading fails."""


_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_config(config_path: Path) -> ComposerConfig:
    """Load configuration from YAML with ${ENV_VAR} substitution."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    # An empty file means all defaults
    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    raw_config = _substitute_env_vars(raw_config)

    try:
        return ComposerConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid config structure: {e}") from e


def build_store(config: ComposerConfig | None = None) -> Store:
    """Create a Store with the session defaults plus anything the config adds."""
    store = Store()
    if config is None:
        return store

    for name, value in config.default_headers.items():
        store.commit(Mutation.ADD_HEADER, Header(name=name, value=value))
    if config.auth is not None:
        store.commit(Mutation.SELECT_AUTH_TYPE, get_auth_type_info(config.auth.type))
        store.commit(Mutation.SET_AUTH_PARAMS, config.auth.params)
    return store


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_VAR_PATTERN.sub(replacer, s)
