"""
Configuration loader for chatrelay.

Loads and merges configuration from multiple sources:
1. Default values
2. Config file (~/.chatrelay/config.yaml, or an explicit path)
3. Environment variables (CHATRELAY_<SECTION>_<KEY>)

String values written as ``${NAME}`` are replaced with the environment
variable NAME, so tokens can stay out of the file.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from chatrelay.config.schema import Config
from chatrelay.relay.exceptions import ConfigurationError
from chatrelay.relay.filters import validate_mappings
from chatrelay.storage.paths import expand_path, get_global_config_path

ENV_PREFIX = "CHATRELAY_"

# Environment variables with their own meaning, never config overrides
RESERVED_ENV = {"CHATRELAY_HOME", "CHATRELAY_CONFIG"}

_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

__all__ = [
    "ConfigurationError",
    "apply_env_overrides",
    "deep_merge",
    "expand_env_references",
    "load_config",
    "load_yaml_file",
    "validate_config",
]


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a YAML configuration file.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed configuration dictionary (empty if the file does not exist).

    Raises:
        ConfigurationError: If the file cannot be read or parsed.
    """
    try:
        with open(path, encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigurationError(f"Top level of {path} must be a mapping")
    return content


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Merge rules:
    - Dicts: recursive deep merge
    - Lists and scalars: override replaces base
    - null/None value: remove key from result

    Examples:
        >>> deep_merge({"lark": {"app_id": "a", "domain": "d"}}, {"lark": {"app_id": "b"}})
        {'lark': {'app_id': 'b', 'domain': 'd'}}
    """
    result = base.copy()

    for key, value in override.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def expand_env_references(value: Any) -> Any:
    """
    Replace ``${NAME}`` references with environment values, recursively.

    Unset variables expand to an empty string.
    """
    if isinstance(value, str):
        return _ENV_REFERENCE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: expand_env_references(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_references(v) for v in value]
    return value


def apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Environment variables follow the pattern CHATRELAY_<SECTION>_<KEY>. The
    first word after the prefix names the section, the rest is the key, so
    ``CHATRELAY_LARK_APP_SECRET`` sets ``lark.app_secret`` and
    ``CHATRELAY_OPTIONS_POLLING_INTERVAL_MS`` sets
    ``options.polling_interval_ms``.

    Args:
        config: Configuration dictionary to modify.

    Returns:
        Configuration with environment overrides applied.
    """
    sections = {name for name in Config.model_fields}

    for env_key, value in os.environ.items():
        if not env_key.startswith(ENV_PREFIX) or env_key in RESERVED_ENV:
            continue

        section, _, key = env_key[len(ENV_PREFIX) :].lower().partition("_")
        if section not in sections or not key:
            continue

        current = config.get(section)
        if not isinstance(current, dict):
            current = {}
        current[key] = _parse_env_value(value)
        config[section] = current

    return config


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to the appropriate type.

    Args:
        value: String value from environment.

    Returns:
        Parsed value (bool, int, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    if re.match(r"^-?\d+$", value):
        return int(value)

    if "," in value:
        return [item.strip() for item in value.split(",") if item.strip()]

    return value


def load_config(path: Path | str | None = None, skip_env: bool = False) -> Config:
    """
    Load and merge configuration from all sources.

    Loading order (later overrides earlier):
    1. Default values from Config model
    2. Config file: ``path``, else $CHATRELAY_CONFIG, else ~/.chatrelay/config.yaml
    3. Environment variables (CHATRELAY_*)

    Args:
        path: Explicit config file. A missing explicit file is an error.
        skip_env: Skip environment variable overrides.

    Returns:
        Merged and validated Config object.

    Raises:
        ConfigurationError: If configuration is unreadable or invalid.
    """
    config_dict = Config().model_dump(exclude_none=True)

    explicit = path or os.environ.get("CHATRELAY_CONFIG")
    config_path = expand_path(explicit) if explicit else get_global_config_path()
    if explicit and not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    file_config = expand_env_references(load_yaml_file(config_path))
    config_dict = deep_merge(config_dict, file_config)

    if not skip_env:
        config_dict = apply_env_overrides(config_dict)

    try:
        return Config.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigurationError(f"Configuration validation failed: {e}") from e


def validate_config(config: Config) -> list[str]:
    """
    Check a loaded configuration for problems that prevent relaying.

    Returns:
        Human readable problems (empty if the configuration is usable).
    """
    problems: list[str] = []

    if not config.slack.workspaces:
        problems.append("slack.workspaces: at least one workspace is required")

    ids = [ws.id for ws in config.slack.workspaces if ws.id]
    if len(ids) != len(set(ids)):
        problems.append("slack.workspaces: workspace ids must be unique")

    for index, ws in enumerate(config.slack.workspaces):
        where = f"slack.workspaces[{index}] ({ws.label})"
        if not ws.bot_token:
            problems.append(f"{where}: bot_token is required")
        if config.slack.socket_mode and not ws.app_token:
            problems.append(f"{where}: socket_mode requires app_token")
        if not config.slack.socket_mode and not ws.signing_secret:
            problems.append(f"{where}: signing_secret is required without socket_mode")
        if config.slack.send_as_user and not ws.user_token:
            problems.append(f"{where}: send_as_user requires user_token")

    lark = config.lark
    if lark.app_id and not lark.app_secret:
        problems.append("lark: app_id is set but app_secret is missing")
    if lark.app_secret and not lark.app_id:
        problems.append("lark: app_secret is set but app_id is missing")
    if not lark.has_app and not lark.webhook_url:
        problems.append("lark: configure app_id/app_secret or webhook_url")
    if lark.has_app and not config.webhook.enable:
        problems.append("webhook.enable is required to receive Lark events")

    try:
        validate_mappings(config.channel_mappings)
    except ConfigurationError as e:
        problems.append(f"channel_mappings: {e}")

    if config.options.slack_connect_polling:
        polled = config.options.poll_channels or [
            c for ws in config.slack.workspaces for c in ws.poll_channels
        ]
        if not polled:
            problems.append("options.slack_connect_polling is on but no poll_channels are set")

    return problems
