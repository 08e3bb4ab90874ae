"""Configuration loading and schema for chatrelay."""

from chatrelay.config.loader import ConfigurationError, load_config, validate_config
from chatrelay.config.schema import (
    Config,
    LarkConfig,
    SlackConfig,
    SlackWorkspaceConfig,
    StorageConfig,
    WebhookConfig,
)

__all__ = [
    "Config",
    "ConfigurationError",
    "LarkConfig",
    "SlackConfig",
    "SlackWorkspaceConfig",
    "StorageConfig",
    "WebhookConfig",
    "load_config",
    "validate_config",
]
