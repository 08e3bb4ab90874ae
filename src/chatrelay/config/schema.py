"""
Pydantic configuration schema for chatrelay.

This module defines all configuration models with validation. Relay-level
models (mappings, filters, options) live in ``chatrelay.relay.models`` and
are reused here as configuration sections.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from chatrelay.relay.models import ChannelMapping, MessageFilter, RelayOptions

# =============================================================================
# Slack Configuration
# =============================================================================


class SlackWorkspaceConfig(BaseModel):
    """Credentials for one Slack workspace."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    name: str | None = None
    bot_token: str | None = None  # xoxb-...
    app_token: str | None = None  # xapp-..., Socket Mode
    signing_secret: str | None = None  # Events API over HTTP
    user_token: str | None = None  # xoxp-..., Slack Connect polling and send-as-user
    poll_channels: list[str] = Field(default_factory=list)

    @property
    def label(self) -> str:
        """Name used in logs and status output."""
        return self.name or self.id or "slack"


class SlackConfig(BaseModel):
    """Slack side of the relay."""

    model_config = ConfigDict(extra="allow")

    workspaces: list[SlackWorkspaceConfig] = Field(default_factory=list)
    socket_mode: bool = True
    send_as_user: bool = False


# =============================================================================
# Lark Configuration
# =============================================================================


class LarkConfig(BaseModel):
    """Lark (Feishu) side of the relay."""

    model_config = ConfigDict(extra="allow")

    app_id: str | None = None
    app_secret: str | None = None
    verification_token: str | None = None
    encrypt_key: str | None = None
    webhook_url: str | None = None
    domain: str = "https://open.larksuite.com"

    @property
    def has_app(self) -> bool:
        """Check if app credentials are configured."""
        return bool(self.app_id and self.app_secret)


# =============================================================================
# Webhook Server Configuration
# =============================================================================


class WebhookConfig(BaseModel):
    """HTTP endpoint receiving Lark and Slack events."""

    model_config = ConfigDict(extra="allow")

    enable: bool = False
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)


# =============================================================================
# Storage Configuration
# =============================================================================


class StorageConfig(BaseModel):
    """Backing store for the ledger."""

    model_config = ConfigDict(extra="allow")

    backend: Literal["memory", "file"] = "file"
    path: Path | None = None  # Defaults to ~/.chatrelay/ledger.json


# =============================================================================
# Root Configuration Model
# =============================================================================


class Config(BaseModel):
    """
    Root configuration model for chatrelay.

    Configuration can be loaded from YAML files and environment variables,
    merged in order of priority.
    """

    model_config = ConfigDict(extra="allow")

    slack: SlackConfig = Field(default_factory=SlackConfig)
    lark: LarkConfig = Field(default_factory=LarkConfig)
    channel_mappings: list[ChannelMapping] = Field(default_factory=list)
    filters: MessageFilter = Field(default_factory=MessageFilter)
    options: RelayOptions = Field(default_factory=RelayOptions)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    def workspace_ids(self) -> list[str]:
        """Configured workspace ids, skipping workspaces without one."""
        return [ws.id for ws in self.slack.workspaces if ws.id]
