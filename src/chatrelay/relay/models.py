"""Data models for the Slack and Lark relay."""

import re
from datetime import datetime, time
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Lark destination that posts through the incoming webhook instead of the app API
LARK_WEBHOOK_CHANNEL = "webhook"


class Platform(str, Enum):
    """Platforms the relay bridges."""

    SLACK = "slack"
    LARK = "lark"

    @property
    def other(self) -> "Platform":
        """The platform on the opposite side of the bridge."""
        return Platform.LARK if self is Platform.SLACK else Platform.SLACK

    @property
    def label(self) -> str:
        """Human readable platform name."""
        return "Slack" if self is Platform.SLACK else "Lark"


class Direction(str, Enum):
    """Direction of a channel mapping or a message."""

    SLACK_TO_LARK = "slack_to_lark"
    LARK_TO_SLACK = "lark_to_slack"
    BIDIRECTIONAL = "bidirectional"

    @classmethod
    def for_source(cls, platform: Platform) -> "Direction":
        """Directed value for messages originating on a platform."""
        return cls.SLACK_TO_LARK if platform is Platform.SLACK else cls.LARK_TO_SLACK


class ConnectionState(str, Enum):
    """Lifecycle of a push transport."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class NormalizedMessage(BaseModel):
    """A message from either platform in a platform-independent shape."""

    source_platform: Platform
    source_channel_id: str
    source_channel_name: Optional[str] = None
    sender_id: str
    sender_name: Optional[str] = None
    text: str
    source_timestamp: str  # Fractional seconds since epoch, kept as a string
    thread_id: Optional[str] = None
    is_mention: bool = False
    is_thread_reply: bool = False
    is_bot: bool = False
    message_id: Optional[str] = None
    workspace_id: Optional[str] = None
    workspace_name: Optional[str] = None
    is_shared_channel: bool = False
    message_link: Optional[str] = None

    @property
    def direction(self) -> Direction:
        """Direction this message travels in."""
        return Direction.for_source(self.source_platform)

    @property
    def display_sender(self) -> str:
        """Sender name, falling back to the sender id."""
        return self.sender_name or self.sender_id

    @property
    def display_channel(self) -> str:
        """Channel name, falling back to the channel id."""
        return self.source_channel_name or self.source_channel_id

    def __str__(self) -> str:
        """String representation for logging."""
        return (
            f"[{self.source_platform.value}] {self.source_channel_id}@{self.source_timestamp} "
            f"{self.display_sender}: {self.text[:50]}"
        )


class ChannelMapping(BaseModel):
    """Pairs a channel on one platform with a channel on the other.

    For ``slack_to_lark`` and ``bidirectional`` mappings the source is the
    Slack channel and the destination is the Lark chat. For
    ``lark_to_slack`` the source is the Lark chat. A bidirectional mapping
    also routes messages from its destination back to its source.

    ``slack_channel``/``lark_chat`` are accepted as an alternative to
    ``source_channel``/``dest_channel``.
    """

    model_config = ConfigDict(frozen=True)

    source_channel: str
    dest_channel: str
    direction: Direction = Direction.BIDIRECTIONAL
    workspace_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_platform_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "source_channel" in data:
            return data
        if "slack_channel" not in data or "lark_chat" not in data:
            return data

        data = dict(data)
        slack_channel = data.pop("slack_channel")
        lark_chat = data.pop("lark_chat")
        if data.get("direction") == Direction.LARK_TO_SLACK.value:
            data["source_channel"], data["dest_channel"] = lark_chat, slack_channel
        else:
            data["source_channel"], data["dest_channel"] = slack_channel, lark_chat
        return data

    def legs(self) -> list[tuple[Direction, str, str]]:
        """Directed (direction, source, destination) legs this mapping covers."""
        if self.direction is Direction.BIDIRECTIONAL:
            return [
                (Direction.SLACK_TO_LARK, self.source_channel, self.dest_channel),
                (Direction.LARK_TO_SLACK, self.dest_channel, self.source_channel),
            ]
        return [(self.direction, self.source_channel, self.dest_channel)]

    def __str__(self) -> str:
        """String representation for logging."""
        return f"{self.source_channel} -> {self.dest_channel} ({self.direction.value})"


class MuteTimeRange(BaseModel):
    """Daily window in which forwarding is suppressed.

    The window is half-open, [start, end). A start later than the end wraps
    past midnight. Equal start and end is an empty window.
    """

    enabled: bool = False
    start_hour: int = Field(default=22, ge=0, le=23)
    start_minute: int = Field(default=0, ge=0, le=59)
    end_hour: int = Field(default=8, ge=0, le=23)
    end_minute: int = Field(default=0, ge=0, le=59)

    def contains(self, moment: time) -> bool:
        """Check whether a local wall-clock time falls inside the window."""
        if not self.enabled:
            return False

        start = self.start_hour * 60 + self.start_minute
        end = self.end_hour * 60 + self.end_minute
        current = moment.hour * 60 + moment.minute

        if start == end:
            return False
        if start < end:
            return start <= current < end
        return current >= start or current < end


class MessageFilter(BaseModel):
    """Per-relay filtering rules.

    Exclusions always win over inclusions. An empty include list allows
    everything for that dimension.
    """

    include_channels: list[str] = Field(default_factory=list)
    exclude_channels: list[str] = Field(default_factory=list)
    include_shared_channels: bool = True
    include_users: list[str] = Field(default_factory=list)
    exclude_users: list[str] = Field(default_factory=list)
    exclude_user_ids: list[str] = Field(default_factory=list)
    include_patterns: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=list)
    exclude_keywords: list[str] = Field(default_factory=list)
    mute_time_range: MuteTimeRange = Field(default_factory=MuteTimeRange)

    @field_validator("include_patterns", "exclude_patterns")
    @classmethod
    def _patterns_compile(cls, patterns: list[str]) -> list[str]:
        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid pattern {pattern!r}: {e}") from e
        return patterns


class RelayOptions(BaseModel):
    """Formatting and scheduling options for a relay."""

    model_config = ConfigDict(extra="allow")

    # Format
    include_channel_name: bool = True
    include_user_name: bool = True
    include_timestamp: bool = True
    timezone: str = "Asia/Tokyo"

    # Threads and polling
    include_thread_replies: bool = True
    slack_connect_polling: bool = False
    polling_interval_ms: int = Field(default=5000, ge=500)
    poll_channels: list[str] = Field(default_factory=list)
    thread_scan_depth: int = Field(default=20, ge=1, le=100)

    # Fallback destinations
    default_slack_channel: str | None = None
    default_lark_chat: str | None = None

    log_level: str = "INFO"

    @field_validator("timezone")
    @classmethod
    def _timezone_exists(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @property
    def zone(self) -> ZoneInfo:
        """The configured timezone."""
        return ZoneInfo(self.timezone)


class Destination(BaseModel):
    """Where a forwarded message goes."""

    model_config = ConfigDict(frozen=True)

    platform: Platform
    channel_id: str
    workspace_id: Optional[str] = None

    def __str__(self) -> str:
        """String representation for logging."""
        return f"{self.platform.value}:{self.channel_id}"


class EvaluationResult(BaseModel):
    """Outcome of evaluating a message against filters and mappings."""

    forward: bool
    destinations: list[Destination] = Field(default_factory=list)
    reason: Optional[str] = None

    @classmethod
    def drop(cls, reason: str) -> "EvaluationResult":
        """Build a result that suppresses forwarding."""
        return cls(forward=False, reason=reason)


class RenderedPayload(BaseModel):
    """A message rendered for a destination platform."""

    text: str
    title: Optional[str] = None
    post: Optional[list[list[dict[str, Any]]]] = None  # Lark rich-text rows
    username: Optional[str] = None  # Display name override for Slack bot posts


class SendResult(BaseModel):
    """Identifiers of a message the relay posted."""

    channel_id: str
    message_id: Optional[str] = None
    timestamp: Optional[str] = None


class RelayCounters(BaseModel):
    """Forwarding counters."""

    slack_to_lark: int = 0
    lark_to_slack: int = 0
    errors: int = 0

    def record_forward(self, direction: Direction) -> None:
        """Count a successful forward."""
        if direction is Direction.SLACK_TO_LARK:
            self.slack_to_lark += 1
        elif direction is Direction.LARK_TO_SLACK:
            self.lark_to_slack += 1

    def record_error(self) -> None:
        """Count a failed message."""
        self.errors += 1


class RelayStatus(BaseModel):
    """Snapshot of a running relay."""

    running: bool
    workspaces: dict[str, bool] = Field(default_factory=dict)
    counters: RelayCounters = Field(default_factory=RelayCounters)
    started_at: Optional[datetime] = None
