"""
Relay engine for chatrelay.

Moves messages between Slack and Lark: normalization, filtering and
mapping, mention and channel rewriting, loop prevention, push and poll
ingestion.
"""

from chatrelay.relay.events import InboundEvent
from chatrelay.relay.exceptions import (
    ConfigurationError,
    RelayError,
    TransientAPIError,
    TransportError,
    WebhookVerificationFailure,
)
from chatrelay.relay.ledger import JsonFileStore, KeyValueStore, Ledger, MemoryStore
from chatrelay.relay.models import (
    ChannelMapping,
    Direction,
    MessageFilter,
    NormalizedMessage,
    Platform,
    RelayOptions,
    RelayStatus,
)
from chatrelay.relay.orchestrator import RelayOrchestrator, WebhookResponse
from chatrelay.relay.protocol import PlatformClient

__all__ = [
    "ChannelMapping",
    "ConfigurationError",
    "Direction",
    "InboundEvent",
    "JsonFileStore",
    "KeyValueStore",
    "Ledger",
    "MemoryStore",
    "MessageFilter",
    "NormalizedMessage",
    "Platform",
    "PlatformClient",
    "RelayError",
    "RelayOrchestrator",
    "RelayOptions",
    "RelayStatus",
    "TransientAPIError",
    "TransportError",
    "WebhookResponse",
    "WebhookVerificationFailure",
]
