"""Forwarding pipeline shared by the push and poll relays.

evaluate -> channel reference -> mentions -> render -> send -> record
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import NamedTuple, Optional

from chatrelay.relay.exceptions import TransientAPIError
from chatrelay.relay.filters import FilterEngine
from chatrelay.relay.identity import IdentityResolver
from chatrelay.relay.ledger import Ledger
from chatrelay.relay.models import (
    LARK_WEBHOOK_CHANNEL,
    ChannelMapping,
    Destination,
    Direction,
    MessageFilter,
    NormalizedMessage,
    Platform,
    RelayCounters,
    RelayOptions,
)
from chatrelay.relay.protocol import PlatformClient
from chatrelay.relay.transformer import apply_channel_reference, render

logger = logging.getLogger(__name__)


class ForwardOutcome(NamedTuple):
    """What happened to one message."""

    forwarded: int
    reason: Optional[str] = None


class RelayPipeline:
    """Forwards normalized messages to their destinations.

    Platform failures while sending are logged, counted and dropped. Any
    other exception propagates to the caller.
    """

    def __init__(
        self,
        ledger: Ledger,
        resolver: IdentityResolver,
        slack_clients: dict[str, PlatformClient],
        lark_client: Optional[PlatformClient],
        mappings: Optional[list[ChannelMapping]] = None,
        filters: Optional[MessageFilter] = None,
        options: Optional[RelayOptions] = None,
        counters: Optional[RelayCounters] = None,
        lark_webhook_fallback: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the pipeline.

        Args:
            ledger: Records posted messages for loop prevention
            resolver: Resolves mentions and channel references
            slack_clients: Slack clients keyed by workspace id (first is the default)
            lark_client: Lark client, if Lark is configured
            mappings: Channel mappings
            filters: Filtering rules
            options: Formatting options and default destinations
            counters: Shared forwarding counters
            lark_webhook_fallback: Post unmapped Slack messages through the Lark webhook
            clock: Returns the current time for the mute window
        """
        self._ledger = ledger
        self._resolver = resolver
        self._slack_clients = slack_clients
        self._lark_client = lark_client
        self._mappings = list(mappings or [])
        self._filters = filters
        self._options = options or RelayOptions()
        self._counters = counters if counters is not None else RelayCounters()
        self._lark_webhook_fallback = lark_webhook_fallback
        self._clock = clock
        self._engine = FilterEngine(timezone=self._options.timezone)

    @property
    def counters(self) -> RelayCounters:
        """Forwarding counters."""
        return self._counters

    def default_destination(self, message: NormalizedMessage) -> Optional[Destination]:
        """Fallback destination for messages no mapping covers."""
        if message.direction is Direction.LARK_TO_SLACK:
            if self._options.default_slack_channel:
                return Destination(
                    platform=Platform.SLACK, channel_id=self._options.default_slack_channel
                )
            return None

        if self._options.default_lark_chat:
            return Destination(platform=Platform.LARK, channel_id=self._options.default_lark_chat)
        if self._lark_webhook_fallback:
            return Destination(platform=Platform.LARK, channel_id=LARK_WEBHOOK_CHANNEL)
        return None

    def client_for(self, destination: Destination) -> Optional[PlatformClient]:
        """The client that posts to a destination."""
        if destination.platform is Platform.LARK:
            return self._lark_client
        if destination.workspace_id and destination.workspace_id in self._slack_clients:
            return self._slack_clients[destination.workspace_id]
        for client in self._slack_clients.values():
            if destination.workspace_id and client.workspace_id == destination.workspace_id:
                return client
        return next(iter(self._slack_clients.values()), None)

    async def process(self, message: NormalizedMessage) -> ForwardOutcome:
        """Evaluate a message and forward it to every destination."""
        now = self._clock() if self._clock else None
        result = self._engine.evaluate(
            message,
            self._filters,
            self._mappings,
            default_destination=self.default_destination(message),
            now=now,
        )
        if not result.forward:
            return ForwardOutcome(0, result.reason)

        forwarded = 0
        for destination in result.destinations:
            if await self._forward(message, destination):
                forwarded += 1
        return ForwardOutcome(forwarded)

    async def _forward(self, message: NormalizedMessage, destination: Destination) -> bool:
        client = self.client_for(destination)
        if client is None:
            logger.warning(f"No {destination.platform.value} client for {destination}")
            self._counters.record_error()
            return False

        text = message.text
        try:
            if message.direction is Direction.LARK_TO_SLACK:
                override = await apply_channel_reference(text, destination, self._resolver, client)
                destination, text = override.destination, override.text

            text = await self._resolver.resolve_mentions(text, client)
            payload = render(message.model_copy(update={"text": text}), destination.platform, self._options)
            sent = await client.send_message(destination.channel_id, payload)

        except TransientAPIError as e:
            logger.warning(
                f"Failed to forward {message.source_platform.value} message "
                f"{message.source_channel_id}@{message.source_timestamp} "
                f"(workspace {message.workspace_id}) to {destination}: {e}"
            )
            self._counters.record_error()
            return False

        if sent.timestamp:
            await self._ledger.record_sent(sent.channel_id, sent.timestamp, client.workspace_id)

        self._counters.record_forward(message.direction)
        logger.info(f"Forwarded {message.direction.value} message to {destination}")
        return True
