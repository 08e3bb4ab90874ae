"""Push relay: handles events a platform delivers to the relay."""

import logging
from typing import Any, Optional

from chatrelay.relay.events import (
    ChannelIdChanged,
    ChannelRenamed,
    IgnoredEvent,
    InboundEvent,
    MentionEvent,
    MessageEvent,
    UrlVerification,
)
from chatrelay.relay.identity import IdentityResolver
from chatrelay.relay.ledger import Ledger
from chatrelay.relay.models import ConnectionState, NormalizedMessage, Platform, RelayCounters
from chatrelay.relay.pipeline import RelayPipeline
from chatrelay.relay.protocol import PlatformClient
from chatrelay.relay.transformer import parse_lark_event, parse_slack_event

logger = logging.getLogger(__name__)


class PushRelay:
    """Relays events from one platform client (one Slack workspace or Lark).

    The transport lifecycle is disconnected -> connecting -> connected. Events
    that arrive while not connected are dropped.
    """

    def __init__(
        self,
        client: PlatformClient,
        pipeline: RelayPipeline,
        ledger: Ledger,
        resolver: IdentityResolver,
        counters: Optional[RelayCounters] = None,
    ):
        self._client = client
        self._pipeline = pipeline
        self._ledger = ledger
        self._resolver = resolver
        self._counters = counters if counters is not None else pipeline.counters
        self._state = ConnectionState.DISCONNECTED

    @property
    def client(self) -> PlatformClient:
        """The platform client this relay listens to."""
        return self._client

    @property
    def state(self) -> ConnectionState:
        """Transport state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if the transport is connected."""
        return self._state is ConnectionState.CONNECTED

    async def start(self) -> None:
        """Connect the transport.

        Raises:
            TransportError: If the transport cannot be established
        """
        if self._state is not ConnectionState.DISCONNECTED:
            logger.warning(f"{self._client.platform.label} push relay already started")
            return

        self._state = ConnectionState.CONNECTING
        try:
            await self._client.connect(self.on_envelope)
        except Exception:
            self._state = ConnectionState.DISCONNECTED
            raise

        self._state = ConnectionState.CONNECTED
        logger.info(
            f"{self._client.platform.label} push relay connected "
            f"(workspace {self._client.workspace_id})"
        )

    async def stop(self) -> None:
        """Disconnect the transport."""
        if self._state is ConnectionState.DISCONNECTED:
            return

        self._state = ConnectionState.DISCONNECTED
        await self._client.disconnect()
        logger.info(f"{self._client.platform.label} push relay stopped")

    async def on_envelope(self, envelope: dict[str, Any]) -> None:
        """Parse a raw transport envelope and handle the resulting event."""
        if self._client.platform is Platform.SLACK:
            event = parse_slack_event(envelope, self._client.workspace_id)
        else:
            event = parse_lark_event(envelope)
        await self.handle(event)

    async def handle(self, event: InboundEvent) -> None:
        """Handle one inbound event.

        Failures are logged and counted, never raised.
        """
        if self._state is not ConnectionState.CONNECTED:
            logger.debug(f"Dropping {event.kind} event: transport {self._state.value}")
            return

        try:
            if isinstance(event, (MessageEvent, MentionEvent)):
                await self._handle_message(event.message)
            elif isinstance(event, (ChannelRenamed, ChannelIdChanged)):
                await self._handle_channel_change(event)
            elif isinstance(event, (UrlVerification, IgnoredEvent)):
                logger.debug(f"Ignoring {event.kind} event")

        except Exception as e:
            message = getattr(event, "message", None)
            location = (
                f"{message.source_channel_id}@{message.source_timestamp}" if message else event.kind
            )
            logger.error(
                f"Error handling {self._client.platform.value} event {location} "
                f"(workspace {self._client.workspace_id}): {e}",
                exc_info=True,
            )
            self._counters.record_error()

    async def _handle_message(self, message: NormalizedMessage) -> None:
        workspace_id = self._client.workspace_id
        channel, ts = message.source_channel_id, message.source_timestamp

        if message.is_bot:
            logger.debug(f"Skipping bot message {channel}@{ts}")
            return

        if await self._ledger.was_sent_by_us(channel, ts, workspace_id):
            logger.debug(f"Skipping relayed message {channel}@{ts}")
            return

        # Slack delivers both message and app_mention for one post
        if not await self._ledger.mark_seen(channel, ts, workspace_id):
            logger.debug(f"Skipping duplicate delivery {channel}@{ts}")
            return

        message = await self._enrich(message)
        await self._pipeline.process(message)

    async def _enrich(self, message: NormalizedMessage) -> NormalizedMessage:
        """Fill in display names and channel details the event payload did not carry."""
        updates: dict[str, Any] = {}
        if not message.sender_name:
            name = await self._client.get_user_name(message.sender_id)
            if name:
                updates["sender_name"] = name
        if not message.source_channel_name:
            name = await self._client.get_channel_name(message.source_channel_id)
            if name:
                updates["source_channel_name"] = name
        if self._client.workspace_name and not message.workspace_name:
            updates["workspace_name"] = self._client.workspace_name
        if await self._client.is_shared_channel(message.source_channel_id):
            updates["is_shared_channel"] = True
        return message.model_copy(update=updates) if updates else message

    async def _handle_channel_change(self, event: ChannelRenamed | ChannelIdChanged) -> None:
        if isinstance(event, ChannelRenamed):
            logger.info(f"Channel {event.channel_id} renamed to #{event.name}, reloading channels")
            self._client.forget_channel(event.channel_id)
        else:
            logger.info(
                f"Channel id changed {event.old_channel_id} -> {event.new_channel_id}, "
                "reloading channels"
            )
            self._client.forget_channel(event.old_channel_id)

        await self._resolver.invalidate(self._client, "channels")
