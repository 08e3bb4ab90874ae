"""Platform client protocol definition."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Literal, Optional

from chatrelay.relay.models import Platform, RenderedPayload, SendResult

logger = logging.getLogger(__name__)

DirectoryKind = Literal["users", "channels"]

# Receives raw transport envelopes (already acknowledged)
EnvelopeHandler = Callable[[dict[str, Any]], Awaitable[None]]


class PlatformClient(ABC):
    """Abstract base class for platform clients.

    Each platform (Slack, Lark) implements this protocol so the relay can
    send, look up identities and poll history without knowing which side it
    is talking to.
    """

    def __init__(self) -> None:
        """Initialize the platform client."""
        self._connected = False
        self._handler: Optional[EnvelopeHandler] = None

    @property
    @abstractmethod
    def platform(self) -> Platform:
        """The platform this client talks to."""
        ...

    @property
    @abstractmethod
    def credential_fingerprint(self) -> str:
        """Stable, non-secret identifier of the credential in use."""
        ...

    @property
    def workspace_id(self) -> Optional[str]:
        """Workspace (or tenant) this client is bound to."""
        return None

    @property
    def workspace_name(self) -> Optional[str]:
        """Configured display name of the workspace, if any."""
        return None

    @property
    def is_connected(self) -> bool:
        """Check if the push transport is connected."""
        return self._connected

    @abstractmethod
    async def connect(self, handler: EnvelopeHandler) -> None:
        """Open the push transport.

        Every envelope received afterwards is passed to handler.

        Raises:
            TransportError: If the transport cannot be established
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the push transport."""
        ...

    @abstractmethod
    async def send_message(self, channel_id: str, payload: RenderedPayload) -> SendResult:
        """Post a rendered message.

        Args:
            channel_id: Destination channel or chat
            payload: The rendered message

        Returns:
            Identifiers of the posted message

        Raises:
            TransientAPIError: If the platform rejects the call
        """
        ...

    @abstractmethod
    async def fetch_directory(self, kind: DirectoryKind) -> dict[str, str]:
        """Fetch a lowercase name to id map of users or channels.

        Raises:
            TransientAPIError: If the platform rejects the call
        """
        ...

    @abstractmethod
    def format_mention(self, user_id: str, name: str) -> str:
        """Native mention syntax for a user on this platform."""
        ...

    async def deliver(self, envelope: dict[str, Any]) -> bool:
        """Hand an envelope received over HTTP to the connected handler.

        Returns:
            True if the envelope was handled, False if the client is not connected
        """
        if not self._connected or self._handler is None:
            logger.debug(f"Dropping {self.platform.value} envelope: transport not connected")
            return False
        await self._handler(envelope)
        return True

    async def get_channel_name(self, channel_id: str) -> Optional[str]:
        """Look up a channel's display name.

        Optional - returns None by default.
        """
        return None

    async def get_user_name(self, user_id: str) -> Optional[str]:
        """Look up a user's display name.

        Optional - returns None by default.
        """
        return None

    async def is_shared_channel(self, channel_id: str) -> bool:
        """Check whether a channel is shared with another organization.

        Optional - returns False by default.
        """
        return False

    def forget_channel(self, channel_id: str) -> None:
        """Drop any cached data about a channel (after a rename or id change).

        Optional - no-op by default.
        """
        pass

    async def fetch_history(
        self,
        channel_id: str,
        oldest: Optional[str] = None,
        limit: int = 100,
        latest: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Fetch up to limit channel messages between oldest and latest, newest first.

        A full page means older messages may remain below the oldest one
        returned; callers page backwards by passing that timestamp as latest.

        Only required for platforms that can be polled.
        """
        raise NotImplementedError(f"{self.platform.value} does not support history polling")

    async def fetch_thread_replies(
        self,
        channel_id: str,
        thread_ts: str,
        oldest: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Fetch every reply in a thread newer than oldest, oldest first.

        Only required for platforms that can be polled.
        """
        raise NotImplementedError(f"{self.platform.value} does not support thread polling")

    async def health_check(self) -> bool:
        """Check if the client can reach the platform.

        Returns:
            True if healthy, False otherwise
        """
        return self._connected
