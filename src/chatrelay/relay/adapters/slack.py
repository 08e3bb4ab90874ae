"""Slack platform client using slack_sdk (Web API plus Socket Mode)."""

import logging
from typing import Any, Optional

import aiohttp
from slack_sdk.errors import SlackApiError
from slack_sdk.socket_mode.aiohttp import SocketModeClient
from slack_sdk.socket_mode.request import SocketModeRequest
from slack_sdk.socket_mode.response import SocketModeResponse
from slack_sdk.web.async_client import AsyncWebClient

from chatrelay.relay.exceptions import TransientAPIError, TransportError
from chatrelay.relay.identity import fingerprint
from chatrelay.relay.models import Platform, RenderedPayload, SendResult
from chatrelay.relay.protocol import DirectoryKind, EnvelopeHandler, PlatformClient

logger = logging.getLogger(__name__)

PAGE_LIMIT = 200


def _to_transient(e: Exception, action: str) -> TransientAPIError:
    """Convert a Slack SDK or network error into a TransientAPIError."""
    retry_after = None
    if isinstance(e, SlackApiError):
        error = e.response.get("error", "unknown_error")
        headers = getattr(e.response, "headers", None) or {}
        if "Retry-After" in headers:
            retry_after = int(headers["Retry-After"])
        message = f"Slack {action} failed: {error}"
    else:
        message = f"Slack {action} failed: {e}"
    return TransientAPIError(message, platform=Platform.SLACK.value, retry_after=retry_after)


class SlackClient(PlatformClient):
    """Slack client for one workspace.

    Push delivery uses Socket Mode when an app-level token is configured;
    otherwise envelopes arrive through the Events API webhook and are handed
    in with ``deliver``.

    Configuration:
        - bot_token: Bot User OAuth Token (starts with xoxb-)
        - app_token: App-Level Token for Socket Mode (starts with xapp-)
        - user_token: User OAuth Token (xoxp-), used to post as the user and
          to read Slack Connect channels the bot cannot join
    """

    def __init__(
        self,
        bot_token: str,
        app_token: Optional[str] = None,
        user_token: Optional[str] = None,
        workspace_id: Optional[str] = None,
        workspace_name: Optional[str] = None,
        send_as_user: bool = False,
        web_client: Optional[AsyncWebClient] = None,
        user_client: Optional[AsyncWebClient] = None,
    ):
        """Initialize Slack client.

        Args:
            bot_token: Bot User OAuth Token (xoxb-...)
            app_token: App-Level Token for Socket Mode (xapp-...)
            user_token: User OAuth Token (xoxp-...)
            workspace_id: Workspace (team) id, filled in by auth.test if omitted
            workspace_name: Display name shown on forwarded messages
            send_as_user: Post with the user token instead of the bot token
            web_client: Pre-built bot Web API client
            user_client: Pre-built user Web API client
        """
        super().__init__()

        self._bot_token = bot_token
        self._app_token = app_token
        self._user_token = user_token
        self._workspace_id = workspace_id
        self._workspace_name = workspace_name
        self._send_as_user = send_as_user and bool(user_token)

        self._web_client = web_client or AsyncWebClient(token=bot_token)
        self._user_client = user_client
        if self._user_client is None and user_token:
            self._user_client = AsyncWebClient(token=user_token)

        self._socket_client: Optional[SocketModeClient] = None
        self._bot_user_id: Optional[str] = None
        self._channels: dict[str, dict[str, Any]] = {}
        self._user_names: dict[str, str] = {}

    @property
    def platform(self) -> Platform:
        """The platform this client talks to."""
        return Platform.SLACK

    @property
    def credential_fingerprint(self) -> str:
        """Fingerprint of the bot token."""
        return fingerprint(self._bot_token)

    @property
    def workspace_id(self) -> Optional[str]:
        """Workspace (team) id."""
        return self._workspace_id

    @property
    def workspace_name(self) -> Optional[str]:
        """Configured workspace display name."""
        return self._workspace_name

    @property
    def bot_user_id(self) -> Optional[str]:
        """User id of the bot, known after connect."""
        return self._bot_user_id

    @property
    def has_user_token(self) -> bool:
        """Check if a user token is configured."""
        return self._user_client is not None

    @property
    def history_client(self) -> AsyncWebClient:
        """Client used to read history (the user client when available)."""
        return self._user_client or self._web_client

    async def connect(self, handler: EnvelopeHandler) -> None:
        """Authenticate and open Socket Mode if an app token is configured."""
        if self._connected:
            logger.warning("Slack client already connected")
            return

        self._handler = handler

        try:
            auth_response = await self._web_client.auth_test()
        except (SlackApiError, aiohttp.ClientError) as e:
            raise TransportError(f"Failed to authenticate Slack bot: {e}", "slack") from e

        self._bot_user_id = auth_response.get("user_id")
        self._workspace_id = self._workspace_id or auth_response.get("team_id")
        logger.info(
            f"Slack bot authenticated as user ID: {self._bot_user_id} "
            f"(workspace {self._workspace_id})"
        )

        if self._app_token:
            self._socket_client = SocketModeClient(
                app_token=self._app_token,
                web_client=self._web_client,
            )
            self._socket_client.socket_mode_request_listeners.append(self._handle_socket_request)
            try:
                await self._socket_client.connect()
            except (SlackApiError, aiohttp.ClientError) as e:
                self._socket_client = None
                raise TransportError(f"Failed to open Socket Mode: {e}", "slack") from e
            logger.info(f"Slack workspace {self._workspace_id} connected in Socket Mode")
        else:
            logger.info(f"Slack workspace {self._workspace_id} receiving events over HTTP")

        self._connected = True

    async def disconnect(self) -> None:
        """Close Socket Mode."""
        if not self._connected:
            return

        if self._socket_client:
            await self._socket_client.close()
            self._socket_client = None

        self._connected = False
        logger.info(f"Slack workspace {self._workspace_id} disconnected")

    async def _handle_socket_request(
        self, client: SocketModeClient, req: SocketModeRequest
    ) -> None:
        """Acknowledge a Socket Mode request and hand events to the handler."""
        await client.send_socket_mode_response(SocketModeResponse(envelope_id=req.envelope_id))

        if req.type == "events_api" and self._handler is not None:
            await self._handler(req.payload)

    async def send_message(self, channel_id: str, payload: RenderedPayload) -> SendResult:
        """Post a message to a Slack channel.

        Bot posts carry the original sender as the display name. Posts made
        with the user token appear as the user and cannot override it.
        """
        kwargs: dict[str, Any] = {
            "channel": channel_id,
            "text": payload.text,
        }

        if self._send_as_user and self._user_client is not None:
            client = self._user_client
        else:
            client = self._web_client
            if payload.username:
                kwargs["username"] = payload.username

        try:
            response = await client.chat_postMessage(**kwargs)
        except (SlackApiError, aiohttp.ClientError) as e:
            raise _to_transient(e, "chat.postMessage") from e

        ts = response.get("ts")
        return SendResult(
            channel_id=response.get("channel") or channel_id,
            message_id=ts,
            timestamp=ts,
        )

    async def fetch_directory(self, kind: DirectoryKind) -> dict[str, str]:
        """Lowercase name to id map of active users or unarchived channels."""
        directory: dict[str, str] = {}
        cursor: Optional[str] = None

        try:
            while True:
                if kind == "users":
                    response = await self._web_client.users_list(cursor=cursor, limit=PAGE_LIMIT)
                    for user in response.get("members", []):
                        if user.get("deleted") or user.get("is_bot"):
                            continue
                        profile = user.get("profile") or {}
                        for name in (
                            profile.get("display_name"),
                            profile.get("real_name"),
                            user.get("name"),
                        ):
                            if name:
                                directory.setdefault(name.lower(), user["id"])
                else:
                    response = await self._web_client.conversations_list(
                        cursor=cursor,
                        limit=PAGE_LIMIT,
                        types="public_channel,private_channel",
                        exclude_archived=True,
                    )
                    for channel in response.get("channels", []):
                        if channel.get("is_archived"):
                            continue
                        directory[channel["name"].lower()] = channel["id"]

                cursor = (response.get("response_metadata") or {}).get("next_cursor")
                if not cursor:
                    break

        except (SlackApiError, aiohttp.ClientError) as e:
            raise _to_transient(e, f"{kind} directory") from e

        return directory

    def format_mention(self, user_id: str, name: str) -> str:
        """Slack mention syntax."""
        return f"<@{user_id}>"

    async def _channel_info(self, channel_id: str) -> dict[str, Any]:
        """conversations.info for a channel, cached until forgotten.

        Failures are logged and return an empty dict, which is not cached.
        """
        if channel_id in self._channels:
            return self._channels[channel_id]

        try:
            response = await self.history_client.conversations_info(channel=channel_id)
        except (SlackApiError, aiohttp.ClientError) as e:
            logger.warning(f"Failed to get channel info for {channel_id}: {e}")
            return {}

        info = response.get("channel") or {}
        if info:
            self._channels[channel_id] = info
        return info

    async def get_channel_name(self, channel_id: str) -> Optional[str]:
        return (await self._channel_info(channel_id)).get("name")

    async def is_shared_channel(self, channel_id: str) -> bool:
        """Check for a Slack Connect or org-shared channel."""
        info = await self._channel_info(channel_id)
        return bool(info.get("is_shared") or info.get("is_ext_shared"))

    async def get_user_name(self, user_id: str) -> Optional[str]:
        if user_id in self._user_names:
            return self._user_names[user_id]

        try:
            response = await self.history_client.users_info(user=user_id)
        except (SlackApiError, aiohttp.ClientError) as e:
            logger.warning(f"Failed to get user info for {user_id}: {e}")
            return None

        user = response.get("user") or {}
        profile = user.get("profile") or {}
        name = profile.get("display_name") or user.get("real_name") or user.get("name")
        if name:
            self._user_names[user_id] = name
        return name

    def forget_channel(self, channel_id: str) -> None:
        """Drop cached channel info (after a rename)."""
        self._channels.pop(channel_id, None)

    async def fetch_history(
        self,
        channel_id: str,
        oldest: Optional[str] = None,
        limit: int = 100,
        latest: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Up to limit messages between oldest and latest (exclusive), newest first."""
        kwargs: dict[str, Any] = {"channel": channel_id, "limit": limit}
        if oldest:
            kwargs["oldest"] = oldest
        if latest:
            kwargs["latest"] = latest

        try:
            response = await self.history_client.conversations_history(**kwargs)
        except (SlackApiError, aiohttp.ClientError) as e:
            raise _to_transient(e, "conversations.history") from e

        return list(response.get("messages", []))

    async def fetch_thread_replies(
        self,
        channel_id: str,
        thread_ts: str,
        oldest: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Every thread message newer than oldest, following page cursors.

        The parent may be included.
        """
        kwargs: dict[str, Any] = {"channel": channel_id, "ts": thread_ts, "limit": PAGE_LIMIT}
        if oldest:
            kwargs["oldest"] = oldest

        messages: list[dict[str, Any]] = []
        try:
            while True:
                response = await self.history_client.conversations_replies(**kwargs)
                messages.extend(response.get("messages", []))

                cursor = (response.get("response_metadata") or {}).get("next_cursor")
                if not response.get("has_more") or not cursor:
                    break
                kwargs["cursor"] = cursor
        except (SlackApiError, aiohttp.ClientError) as e:
            raise _to_transient(e, "conversations.replies") from e

        return messages

    async def health_check(self) -> bool:
        """Check if the Slack bot token still authenticates.

        Returns:
            True if healthy, False otherwise
        """
        if not self._connected:
            return False

        try:
            await self._web_client.auth_test()
            return True
        except (SlackApiError, aiohttp.ClientError) as e:
            logger.error(f"Slack health check failed: {e}")
            return False
