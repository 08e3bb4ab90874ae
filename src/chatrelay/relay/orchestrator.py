"""Relay orchestrator: wires stores, clients and relays from configuration."""

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, NamedTuple, Optional

from slack_sdk.signature import SignatureVerifier

from chatrelay.relay.adapters.lark import LarkClient
from chatrelay.relay.adapters.lark_crypto import decrypt_event, verify_signature
from chatrelay.relay.adapters.slack import SlackClient
from chatrelay.relay.events import UrlVerification
from chatrelay.relay.exceptions import ConfigurationError, WebhookVerificationFailure
from chatrelay.relay.filters import validate_mappings
from chatrelay.relay.identity import IdentityResolver
from chatrelay.relay.ledger import JsonFileStore, KeyValueStore, Ledger, MemoryStore
from chatrelay.relay.models import Platform, RelayCounters, RelayStatus
from chatrelay.relay.pipeline import RelayPipeline
from chatrelay.relay.poll import PollRelay
from chatrelay.relay.protocol import PlatformClient
from chatrelay.relay.push import PushRelay
from chatrelay.relay.transformer import parse_lark_event, parse_slack_event

if TYPE_CHECKING:
    from chatrelay.config.schema import Config

logger = logging.getLogger(__name__)


class WebhookResponse(NamedTuple):
    """Result of an inbound webhook call."""

    challenge: Optional[str] = None
    handled: bool = False


def _lower_keys(headers: Optional[Mapping[str, str]]) -> dict[str, str]:
    return {k.lower(): v for k, v in (headers or {}).items()}


def build_store(config: "Config") -> KeyValueStore:
    """Create the ledger store selected by ``storage.backend``."""
    if config.storage.backend == "memory":
        return MemoryStore()
    return JsonFileStore(config.storage.path)


def build_slack_clients(config: "Config") -> dict[str, PlatformClient]:
    """One Slack client per configured workspace, keyed by workspace id (or name)."""
    clients: dict[str, PlatformClient] = {}
    for ws in config.slack.workspaces:
        if not ws.bot_token:
            continue
        clients[ws.id or ws.label] = SlackClient(
            bot_token=ws.bot_token,
            app_token=ws.app_token if config.slack.socket_mode else None,
            user_token=ws.user_token,
            workspace_id=ws.id,
            workspace_name=ws.name,
            send_as_user=config.slack.send_as_user,
        )
    return clients


def build_lark_client(config: "Config") -> Optional[PlatformClient]:
    """The Lark client, if app credentials or a webhook URL are configured."""
    lark = config.lark
    if not lark.has_app and not lark.webhook_url:
        return None
    return LarkClient(
        app_id=lark.app_id,
        app_secret=lark.app_secret,
        webhook_url=lark.webhook_url,
        domain=lark.domain,
    )


class RelayOrchestrator:
    """Owns every relay for one tenant.

    Builds (or accepts injected) stores and clients, starts the push relays
    and then the poll relays, and routes HTTP webhook events to the right
    push relay.
    """

    def __init__(
        self,
        config: "Config",
        store: Optional[KeyValueStore] = None,
        slack_clients: Optional[dict[str, PlatformClient]] = None,
        lark_client: Optional[PlatformClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
        directory_store: Optional[KeyValueStore] = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Relay configuration
            store: Ledger store (built from ``storage`` if omitted)
            slack_clients: Slack clients keyed by workspace id (built if omitted)
            lark_client: Lark client (built if omitted)
            clock: Returns the current time for the mute window
            directory_store: Cache for user and channel directories (in memory if omitted)
        """
        self._config = config
        self._store = store if store is not None else build_store(config)
        self._ledger = Ledger(self._store)
        self._resolver = IdentityResolver(
            directory_store if directory_store is not None else MemoryStore()
        )
        self._counters = RelayCounters()

        self._slack_clients = (
            slack_clients if slack_clients is not None else build_slack_clients(config)
        )
        self._lark_client = lark_client if lark_client is not None else build_lark_client(config)

        self._pipeline = RelayPipeline(
            ledger=self._ledger,
            resolver=self._resolver,
            slack_clients=self._slack_clients,
            lark_client=self._lark_client,
            mappings=config.channel_mappings,
            filters=config.filters,
            options=config.options,
            counters=self._counters,
            lark_webhook_fallback=bool(config.lark.webhook_url),
            clock=clock,
        )

        self._slack_relays: dict[str, PushRelay] = {
            key: PushRelay(client, self._pipeline, self._ledger, self._resolver, self._counters)
            for key, client in self._slack_clients.items()
        }
        self._lark_relay: Optional[PushRelay] = None
        if self._lark_client is not None:
            self._lark_relay = PushRelay(
                self._lark_client, self._pipeline, self._ledger, self._resolver, self._counters
            )

        self._poll_relays = self._build_poll_relays()
        self._running = False
        self._started_at: Optional[datetime] = None

    def _build_poll_relays(self) -> list[PollRelay]:
        options = self._config.options
        if not options.slack_connect_polling:
            return []

        by_key = {ws.id or ws.label: ws for ws in self._config.slack.workspaces}
        relays = []
        for index, (key, client) in enumerate(self._slack_clients.items()):
            ws = by_key.get(key)
            channels = list(ws.poll_channels) if ws else []
            if not channels and index == 0:
                channels = list(options.poll_channels)
            if not channels:
                continue
            relays.append(
                PollRelay(client, self._pipeline, self._ledger, options, channels, self._counters)
            )
        return relays

    @property
    def is_running(self) -> bool:
        """Check if the relays are running."""
        return self._running

    @property
    def ledger(self) -> Ledger:
        """The relay ledger."""
        return self._ledger

    @property
    def pipeline(self) -> RelayPipeline:
        """The forwarding pipeline."""
        return self._pipeline

    @property
    def poll_relays(self) -> list[PollRelay]:
        """Configured poll relays."""
        return list(self._poll_relays)

    def _validate(self) -> None:
        validate_mappings(self._config.channel_mappings)
        if not self._slack_clients:
            raise ConfigurationError("No Slack workspace is configured")
        if self._lark_client is None:
            raise ConfigurationError("Lark needs app credentials or a webhook URL")

    def _push_relays(self) -> list[PushRelay]:
        relays = list(self._slack_relays.values())
        if self._lark_relay is not None:
            relays.append(self._lark_relay)
        return relays

    async def start(self) -> None:
        """Validate configuration and start all relays.

        Raises:
            ConfigurationError: If the configuration cannot run
            TransportError: If a push transport cannot connect
        """
        if self._running:
            logger.warning("Relay already running")
            return

        self._validate()

        started: list[PushRelay] = []
        try:
            for relay in self._push_relays():
                await relay.start()
                started.append(relay)
        except Exception:
            logger.error("Failed to start push relays, rolling back")
            for relay in reversed(started):
                await relay.stop()
            raise

        for poll in self._poll_relays:
            await poll.start()

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        logger.info(
            f"Relay started: {len(self._slack_relays)} Slack workspaces, "
            f"{len(self._poll_relays)} poll relays"
        )

    async def stop(self) -> None:
        """Stop poll relays, then push relays."""
        if not self._running:
            return

        for poll in self._poll_relays:
            await poll.stop()
        for relay in self._push_relays():
            await relay.stop()

        self._running = False
        logger.info("Relay stopped")

    def get_status(self) -> RelayStatus:
        """Snapshot of connection state and counters."""
        workspaces = {
            f"slack:{relay.client.workspace_id or key}": relay.is_connected
            for key, relay in self._slack_relays.items()
        }
        if self._lark_relay is not None:
            workspaces["lark"] = self._lark_relay.is_connected

        return RelayStatus(
            running=self._running,
            workspaces=workspaces,
            counters=self._counters.model_copy(),
            started_at=self._started_at,
        )

    async def was_sent_by_us(
        self, channel_id: str, ts: str, workspace_id: Optional[str] = None
    ) -> bool:
        """Check whether the relay itself posted a message.

        Without a workspace id every configured workspace (and Lark) is checked.
        """
        if workspace_id is not None:
            return await self._ledger.was_sent_by_us(channel_id, ts, workspace_id)

        namespaces = {client.workspace_id for client in self._slack_clients.values()}
        if self._lark_client is not None:
            namespaces.add(self._lark_client.workspace_id)
        for namespace in namespaces:
            if await self._ledger.was_sent_by_us(channel_id, ts, namespace):
                return True
        return False

    async def handle_inbound_webhook(
        self,
        platform: Platform,
        payload: dict[str, Any],
        *,
        headers: Optional[Mapping[str, str]] = None,
        raw_body: Optional[bytes] = None,
    ) -> WebhookResponse:
        """Handle an event delivered over HTTP.

        Raises:
            WebhookVerificationFailure: If the token, signature or encryption is wrong
        """
        if platform is Platform.LARK:
            return await self._handle_lark_webhook(payload, _lower_keys(headers), raw_body)
        return await self._handle_slack_webhook(payload, _lower_keys(headers), raw_body)

    async def _handle_lark_webhook(
        self, payload: dict[str, Any], headers: dict[str, str], raw_body: Optional[bytes]
    ) -> WebhookResponse:
        lark = self._config.lark

        if "encrypt" in payload:
            if not lark.encrypt_key:
                raise WebhookVerificationFailure("Encrypted Lark event but no encrypt_key is set")
            signature = headers.get("x-lark-signature")
            if signature and raw_body is not None:
                valid = verify_signature(
                    headers.get("x-lark-request-timestamp", ""),
                    headers.get("x-lark-request-nonce", ""),
                    lark.encrypt_key,
                    raw_body,
                    signature,
                )
                if not valid:
                    raise WebhookVerificationFailure("Invalid Lark signature")
            payload = decrypt_event(payload["encrypt"], lark.encrypt_key)

        event = parse_lark_event(payload)
        if isinstance(event, UrlVerification):
            logger.info("Answering Lark URL verification")
            return WebhookResponse(challenge=event.challenge)

        token = payload.get("token") or (payload.get("header") or {}).get("token")
        if lark.verification_token and token != lark.verification_token:
            raise WebhookVerificationFailure("Invalid Lark verification token")

        if self._lark_client is None:
            logger.warning("Lark event received but Lark is not configured")
            return WebhookResponse()
        return WebhookResponse(handled=await self._lark_client.deliver(payload))

    async def _handle_slack_webhook(
        self, payload: dict[str, Any], headers: dict[str, str], raw_body: Optional[bytes]
    ) -> WebhookResponse:
        secrets = [ws.signing_secret for ws in self._config.slack.workspaces if ws.signing_secret]
        if secrets:
            if raw_body is None:
                raise WebhookVerificationFailure("Slack request body is required for verification")
            timestamp = headers.get("x-slack-request-timestamp", "")
            signature = headers.get("x-slack-signature", "")
            if not any(
                SignatureVerifier(secret).is_valid(raw_body, timestamp, signature)
                for secret in secrets
            ):
                raise WebhookVerificationFailure("Invalid Slack signature")

        team_id = payload.get("team_id")
        client = self._slack_client_for_team(team_id)
        event = parse_slack_event(payload, client.workspace_id if client else team_id)
        if isinstance(event, UrlVerification):
            logger.info("Answering Slack URL verification")
            return WebhookResponse(challenge=event.challenge)

        if client is None:
            logger.warning(f"Slack event for unknown workspace {team_id}")
            return WebhookResponse()
        return WebhookResponse(handled=await client.deliver(payload))

    def _slack_client_for_team(self, team_id: Optional[str]) -> Optional[PlatformClient]:
        """Client for a team id; only envelopes without one fall back to the first client."""
        if not team_id:
            return next(iter(self._slack_clients.values()), None)

        if team_id in self._slack_clients:
            return self._slack_clients[team_id]
        for client in self._slack_clients.values():
            if client.workspace_id == team_id:
                return client
        return None

    async def aclose(self) -> None:
        """Stop the relays and release HTTP clients."""
        await self.stop()
        if isinstance(self._lark_client, LarkClient):
            await self._lark_client.aclose()
