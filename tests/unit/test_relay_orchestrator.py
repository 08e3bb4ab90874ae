"""Unit tests for the relay orchestrator."""

import hashlib
import json
import time

import pytest
from slack_sdk.signature import SignatureVerifier

from chatrelay.config.schema import Config
from chatrelay.relay.adapters.lark_crypto import encrypt_event
from chatrelay.relay.exceptions import (
    ConfigurationError,
    TransportError,
    WebhookVerificationFailure,
)
from chatrelay.relay.ledger import MemoryStore
from chatrelay.relay.models import Platform
from chatrelay.relay.orchestrator import RelayOrchestrator, WebhookResponse

SIGNING_SECRET = "8f742231b10e8888abcd99yyyzzz85a5"
ENCRYPT_KEY = "lark-encrypt-key"


def make_config(**overrides) -> Config:
    data = {
        "slack": {
            "workspaces": [
                {"id": "T1", "name": "main", "bot_token": "xoxb-1", "app_token": "xapp-1"}
            ]
        },
        "lark": {"app_id": "cli_1", "app_secret": "s", "verification_token": "vt"},
        "channel_mappings": [{"slack_channel": "C_GENERAL", "lark_chat": "oc_ops"}],
        "options": {"include_timestamp": False},
        "storage": {"backend": "memory"},
    }
    data.update(overrides)
    return Config.model_validate(data)


def lark_message_payload(text: str = "hello", token: str = "vt") -> dict:
    return {
        "schema": "2.0",
        "header": {
            "event_type": "im.message.receive_v1",
            "token": token,
            "tenant_key": "tenant-1",
        },
        "event": {
            "sender": {"sender_id": {"open_id": "ou_taro"}, "sender_type": "user"},
            "message": {
                "message_id": "om_1",
                "chat_id": "oc_ops",
                "message_type": "text",
                "content": json.dumps({"text": text}),
                "create_time": "1700000000000",
            },
        },
    }


def slack_headers(body: bytes, secret: str = SIGNING_SECRET) -> dict[str, str]:
    timestamp = str(int(time.time()))
    signature = SignatureVerifier(secret).generate_signature(timestamp=timestamp, body=body)
    return {"X-Slack-Request-Timestamp": timestamp, "X-Slack-Signature": signature}


@pytest.fixture
def orchestrator(store, slack_client, lark_client):
    return RelayOrchestrator(
        make_config(), store=store, slack_clients={"T1": slack_client}, lark_client=lark_client
    )


class TestLifecycle:
    """Starting and stopping the relays."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, orchestrator, slack_client, lark_client):
        await orchestrator.start()

        assert orchestrator.is_running
        assert slack_client.is_connected
        assert lark_client.is_connected

        await orchestrator.stop()

        assert not orchestrator.is_running
        assert not slack_client.is_connected
        assert not lark_client.is_connected

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, orchestrator):
        await orchestrator.stop()
        await orchestrator.start()
        await orchestrator.stop()
        await orchestrator.stop()
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_failed_start_rolls_back(self, orchestrator, slack_client, lark_client):
        lark_client.connect_error = TransportError("refused", platform="lark")

        with pytest.raises(TransportError):
            await orchestrator.start()

        assert not orchestrator.is_running
        assert not slack_client.is_connected

    @pytest.mark.asyncio
    async def test_requires_slack(self, store, lark_client):
        orchestrator = RelayOrchestrator(
            make_config(), store=store, slack_clients={}, lark_client=lark_client
        )
        with pytest.raises(ConfigurationError, match="Slack"):
            await orchestrator.start()

    @pytest.mark.asyncio
    async def test_requires_lark(self, store, slack_client):
        config = make_config(lark={})
        orchestrator = RelayOrchestrator(config, store=store, slack_clients={"T1": slack_client})
        with pytest.raises(ConfigurationError, match="Lark"):
            await orchestrator.start()

    @pytest.mark.asyncio
    async def test_duplicate_mappings_rejected(self, store, slack_client, lark_client):
        config = make_config(
            channel_mappings=[
                {"slack_channel": "C_GENERAL", "lark_chat": "oc_ops"},
                {"slack_channel": "C_GENERAL", "lark_chat": "oc_other"},
            ]
        )
        orchestrator = RelayOrchestrator(
            config, store=store, slack_clients={"T1": slack_client}, lark_client=lark_client
        )
        with pytest.raises(ConfigurationError):
            await orchestrator.start()

    @pytest.mark.asyncio
    async def test_aclose_stops(self, orchestrator):
        await orchestrator.start()
        await orchestrator.aclose()
        assert not orchestrator.is_running


class TestStatus:
    """Status snapshots."""

    def test_stopped(self, orchestrator):
        status = orchestrator.get_status()

        assert not status.running
        assert status.workspaces == {"slack:T1": False, "lark": False}
        assert status.started_at is None

    @pytest.mark.asyncio
    async def test_running_with_counters(self, orchestrator):
        await orchestrator.start()
        await orchestrator.handle_inbound_webhook(Platform.LARK, lark_message_payload())

        status = orchestrator.get_status()

        assert status.running
        assert status.workspaces == {"slack:T1": True, "lark": True}
        assert status.counters.lark_to_slack == 1
        assert status.started_at is not None

    @pytest.mark.asyncio
    async def test_counters_are_a_snapshot(self, orchestrator):
        status = orchestrator.get_status()
        orchestrator.pipeline.counters.record_error()
        assert status.counters.errors == 0


class TestPolling:
    """Poll relay construction."""

    def test_disabled_by_default(self, orchestrator):
        assert orchestrator.poll_relays == []

    def test_workspace_poll_channels(self, store, slack_client, lark_client):
        config = make_config(
            slack={"workspaces": [{"id": "T1", "bot_token": "xoxb-1", "poll_channels": ["C_X"]}]},
            options={"slack_connect_polling": True, "poll_channels": ["C_FALLBACK"]},
        )
        orchestrator = RelayOrchestrator(
            config, store=store, slack_clients={"T1": slack_client}, lark_client=lark_client
        )
        assert [relay.channels for relay in orchestrator.poll_relays] == [["C_X"]]

    def test_global_poll_channels_for_first_workspace(self, store, slack_client, lark_client):
        config = make_config(options={"slack_connect_polling": True, "poll_channels": ["C_F"]})
        orchestrator = RelayOrchestrator(
            config, store=store, slack_clients={"T1": slack_client}, lark_client=lark_client
        )
        assert [relay.channels for relay in orchestrator.poll_relays] == [["C_F"]]


class TestWasSentByUs:
    """Loop-prevention lookups."""

    @pytest.mark.asyncio
    async def test_any_namespace_without_workspace(self, orchestrator):
        await orchestrator.ledger.record_sent("oc_ops", "1.0", "lark")

        assert await orchestrator.was_sent_by_us("oc_ops", "1.0")
        assert await orchestrator.was_sent_by_us("oc_ops", "1.0", "lark")
        assert not await orchestrator.was_sent_by_us("oc_ops", "1.0", "T1")
        assert not await orchestrator.was_sent_by_us("oc_ops", "2.0")


class TestDirectoryCache:
    """User and channel directories are cached apart from the ledger."""

    @pytest.mark.asyncio
    async def test_ledger_store_holds_no_directories(self, orchestrator, store, slack_client):
        await orchestrator.start()

        await orchestrator.handle_inbound_webhook(Platform.LARK, lark_message_payload("@alice hi"))

        assert slack_client.sent_texts()[-1].endswith("<@U_ALICE> hi")
        assert await store.get(f"identity:{slack_client.credential_fingerprint}:users") is None

    @pytest.mark.asyncio
    async def test_injected_directory_store(self, store, slack_client, lark_client):
        directories = MemoryStore()
        orchestrator = RelayOrchestrator(
            make_config(),
            store=store,
            slack_clients={"T1": slack_client},
            lark_client=lark_client,
            directory_store=directories,
        )
        await orchestrator.start()

        await orchestrator.handle_inbound_webhook(Platform.LARK, lark_message_payload("@alice hi"))

        key = f"identity:{slack_client.credential_fingerprint}:users"
        assert await directories.get(key) is not None


class TestLarkWebhook:
    """Inbound Lark callbacks."""

    @pytest.mark.asyncio
    async def test_challenge(self, orchestrator):
        response = await orchestrator.handle_inbound_webhook(
            Platform.LARK, {"type": "url_verification", "challenge": "abc", "token": "vt"}
        )
        assert response == WebhookResponse(challenge="abc")

    @pytest.mark.asyncio
    async def test_message_forwarded_to_slack(self, orchestrator, slack_client):
        await orchestrator.start()

        response = await orchestrator.handle_inbound_webhook(
            Platform.LARK, lark_message_payload("hello @alice")
        )

        assert response.handled
        channel_id, payload = slack_client.sent[0]
        assert channel_id == "C_GENERAL"
        assert payload.text.endswith("hello <@U_ALICE>")

    @pytest.mark.asyncio
    async def test_not_started_not_handled(self, orchestrator, slack_client):
        response = await orchestrator.handle_inbound_webhook(Platform.LARK, lark_message_payload())

        assert response == WebhookResponse(handled=False)
        assert slack_client.sent == []

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, orchestrator):
        with pytest.raises(WebhookVerificationFailure):
            await orchestrator.handle_inbound_webhook(
                Platform.LARK, lark_message_payload(token="forged")
            )

    @pytest.mark.asyncio
    async def test_encrypted_challenge(self, store, slack_client, lark_client):
        config = make_config(lark={"app_id": "cli_1", "app_secret": "s", "encrypt_key": ENCRYPT_KEY})
        orchestrator = RelayOrchestrator(
            config, store=store, slack_clients={"T1": slack_client}, lark_client=lark_client
        )
        encrypted = encrypt_event(
            {"type": "url_verification", "challenge": "xyz"}, ENCRYPT_KEY, iv=b"0123456789abcdef"
        )

        response = await orchestrator.handle_inbound_webhook(Platform.LARK, {"encrypt": encrypted})

        assert response.challenge == "xyz"

    @pytest.mark.asyncio
    async def test_encrypted_with_signature(self, store, slack_client, lark_client):
        config = make_config(lark={"app_id": "cli_1", "app_secret": "s", "encrypt_key": ENCRYPT_KEY})
        orchestrator = RelayOrchestrator(
            config, store=store, slack_clients={"T1": slack_client}, lark_client=lark_client
        )
        body = json.dumps(
            {"encrypt": encrypt_event({"challenge": "sig"}, ENCRYPT_KEY, iv=b"fedcba9876543210")}
        ).encode()
        signature = hashlib.sha256(b"1700000000" + b"nonce" + ENCRYPT_KEY.encode() + body).hexdigest()
        headers = {
            "X-Lark-Request-Timestamp": "1700000000",
            "X-Lark-Request-Nonce": "nonce",
            "X-Lark-Signature": signature,
        }

        response = await orchestrator.handle_inbound_webhook(
            Platform.LARK, json.loads(body), headers=headers, raw_body=body
        )
        assert response.challenge == "sig"

        headers["X-Lark-Signature"] = "0" * 64
        with pytest.raises(WebhookVerificationFailure):
            await orchestrator.handle_inbound_webhook(
                Platform.LARK, json.loads(body), headers=headers, raw_body=body
            )

    @pytest.mark.asyncio
    async def test_encrypted_without_key_rejected(self, orchestrator):
        with pytest.raises(WebhookVerificationFailure):
            await orchestrator.handle_inbound_webhook(Platform.LARK, {"encrypt": "Zm9v"})


class TestSlackWebhook:
    """Inbound Slack Events API requests."""

    @pytest.fixture
    def signed(self, store, slack_client, lark_client):
        config = make_config(
            slack={
                "socket_mode": False,
                "workspaces": [
                    {"id": "T1", "bot_token": "xoxb-1", "signing_secret": SIGNING_SECRET}
                ],
            }
        )
        return RelayOrchestrator(
            config, store=store, slack_clients={"T1": slack_client}, lark_client=lark_client
        )

    @pytest.mark.asyncio
    async def test_challenge_with_valid_signature(self, signed):
        payload = {"type": "url_verification", "challenge": "c1"}
        body = json.dumps(payload).encode()

        response = await signed.handle_inbound_webhook(
            Platform.SLACK, payload, headers=slack_headers(body), raw_body=body
        )
        assert response.challenge == "c1"

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, signed):
        payload = {"type": "url_verification", "challenge": "c1"}
        body = json.dumps(payload).encode()

        with pytest.raises(WebhookVerificationFailure):
            await signed.handle_inbound_webhook(
                Platform.SLACK, payload, headers=slack_headers(body, "other"), raw_body=body
            )

    @pytest.mark.asyncio
    async def test_missing_body_rejected(self, signed):
        with pytest.raises(WebhookVerificationFailure):
            await signed.handle_inbound_webhook(Platform.SLACK, {"type": "url_verification"})

    @pytest.mark.asyncio
    async def test_event_forwarded_to_lark(self, signed, lark_client):
        await signed.start()
        payload = {
            "type": "event_callback",
            "team_id": "T1",
            "event": {
                "type": "message",
                "channel": "C_GENERAL",
                "user": "U_ALICE",
                "text": "deploy done",
                "ts": "1700000000.000100",
            },
        }
        body = json.dumps(payload).encode()

        response = await signed.handle_inbound_webhook(
            Platform.SLACK, payload, headers=slack_headers(body), raw_body=body
        )

        assert response.handled
        assert lark_client.sent_texts() == ["[#general] alice: deploy done"]

    @pytest.mark.asyncio
    async def test_unknown_team_not_forwarded(self, signed, lark_client, ledger):
        await signed.start()
        payload = {
            "type": "event_callback",
            "team_id": "T_OTHER",
            "event": {
                "type": "message",
                "channel": "C_GENERAL",
                "user": "U_X",
                "text": "hi",
                "ts": "1700000000.000100",
            },
        }
        body = json.dumps(payload).encode()

        response = await signed.handle_inbound_webhook(
            Platform.SLACK, payload, headers=slack_headers(body), raw_body=body
        )

        assert response == WebhookResponse()
        assert lark_client.sent == []
        assert not await ledger.was_seen("C_GENERAL", "1700000000.000100", "T1")

    @pytest.mark.asyncio
    async def test_unsigned_accepted_without_secret(self, orchestrator):
        response = await orchestrator.handle_inbound_webhook(
            Platform.SLACK, {"type": "url_verification", "challenge": "open"}
        )
        assert response.challenge == "open"
