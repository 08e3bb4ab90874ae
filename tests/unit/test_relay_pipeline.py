"""Unit tests for the forwarding pipeline."""

from datetime import datetime

import pytest

from chatrelay.relay.models import (
    LARK_WEBHOOK_CHANNEL,
    ChannelMapping,
    Destination,
    MessageFilter,
    MuteTimeRange,
    NormalizedMessage,
    Platform,
    RelayCounters,
    RelayOptions,
)
from chatrelay.relay.pipeline import ForwardOutcome, RelayPipeline
from chatrelay.relay.transformer import unresolved_channel_banner

TS = "1700000000.000100"


def slack_message(**overrides) -> NormalizedMessage:
    fields = {
        "source_platform": Platform.SLACK,
        "source_channel_id": "C_GENERAL",
        "source_channel_name": "general",
        "sender_id": "U_ALICE",
        "sender_name": "alice",
        "text": "hi",
        "source_timestamp": TS,
        "workspace_id": "T1",
    }
    fields.update(overrides)
    return NormalizedMessage(**fields)


def lark_message(**overrides) -> NormalizedMessage:
    fields = {
        "source_platform": Platform.LARK,
        "source_channel_id": "oc_ops",
        "source_channel_name": "ops",
        "sender_id": "ou_taro",
        "sender_name": "Taro",
        "text": "hello",
        "source_timestamp": TS,
        "workspace_id": "tenant-1",
    }
    fields.update(overrides)
    return NormalizedMessage(**fields)


@pytest.fixture
def options():
    return RelayOptions(include_timestamp=False)


@pytest.fixture
def pipeline(ledger, resolver, slack_client, lark_client, options):
    return RelayPipeline(
        ledger=ledger,
        resolver=resolver,
        slack_clients={"T1": slack_client},
        lark_client=lark_client,
        mappings=[ChannelMapping(source_channel="C_GENERAL", dest_channel="oc_ops")],
        filters=MessageFilter(),
        options=options,
    )


class TestEndToEnd:
    """A mapped message travels the whole pipeline."""

    @pytest.mark.asyncio
    async def test_slack_to_lark(self, pipeline, lark_client, ledger):
        outcome = await pipeline.process(slack_message(text="ping @taro"))

        assert outcome == ForwardOutcome(1)
        channel_id, payload = lark_client.sent[0]
        assert channel_id == "oc_ops"
        assert payload.title == "📨 Slack - #general"
        assert {"tag": "at", "user_id": "ou_taro", "user_name": "taro"} in payload.post[1]
        assert payload.text == "[#general] alice: ping @taro"

        sent_ts = "1800000001.000100"
        assert await ledger.was_sent_by_us("oc_ops", sent_ts, "lark")
        assert pipeline.counters.slack_to_lark == 1

    @pytest.mark.asyncio
    async def test_lark_to_slack(self, pipeline, slack_client, ledger):
        outcome = await pipeline.process(lark_message(text="thanks @alice"))

        assert outcome.forwarded == 1
        channel_id, payload = slack_client.sent[0]
        assert channel_id == "C_GENERAL"
        assert payload.text == "[#ops] *Taro* (from Lark)\nthanks <@U_ALICE>"
        assert payload.username == "Taro (Lark)"
        assert await ledger.was_sent_by_us("C_GENERAL", "1800000001.000100", "T1")
        assert pipeline.counters.lark_to_slack == 1

    @pytest.mark.asyncio
    async def test_unknown_mention_kept(self, pipeline, slack_client):
        await pipeline.process(lark_message(text="cc @nobody"))
        assert slack_client.sent_texts()[0].endswith("cc @nobody")


class TestChannelOverride:
    """Leading #channel in Lark messages picks the Slack channel."""

    @pytest.mark.asyncio
    async def test_resolved(self, pipeline, slack_client):
        await pipeline.process(lark_message(text="#random ship it"))

        channel_id, payload = slack_client.sent[0]
        assert channel_id == "C_RANDOM"
        assert payload.text.endswith("\nship it")

    @pytest.mark.asyncio
    async def test_unresolved_goes_to_mapped_channel(self, pipeline, slack_client):
        await pipeline.process(lark_message(text="#nowhere ship it"))

        channel_id, payload = slack_client.sent[0]
        assert channel_id == "C_GENERAL"
        assert unresolved_channel_banner("nowhere") + "#nowhere ship it" in payload.text

    @pytest.mark.asyncio
    async def test_not_applied_to_slack_messages(self, pipeline, lark_client):
        await pipeline.process(slack_message(text="#random not a command"))

        channel_id, payload = lark_client.sent[0]
        assert channel_id == "oc_ops"
        assert "#random not a command" in payload.text


class TestDropping:
    """Messages that are not forwarded."""

    @pytest.mark.asyncio
    async def test_filtered(self, ledger, resolver, slack_client, lark_client, options):
        pipeline = RelayPipeline(
            ledger,
            resolver,
            {"T1": slack_client},
            lark_client,
            mappings=[ChannelMapping(source_channel="C_GENERAL", dest_channel="oc_ops")],
            filters=MessageFilter(exclude_keywords=["secret"]),
            options=options,
        )
        outcome = await pipeline.process(slack_message(text="the Secret plan"))

        assert outcome == ForwardOutcome(0, "keyword excluded")
        assert lark_client.sent == []

    @pytest.mark.asyncio
    async def test_muted_by_clock(self, ledger, resolver, slack_client, lark_client, options):
        pipeline = RelayPipeline(
            ledger,
            resolver,
            {"T1": slack_client},
            lark_client,
            mappings=[ChannelMapping(source_channel="C_GENERAL", dest_channel="oc_ops")],
            filters=MessageFilter(mute_time_range=MuteTimeRange(enabled=True)),
            options=options,
            clock=lambda: datetime(2024, 5, 1, 2, 0),
        )
        outcome = await pipeline.process(slack_message())
        assert outcome.reason == "muted"

    @pytest.mark.asyncio
    async def test_unmapped_without_default(self, pipeline, lark_client):
        outcome = await pipeline.process(slack_message(source_channel_id="C_OTHER"))
        assert outcome == ForwardOutcome(0, "no mapping")
        assert lark_client.sent == []

    @pytest.mark.asyncio
    async def test_transient_error_counted_not_raised(
        self, pipeline, lark_client, ledger, transient_error
    ):
        lark_client.send_error = transient_error

        outcome = await pipeline.process(slack_message())

        assert outcome.forwarded == 0
        assert pipeline.counters.errors == 1
        assert pipeline.counters.slack_to_lark == 0

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, pipeline, lark_client):
        lark_client.send_error = RuntimeError("boom")
        with pytest.raises(RuntimeError):
            await pipeline.process(slack_message())


class TestDefaults:
    """Fallback destinations for unmapped channels."""

    @pytest.mark.asyncio
    async def test_default_slack_channel(self, ledger, resolver, slack_client, lark_client):
        pipeline = RelayPipeline(
            ledger,
            resolver,
            {"T1": slack_client},
            lark_client,
            options=RelayOptions(include_timestamp=False, default_slack_channel="C_RANDOM"),
        )
        await pipeline.process(lark_message(source_channel_id="oc_unmapped"))
        assert slack_client.sent[0][0] == "C_RANDOM"

    @pytest.mark.asyncio
    async def test_default_lark_chat(self, ledger, resolver, slack_client, lark_client):
        pipeline = RelayPipeline(
            ledger,
            resolver,
            {"T1": slack_client},
            lark_client,
            options=RelayOptions(default_lark_chat="oc_default"),
            lark_webhook_fallback=True,
        )
        await pipeline.process(slack_message(source_channel_id="C_OTHER"))
        assert lark_client.sent[0][0] == "oc_default"

    @pytest.mark.asyncio
    async def test_webhook_fallback(self, ledger, resolver, slack_client, lark_client):
        pipeline = RelayPipeline(
            ledger, resolver, {"T1": slack_client}, lark_client, lark_webhook_fallback=True
        )
        await pipeline.process(slack_message(source_channel_id="C_OTHER"))
        assert lark_client.sent[0][0] == LARK_WEBHOOK_CHANNEL


class TestWorkspaceRouting:
    """Lark to Slack messages go to the mapping's workspace."""

    @pytest.mark.asyncio
    async def test_mapping_workspace_selects_client(
        self, ledger, resolver, slack_client, lark_client, client_factory
    ):
        second = client_factory(Platform.SLACK, workspace_id="T2")
        counters = RelayCounters()
        pipeline = RelayPipeline(
            ledger,
            resolver,
            {"T1": slack_client, "T2": second},
            lark_client,
            mappings=[
                ChannelMapping(source_channel="C_TWO", dest_channel="oc_ops", workspace_id="T2")
            ],
            options=RelayOptions(include_timestamp=False),
            counters=counters,
        )
        await pipeline.process(lark_message())

        assert slack_client.sent == []
        assert second.sent[0][0] == "C_TWO"
        assert await ledger.was_sent_by_us("C_TWO", "1800000001.000100", "T2")
        assert counters.lark_to_slack == 1

    def test_client_for_defaults_to_first_workspace(self, pipeline, slack_client):
        destination = Destination(platform=Platform.SLACK, channel_id="C1")
        assert pipeline.client_for(destination) is slack_client
