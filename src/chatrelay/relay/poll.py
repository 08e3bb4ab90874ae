"""Poll relay for channels that cannot deliver events (Slack Connect).

Each tick reads every watched channel from its cursor, forwards new
messages in timestamp order, then scans recent threads for new replies.
"""

import asyncio
import logging
from collections.abc import Iterable
from typing import Any, Optional

from chatrelay.relay.exceptions import TransientAPIError
from chatrelay.relay.ledger import Ledger, ts_value
from chatrelay.relay.models import RelayCounters, RelayOptions
from chatrelay.relay.pipeline import RelayPipeline
from chatrelay.relay.protocol import PlatformClient
from chatrelay.relay.transformer import normalize_slack_message

logger = logging.getLogger(__name__)

HISTORY_PAGE_SIZE = 100


def _sorted_by_ts(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted((m for m in messages if m.get("ts")), key=lambda m: ts_value(m["ts"]))


def _is_bot(raw: dict[str, Any]) -> bool:
    return bool(raw.get("bot_id")) or raw.get("subtype") == "bot_message"


class PollRelay:
    """Polls a fixed set of channels on one client.

    Cursors live in the ledger, so a restart resumes where the last process
    stopped instead of replaying or skipping history.
    """

    def __init__(
        self,
        client: PlatformClient,
        pipeline: RelayPipeline,
        ledger: Ledger,
        options: Optional[RelayOptions] = None,
        channels: Iterable[str] = (),
        counters: Optional[RelayCounters] = None,
    ):
        """Initialize the poll relay.

        Args:
            client: Client used to read history (a user token client for Slack Connect)
            pipeline: Forwarding pipeline
            ledger: Cursor and loop-prevention store
            options: Relay options (interval, thread handling)
            channels: Channel ids to watch
            counters: Shared forwarding counters
        """
        self._client = client
        self._pipeline = pipeline
        self._ledger = ledger
        self._options = options or RelayOptions()
        self._counters = counters if counters is not None else pipeline.counters
        self._channels: list[str] = []
        for channel_id in channels:
            self.add_channel(channel_id)

        self._primed: set[str] = set()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def channels(self) -> list[str]:
        """Watched channel ids."""
        return list(self._channels)

    @property
    def is_running(self) -> bool:
        """Check if the polling loop is running."""
        return self._task is not None and not self._task.done()

    def add_channel(self, channel_id: str) -> None:
        """Watch another channel from the next tick on."""
        if channel_id not in self._channels:
            self._channels.append(channel_id)
            logger.info(f"Polling channel {channel_id}")

    async def start(self, interval_ms: Optional[int] = None) -> None:
        """Start ticking every interval_ms milliseconds."""
        if self.is_running:
            logger.warning("Poll relay already running")
            return

        interval = (interval_ms or self._options.polling_interval_ms) / 1000
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(interval), name="poll-relay")
        logger.info(f"Poll relay started for {len(self._channels)} channels every {interval:.1f}s")

    async def stop(self) -> None:
        """Stop scheduling ticks and wait for the in-flight tick to finish."""
        if self._task is None:
            return

        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Poll relay stopped")

    async def _run(self, interval: float) -> None:
        while not self._stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def tick(self) -> None:
        """Poll every watched channel once, sequentially."""
        for channel_id in list(self._channels):
            try:
                await self._poll_channel(channel_id)
                self._primed.add(channel_id)
            except TransientAPIError as e:
                logger.warning(f"Polling {channel_id} failed, retrying next tick: {e}")
            except Exception as e:
                logger.error(
                    f"Error polling {channel_id} (workspace {self._client.workspace_id}): {e}",
                    exc_info=True,
                )
                self._counters.record_error()

    async def _poll_channel(self, channel_id: str) -> None:
        workspace_id = self._client.workspace_id
        cursor = await self._ledger.get_cursor(channel_id, workspace_id=workspace_id)

        if cursor is None:
            latest = await self._client.fetch_history(channel_id, limit=1)
            initial = latest[0]["ts"] if latest and latest[0].get("ts") else "0"
            await self._ledger.advance_cursor(channel_id, initial, workspace_id=workspace_id)
            logger.info(f"Initialized cursor for {channel_id} at {initial}")
        else:
            messages = await self._fetch_since(channel_id, cursor)
            channel_name = await self._client.get_channel_name(channel_id)
            for raw in messages:
                await self._hand_off(raw, channel_id, channel_name)
                await self._ledger.advance_cursor(channel_id, raw["ts"], workspace_id=workspace_id)

        await self._scan_threads(channel_id)

    async def _fetch_since(self, channel_id: str, cursor: str) -> list[dict[str, Any]]:
        """Every message newer than cursor, oldest first.

        History comes back newest first in pages, so a full page means the
        gap down to the cursor has to be read with ``latest`` set to the
        oldest message seen so far.
        """
        collected: dict[str, dict[str, Any]] = {}
        latest: Optional[str] = None
        while True:
            page = await self._client.fetch_history(
                channel_id, oldest=cursor, limit=HISTORY_PAGE_SIZE, latest=latest
            )
            newer = [m for m in page if m.get("ts") and ts_value(m["ts"]) > ts_value(cursor)]
            for raw in newer:
                collected.setdefault(raw["ts"], raw)

            if len(page) < HISTORY_PAGE_SIZE or not newer:
                break
            oldest_in_page = min((m["ts"] for m in newer), key=ts_value)
            if latest is not None and ts_value(oldest_in_page) >= ts_value(latest):
                break
            latest = oldest_in_page
            logger.debug(f"Paging {channel_id} history below {latest}")

        return _sorted_by_ts(list(collected.values()))

    async def _scan_threads(self, channel_id: str) -> None:
        workspace_id = self._client.workspace_id
        priming = channel_id not in self._primed

        recent = await self._client.fetch_history(
            channel_id, limit=self._options.thread_scan_depth
        )
        parents = [m for m in recent if m.get("ts") and m.get("reply_count", 0) > 0]
        if not parents:
            return

        channel_name = await self._client.get_channel_name(channel_id)
        for parent in parents:
            thread_ts = parent["ts"]
            latest_reply = parent.get("latest_reply")
            cursor = await self._ledger.get_cursor(channel_id, thread_ts, workspace_id)

            if cursor is None:
                if priming:
                    await self._ledger.advance_cursor(
                        channel_id, latest_reply or thread_ts, thread_ts, workspace_id
                    )
                    continue
                cursor = thread_ts

            if latest_reply and ts_value(latest_reply) <= ts_value(cursor):
                continue

            replies = await self._client.fetch_thread_replies(channel_id, thread_ts, oldest=cursor)
            for raw in _sorted_by_ts(replies):
                ts = raw["ts"]
                if ts == thread_ts or ts_value(ts) <= ts_value(cursor):
                    continue
                await self._hand_off(raw, channel_id, channel_name)
                cursor = await self._ledger.advance_cursor(channel_id, ts, thread_ts, workspace_id)

    async def _hand_off(
        self, raw: dict[str, Any], channel_id: str, channel_name: Optional[str]
    ) -> None:
        """Normalize one history entry and pass it to the pipeline.

        Bots, relayed messages and messages already handled are skipped.
        """
        workspace_id = self._client.workspace_id
        ts = raw["ts"]

        if _is_bot(raw):
            return
        if await self._ledger.was_sent_by_us(channel_id, ts, workspace_id):
            logger.debug(f"Skipping relayed message {channel_id}@{ts}")
            return
        if await self._ledger.was_seen(channel_id, ts, workspace_id):
            logger.debug(f"Skipping already handled message {channel_id}@{ts}")
            return

        user_id = raw.get("user")
        user_name = await self._client.get_user_name(user_id) if user_id else None
        message = normalize_slack_message(
            raw,
            channel_id,
            channel_name=channel_name,
            user_name=user_name,
            workspace_id=workspace_id,
            workspace_name=self._client.workspace_name,
            is_shared_channel=await self._client.is_shared_channel(channel_id),
        )
        if message is None:
            return

        if message.is_thread_reply and not self._options.include_thread_replies:
            message = message.model_copy(update={"is_thread_reply": False})

        await self._pipeline.process(message)
        await self._ledger.mark_seen(channel_id, ts, workspace_id)
