"""Key-value stores and the relay ledger.

The ledger records which messages the relay produced itself (loop
prevention), which inbound messages were already handled, and how far each
polled channel and thread has been read.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from chatrelay.storage import get_ledger_path

logger = logging.getLogger(__name__)

SENT_TTL_SECONDS = 300
SEEN_TTL_SECONDS = 300
CURSOR_TTL_SECONDS = 30 * 24 * 60 * 60

DEFAULT_NAMESPACE = "default"


def ts_value(ts: str) -> Decimal:
    """Numeric value of a fractional-seconds timestamp string.

    Raises:
        ValueError: If the timestamp is not numeric
    """
    try:
        return Decimal(ts)
    except InvalidOperation as e:
        raise ValueError(f"Invalid timestamp: {ts!r}") from e


class KeyValueStore(ABC):
    """Async key-value store with optional per-key expiry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value for a key, or None if missing or expired."""
        ...

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store a value, optionally expiring after ttl_seconds."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key if present."""
        ...


class MemoryStore(KeyValueStore):
    """In-process store with lazy expiry.

    The clock is injectable so expiry can be tested without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        """Initialize the store.

        Args:
            clock: Returns the current time in seconds
        """
        self._clock = clock
        self._entries: dict[str, tuple[str, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Drop every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [
            key
            for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class JsonFileStore(MemoryStore):
    """Memory store persisted to a JSON file.

    Keeps poll cursors across restarts. The whole file is rewritten on every
    change.
    """

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the store.

        Args:
            storage_path: Path to storage file (defaults to ~/.chatrelay/ledger.json)
            clock: Returns the current time in seconds
        """
        super().__init__(clock=clock)
        self._storage_path = storage_path or get_ledger_path()
        self._load()

    @property
    def storage_path(self) -> Path:
        """Location of the backing file."""
        return self._storage_path

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await super().put(key, value, ttl_seconds)
        self._save()

    async def delete(self, key: str) -> None:
        if key in self._entries:
            await super().delete(key)
            self._save()

    def _load(self) -> None:
        """Load entries from the storage file, skipping expired ones."""
        if not self._storage_path.exists():
            logger.debug(f"No existing ledger file: {self._storage_path}")
            return

        try:
            data = json.loads(self._storage_path.read_text(encoding="utf-8"))
            now = self._clock()
            for key, entry in data.items():
                expires_at = entry.get("expires_at")
                if expires_at is not None and now >= expires_at:
                    continue
                self._entries[key] = (entry["value"], expires_at)

            logger.info(f"Loaded {len(self._entries)} ledger entries")

        except (OSError, ValueError, KeyError, AttributeError) as e:
            logger.error(f"Failed to load ledger from {self._storage_path}: {e}", exc_info=True)

    def _save(self) -> None:
        """Write entries to the storage file."""
        self.purge_expired()
        try:
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            data = {
                key: {"value": value, "expires_at": expires_at}
                for key, (value, expires_at) in self._entries.items()
            }
            self._storage_path.write_text(json.dumps(data, indent=2), encoding="utf-8")

        except OSError as e:
            logger.error(f"Failed to save ledger to {self._storage_path}: {e}", exc_info=True)


class Ledger:
    """Relay bookkeeping on top of a key-value store.

    Keys are partitioned by workspace so several Slack workspaces (and the
    Lark tenant) can share one store:

    - ``sent:{workspace}:{channel}:{ts}`` marks a message the relay posted
    - ``seen:{workspace}:{channel}:{ts}`` marks an inbound message already handled
    - ``cursor:{workspace}:{channel}[:{thread}]`` is the newest polled timestamp
    """

    def __init__(
        self,
        store: KeyValueStore,
        sent_ttl: int = SENT_TTL_SECONDS,
        seen_ttl: int = SEEN_TTL_SECONDS,
        cursor_ttl: int = CURSOR_TTL_SECONDS,
    ):
        self._store = store
        self._sent_ttl = sent_ttl
        self._seen_ttl = seen_ttl
        self._cursor_ttl = cursor_ttl

    @property
    def store(self) -> KeyValueStore:
        """The underlying store."""
        return self._store

    async def record_sent(
        self, channel_id: str, ts: str, workspace_id: Optional[str] = None
    ) -> None:
        """Remember that the relay posted a message."""
        await self._store.put(self._key("sent", workspace_id, channel_id, ts), "1", self._sent_ttl)

    async def was_sent_by_us(
        self, channel_id: str, ts: str, workspace_id: Optional[str] = None
    ) -> bool:
        """Check whether a message was posted by the relay within the TTL."""
        value = await self._store.get(self._key("sent", workspace_id, channel_id, ts))
        return value is not None

    async def mark_seen(
        self, channel_id: str, ts: str, workspace_id: Optional[str] = None
    ) -> bool:
        """Mark an inbound message as handled.

        Returns:
            True the first time a message is marked, False for repeats
        """
        key = self._key("seen", workspace_id, channel_id, ts)
        if await self._store.get(key) is not None:
            return False
        await self._store.put(key, "1", self._seen_ttl)
        return True

    async def was_seen(
        self, channel_id: str, ts: str, workspace_id: Optional[str] = None
    ) -> bool:
        """Check whether an inbound message was already handled."""
        value = await self._store.get(self._key("seen", workspace_id, channel_id, ts))
        return value is not None

    async def get_cursor(
        self,
        channel_id: str,
        thread_ts: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> Optional[str]:
        """Newest timestamp read from a channel, or from a thread when thread_ts is given."""
        return await self._store.get(self._cursor_key(channel_id, thread_ts, workspace_id))

    async def advance_cursor(
        self,
        channel_id: str,
        ts: str,
        thread_ts: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> str:
        """Move a cursor forward to ts.

        A cursor never moves backwards. An older ts leaves the stored value
        untouched.

        Returns:
            The cursor value after the call
        """
        key = self._cursor_key(channel_id, thread_ts, workspace_id)
        current = await self._store.get(key)
        if current is not None and ts_value(ts) <= ts_value(current):
            return current

        await self._store.put(key, ts, self._cursor_ttl)
        return ts

    def _cursor_key(
        self, channel_id: str, thread_ts: Optional[str], workspace_id: Optional[str]
    ) -> str:
        if thread_ts:
            return self._key("cursor", workspace_id, channel_id, thread_ts)
        return self._key("cursor", workspace_id, channel_id)

    @staticmethod
    def _key(kind: str, workspace_id: Optional[str], *parts: str) -> str:
        return ":".join([kind, workspace_id or DEFAULT_NAMESPACE, *parts])
