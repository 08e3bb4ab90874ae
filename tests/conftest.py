"""
Pytest configuration and fixtures for chatrelay tests.
"""

import tempfile
from collections.abc import Generator
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import pytest
from typer.testing import CliRunner

from chatrelay.relay.exceptions import TransientAPIError
from chatrelay.relay.identity import IdentityResolver
from chatrelay.relay.ledger import Ledger, MemoryStore
from chatrelay.relay.models import Platform, RenderedPayload, SendResult
from chatrelay.relay.protocol import DirectoryKind, EnvelopeHandler, PlatformClient


class FakeClock:
    """Controllable time source, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePlatformClient(PlatformClient):
    """In-memory platform client.

    Records sent payloads and serves directories and channel history from
    plain dicts.
    """

    def __init__(
        self,
        platform: Platform,
        workspace_id: Optional[str] = None,
        users: Optional[dict[str, str]] = None,
        channels: Optional[dict[str, str]] = None,
        workspace_name: Optional[str] = None,
    ):
        super().__init__()
        self._platform = platform
        self._workspace_id = workspace_id
        self._workspace_name = workspace_name
        self.users = users or {}
        self.channels = channels or {}
        self.user_names: dict[str, str] = {}
        self.channel_names: dict[str, str] = {}
        self.shared_channels: set[str] = set()
        self.history: dict[str, list[dict[str, Any]]] = {}
        self.replies: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.history_calls: list[tuple[str, Optional[str], Optional[str]]] = []

        self.sent: list[tuple[str, RenderedPayload]] = []
        self.directory_calls: dict[str, int] = {"users": 0, "channels": 0}
        self.forgotten: list[str] = []
        self.send_error: Optional[Exception] = None
        self.directory_error: Optional[Exception] = None
        self.connect_error: Optional[Exception] = None
        self._next_ts = 1_800_000_000

    @property
    def platform(self) -> Platform:
        return self._platform

    @property
    def credential_fingerprint(self) -> str:
        return f"fake-{self._platform.value}-{self._workspace_id}"

    @property
    def workspace_id(self) -> Optional[str]:
        return self._workspace_id

    @property
    def workspace_name(self) -> Optional[str]:
        return self._workspace_name

    async def connect(self, handler: EnvelopeHandler) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self._handler = handler
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False
        self._handler = None

    async def send_message(self, channel_id: str, payload: RenderedPayload) -> SendResult:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((channel_id, payload))
        self._next_ts += 1
        ts = f"{self._next_ts}.000100"
        return SendResult(channel_id=channel_id, message_id=ts, timestamp=ts)

    async def fetch_directory(self, kind: DirectoryKind) -> dict[str, str]:
        self.directory_calls[kind] += 1
        if self.directory_error is not None:
            raise self.directory_error
        return dict(self.users if kind == "users" else self.channels)

    def format_mention(self, user_id: str, name: str) -> str:
        if self._platform is Platform.SLACK:
            return f"<@{user_id}>"
        return f'<at user_id="{user_id}">{name}</at>'

    async def get_channel_name(self, channel_id: str) -> Optional[str]:
        return self.channel_names.get(channel_id)

    async def get_user_name(self, user_id: str) -> Optional[str]:
        return self.user_names.get(user_id)

    async def is_shared_channel(self, channel_id: str) -> bool:
        return channel_id in self.shared_channels

    def forget_channel(self, channel_id: str) -> None:
        self.forgotten.append(channel_id)

    async def fetch_history(
        self,
        channel_id: str,
        oldest: Optional[str] = None,
        limit: int = 100,
        latest: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        messages = [
            m
            for m in self.history.get(channel_id, [])
            if (oldest is None or Decimal(m["ts"]) >= Decimal(oldest))
            and (latest is None or Decimal(m["ts"]) < Decimal(latest))
        ]
        self.history_calls.append((channel_id, oldest, latest))
        messages.sort(key=lambda m: Decimal(m["ts"]), reverse=True)
        return messages[:limit]

    async def fetch_thread_replies(
        self,
        channel_id: str,
        thread_ts: str,
        oldest: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        return [
            m
            for m in self.replies.get((channel_id, thread_ts), [])
            if oldest is None or Decimal(m["ts"]) >= Decimal(oldest)
        ]

    def sent_texts(self) -> list[str]:
        return [payload.text for _, payload in self.sent]


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mock_chatrelay_home(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point CHATRELAY_HOME at a temporary ~/.chatrelay directory."""
    home = temp_dir / ".chatrelay"
    home.mkdir()
    monkeypatch.setenv("CHATRELAY_HOME", str(home))
    monkeypatch.delenv("CHATRELAY_CONFIG", raising=False)
    return home


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a controllable clock."""
    return FakeClock()


@pytest.fixture
def store(fake_clock: FakeClock) -> MemoryStore:
    """Provide an in-memory store on the fake clock."""
    return MemoryStore(clock=fake_clock)


@pytest.fixture
def ledger(store: MemoryStore) -> Ledger:
    """Provide a ledger over the in-memory store."""
    return Ledger(store)


@pytest.fixture
def resolver(store: MemoryStore) -> IdentityResolver:
    """Provide an identity resolver over the in-memory store."""
    return IdentityResolver(store)


@pytest.fixture
def slack_client() -> FakePlatformClient:
    """Provide a fake Slack client for workspace T1."""
    client = FakePlatformClient(
        Platform.SLACK,
        workspace_id="T1",
        users={"alice": "U_ALICE", "bob": "U_BOB"},
        channels={"general": "C_GENERAL", "random": "C_RANDOM"},
    )
    client.user_names = {"U_ALICE": "alice", "U_BOB": "bob"}
    client.channel_names = {"C_GENERAL": "general", "C_RANDOM": "random"}
    return client


@pytest.fixture
def lark_client() -> FakePlatformClient:
    """Provide a fake Lark client."""
    client = FakePlatformClient(
        Platform.LARK,
        workspace_id="lark",
        users={"taro": "ou_taro", "alice": "ou_alice"},
        channels={"ops": "oc_ops"},
    )
    client.user_names = {"ou_taro": "Taro"}
    client.channel_names = {"oc_ops": "ops"}
    return client


@pytest.fixture
def transient_error() -> TransientAPIError:
    """Provide a rate-limit style platform failure."""
    return TransientAPIError("ratelimited", platform="slack", retry_after=30)


@pytest.fixture
def client_factory() -> type[FakePlatformClient]:
    """Provide the fake client class for tests that need extra clients."""
    return FakePlatformClient
