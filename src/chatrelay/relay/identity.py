"""Identity resolution: mentions, channel references and directory caching."""

import hashlib
import json
import logging
import re
from typing import Any, Optional

from chatrelay.relay.exceptions import TransientAPIError
from chatrelay.relay.ledger import KeyValueStore
from chatrelay.relay.protocol import DirectoryKind, PlatformClient

logger = logging.getLogger(__name__)

DIRECTORY_TTL_SECONDS = 300

# Word characters plus hiragana, katakana and CJK ideographs
MENTION_PATTERN = re.compile(r"@([\w\u3040-\u309F\u30A0-\u30FF\u4E00-\u9FFF]+)")
# "#general hello" or the command form "/slack #general hello"
CHANNEL_REFERENCE_PATTERN = re.compile(r"^(?:/slack\s+)?#(\S+)\s+(.+)$", re.DOTALL)
LARK_INTERNAL_MENTION_PATTERN = re.compile(r"@_\w+")
_WHITESPACE = re.compile(r"\s+")


def fingerprint(credential: str) -> str:
    """Short, non-reversible identifier for a credential."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:16]


def parse_channel_reference(text: str) -> tuple[Optional[str], str]:
    """Split a leading ``#channel`` reference from a message.

    Returns:
        (channel name, remaining text), or (None, text) without a reference
    """
    match = CHANNEL_REFERENCE_PATTERN.match(text.strip())
    if not match:
        return None, text
    return match.group(1), match.group(2).strip()


def strip_internal_mentions(text: str) -> str:
    """Remove Lark's internal ``@_user_N`` placeholders."""
    return _WHITESPACE.sub(" ", LARK_INTERNAL_MENTION_PATTERN.sub("", text)).strip()


def is_bot_mention(mention: dict[str, Any]) -> bool:
    """Check whether a Lark mention targets a bot or app rather than a user."""
    mention_id = mention.get("id") or {}
    if isinstance(mention_id, dict):
        return not (mention_id.get("user_id") or mention_id.get("open_id"))
    return not mention_id


def replace_internal_mentions(text: str, mentions: list[dict[str, Any]]) -> str:
    """Replace Lark's internal mention keys with readable ``@name`` text.

    Mentions without a user id (bots and apps) are removed entirely, as is
    any placeholder with no matching mention entry.
    """
    # Longest keys first so @_user_1 never clobbers @_user_10
    for mention in sorted(mentions, key=lambda m: len(m.get("key") or ""), reverse=True):
        key = mention.get("key")
        if not key:
            continue

        name = mention.get("name")
        replacement = f"@{name}" if name and not is_bot_mention(mention) else ""
        text = text.replace(key, replacement)

    return strip_internal_mentions(text)


class IdentityResolver:
    """Resolves names to ids on a destination platform.

    Directories (users, channels) are cached in the key-value store per
    credential fingerprint, so the secret itself never becomes part of a key.
    """

    def __init__(self, store: KeyValueStore, ttl_seconds: int = DIRECTORY_TTL_SECONDS):
        """Initialize the resolver.

        Args:
            store: Store used as the directory cache
            ttl_seconds: How long a fetched directory stays valid
        """
        self._store = store
        self._ttl_seconds = ttl_seconds

    async def get_directory(self, client: PlatformClient, kind: DirectoryKind) -> dict[str, str]:
        """Lowercase name to id map for a client's users or channels.

        Fetch failures are logged and produce an empty map, which is not cached.
        """
        key = self._cache_key(client, kind)
        cached = await self._store.get(key)
        if cached is not None:
            return json.loads(cached)

        try:
            directory = await client.fetch_directory(kind)
        except TransientAPIError as e:
            logger.warning(f"Failed to fetch {client.platform.value} {kind} directory: {e}")
            return {}

        directory = {name.lower(): entry_id for name, entry_id in directory.items()}
        await self._store.put(key, json.dumps(directory), self._ttl_seconds)
        logger.debug(f"Cached {len(directory)} {client.platform.value} {kind}")
        return directory

    async def invalidate(self, client: PlatformClient, kind: Optional[DirectoryKind] = None) -> None:
        """Drop cached directories for a client."""
        kinds: list[DirectoryKind] = [kind] if kind else ["users", "channels"]
        for k in kinds:
            await self._store.delete(self._cache_key(client, k))

    async def resolve_mentions(self, text: str, client: PlatformClient) -> str:
        """Rewrite ``@name`` tokens into the client's native mention syntax.

        Names not found in the directory are left verbatim.
        """
        if not MENTION_PATTERN.search(text):
            return text

        users = await self.get_directory(client, "users")
        if not users:
            return text

        def _replace(match: re.Match[str]) -> str:
            name = match.group(1)
            user_id = users.get(name.lower())
            if user_id is None:
                return match.group(0)
            return client.format_mention(user_id, name)

        return MENTION_PATTERN.sub(_replace, text)

    async def resolve_channel_reference(self, name: str, client: PlatformClient) -> Optional[str]:
        """Channel id for a channel name, or None if unknown."""
        channels = await self.get_directory(client, "channels")
        return channels.get(name.lstrip("#").lower())

    @staticmethod
    def _cache_key(client: PlatformClient, kind: DirectoryKind) -> str:
        return f"identity:{client.credential_fingerprint}:{kind}"
