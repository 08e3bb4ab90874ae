"""Message transformer.

Turns platform payloads into normalized messages and inbound events, and
renders normalized messages for the destination platform.
"""

import json
import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, NamedTuple, Optional
from zoneinfo import ZoneInfo

from chatrelay.relay.events import (
    ChannelIdChanged,
    ChannelRenamed,
    IgnoredEvent,
    InboundEvent,
    MentionEvent,
    MessageEvent,
    UrlVerification,
)
from chatrelay.relay.identity import (
    IdentityResolver,
    is_bot_mention,
    parse_channel_reference,
    replace_internal_mentions,
    strip_internal_mentions,
)
from chatrelay.relay.models import (
    Destination,
    NormalizedMessage,
    Platform,
    RelayOptions,
    RenderedPayload,
)
from chatrelay.relay.protocol import PlatformClient

logger = logging.getLogger(__name__)

THREAD_REPLY_PREFIX = "[thread reply] "
TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M:%S"
POST_LOCALES = ("ja_jp", "zh_cn", "en_us")
LARK_MESSAGE_EVENT = "im.message.receive_v1"
SLACK_ARCHIVE_URL = "https://slack.com/archives"
SHARED_CHANNEL_MARKER = "(shared channel)"

# Slack subtypes that carry no new user content
SKIPPED_SLACK_SUBTYPES = frozenset(
    {
        "message_changed",
        "message_deleted",
        "message_replied",
        "channel_join",
        "channel_leave",
        "channel_topic",
        "channel_purpose",
        "channel_name",
        "channel_archive",
        "channel_unarchive",
        "group_join",
        "group_leave",
        "pinned_item",
        "unpinned_item",
    }
)

# Slack subtypes whose text is forwarded as-is
TEXT_SLACK_SUBTYPES = frozenset({"thread_broadcast", "file_share", "me_message", "bot_message"})

_AT_MARKUP = re.compile(r'<at user_id="([^"]+)">([^<]*)</at>')


def placeholder(message_type: str) -> str:
    """Text used for message types that cannot be rendered."""
    return f"[{message_type} message]"


def lark_create_time_to_ts(create_time: Any) -> str:
    """Convert a Lark millisecond timestamp to fractional seconds."""
    try:
        millis = Decimal(str(create_time))
    except InvalidOperation:
        return f"{datetime.now().timestamp():.3f}"
    return str((millis / 1000).quantize(Decimal("0.001")))


def format_timestamp(ts: str, timezone: str = "Asia/Tokyo") -> str:
    """Format a fractional-seconds timestamp in a timezone."""
    zone = ZoneInfo(timezone)
    return datetime.fromtimestamp(float(ts), tz=zone).strftime(TIMESTAMP_FORMAT)


def slack_message_link(channel_id: str, ts: str) -> str:
    """Permalink to a Slack message (the ts without its dot)."""
    return f"{SLACK_ARCHIVE_URL}/{channel_id}/p{ts.replace('.', '')}"


# =============================================================================
# Slack
# =============================================================================


def normalize_slack_message(
    raw: dict[str, Any],
    channel_id: Optional[str] = None,
    *,
    channel_name: Optional[str] = None,
    user_name: Optional[str] = None,
    workspace_id: Optional[str] = None,
    workspace_name: Optional[str] = None,
    is_shared_channel: bool = False,
    is_mention: bool = False,
) -> Optional[NormalizedMessage]:
    """Normalize a Slack message event or history entry.

    Args:
        raw: Message as delivered by the Events API or conversations.history
        channel_id: Channel id, for history entries that do not carry one
        channel_name: Channel display name, if known
        user_name: Sender display name, if known
        workspace_id: Workspace the message came from
        workspace_name: Workspace display name, if configured
        is_shared_channel: Whether the channel is shared with another organization
        is_mention: Whether the message mentions the relay's bot

    Returns:
        The normalized message, or None for housekeeping events
    """
    subtype = raw.get("subtype")
    if subtype in SKIPPED_SLACK_SUBTYPES:
        return None

    ts = raw.get("ts")
    channel = raw.get("channel") or channel_id
    if not ts or not channel:
        return None

    text = raw.get("text") or ""
    if subtype and subtype not in TEXT_SLACK_SUBTYPES:
        text = placeholder(subtype)
    elif not text:
        if not subtype:
            logger.debug(f"Skipping Slack message without text: {channel}@{ts}")
            return None
        text = placeholder(subtype)

    thread_ts = raw.get("thread_ts")
    return NormalizedMessage(
        source_platform=Platform.SLACK,
        source_channel_id=channel,
        source_channel_name=channel_name,
        sender_id=raw.get("user") or raw.get("bot_id") or "unknown",
        sender_name=user_name or raw.get("username"),
        text=text,
        source_timestamp=ts,
        thread_id=thread_ts,
        is_mention=is_mention,
        is_thread_reply=bool(thread_ts) and thread_ts != ts,
        is_bot=bool(raw.get("bot_id")) or subtype == "bot_message",
        message_id=ts,
        workspace_id=workspace_id or raw.get("team"),
        workspace_name=workspace_name,
        is_shared_channel=is_shared_channel,
        message_link=slack_message_link(channel, ts),
    )


def parse_slack_event(payload: dict[str, Any], workspace_id: Optional[str] = None) -> InboundEvent:
    """Map a Slack Events API envelope to an inbound event."""
    if payload.get("type") == "url_verification":
        return UrlVerification(
            platform=Platform.SLACK,
            challenge=payload.get("challenge", ""),
            token=payload.get("token"),
        )

    event = payload.get("event") or {}
    event_type = event.get("type")
    workspace_id = payload.get("team_id") or workspace_id

    if event_type in ("message", "app_mention"):
        is_mention = event_type == "app_mention"
        message = normalize_slack_message(event, workspace_id=workspace_id, is_mention=is_mention)
        if message is None:
            return IgnoredEvent(reason=f"slack message subtype {event.get('subtype')}")
        if is_mention:
            return MentionEvent(message=message)
        return MessageEvent(message=message)

    if event_type == "channel_rename":
        channel = event.get("channel") or {}
        return ChannelRenamed(
            platform=Platform.SLACK,
            workspace_id=workspace_id,
            channel_id=channel.get("id", ""),
            name=channel.get("name", ""),
        )

    if event_type == "channel_id_changed":
        return ChannelIdChanged(
            platform=Platform.SLACK,
            workspace_id=workspace_id,
            old_channel_id=event.get("old_channel_id", ""),
            new_channel_id=event.get("new_channel_id", ""),
        )

    return IgnoredEvent(reason=f"slack event {event_type}")


# =============================================================================
# Lark
# =============================================================================


def extract_post_text(content: dict[str, Any]) -> str:
    """Flatten a Lark rich-text post to plain text.

    Picks the ja_jp, zh_cn or en_us locale (in that order), falling back to
    the first one present.
    """
    post = content.get("post", content)
    if not isinstance(post, dict) or not post:
        return ""

    if isinstance(post.get("content"), list):
        # Received posts carry a single locale without the wrapper
        body = post
    else:
        body = next((post[locale] for locale in POST_LOCALES if locale in post), None)
        if body is None:
            body = next(iter(post.values()))
    if not isinstance(body, dict):
        return ""

    texts: list[str] = []
    if body.get("title"):
        texts.append(body["title"])

    for line in body.get("content") or []:
        for element in line or []:
            tag = element.get("tag")
            if tag in ("text", "a"):
                texts.append(element.get("text") or "")
            elif tag == "at":
                name = element.get("user_name")
                texts.append(f"@{name}" if name else "")

    return " ".join(t for t in texts if t).strip()


def _lark_message_text(message_type: str, content: Any) -> str:
    if isinstance(content, str):
        try:
            content = json.loads(content)
        except ValueError:
            return content if message_type == "text" else placeholder(message_type)

    if not isinstance(content, dict):
        return placeholder(message_type)
    if message_type == "text":
        return content.get("text") or ""
    if message_type == "post":
        return extract_post_text(content)
    return placeholder(message_type)


def normalize_lark_message(payload: dict[str, Any]) -> Optional[NormalizedMessage]:
    """Normalize a Lark message event (v2 schema or legacy v1).

    Returns:
        The normalized message, or None if nothing is left after cleanup
    """
    event = payload.get("event") or {}

    if "header" in payload or payload.get("schema") == "2.0":
        message = event.get("message") or {}
        sender = event.get("sender") or {}
        sender_ids = sender.get("sender_id") or {}
        message_type = message.get("message_type", "text")

        text = _lark_message_text(message_type, message.get("content", ""))
        mentions = message.get("mentions") or []
        text = replace_internal_mentions(text, mentions) if mentions else strip_internal_mentions(text)
        if not text:
            return None

        chat_id = message.get("chat_id")
        if not chat_id:
            return None

        thread_id = message.get("root_id") or None
        return NormalizedMessage(
            source_platform=Platform.LARK,
            source_channel_id=chat_id,
            sender_id=sender_ids.get("open_id") or sender_ids.get("user_id") or "unknown",
            text=text,
            source_timestamp=lark_create_time_to_ts(message.get("create_time")),
            thread_id=thread_id,
            is_mention=any(is_bot_mention(m) for m in mentions),
            is_thread_reply=bool(thread_id),
            is_bot=sender.get("sender_type") not in (None, "user"),
            message_id=message.get("message_id"),
            workspace_id=(payload.get("header") or {}).get("tenant_key"),
        )

    # Legacy v1 callback
    message_type = event.get("msg_type", "text")
    raw_text = event.get("text_without_at_bot") or event.get("text") or event.get("content") or ""
    text = strip_internal_mentions(raw_text if message_type == "text" else placeholder(message_type))
    chat_id = event.get("open_chat_id") or event.get("chat_id")
    if not text or not chat_id:
        return None

    return NormalizedMessage(
        source_platform=Platform.LARK,
        source_channel_id=chat_id,
        sender_id=event.get("open_id") or event.get("user_open_id") or event.get("user_id") or "unknown",
        text=text,
        source_timestamp=str(payload.get("ts") or lark_create_time_to_ts(event.get("create_time"))),
        is_mention=bool(event.get("is_mention")),
        message_id=event.get("open_message_id"),
        workspace_id=event.get("tenant_key") or payload.get("tenant_key"),
    )


def parse_lark_event(payload: dict[str, Any]) -> InboundEvent:
    """Map a (decrypted) Lark event callback to an inbound event."""
    if payload.get("type") == "url_verification" or (
        "challenge" in payload and "event" not in payload
    ):
        return UrlVerification(
            platform=Platform.LARK,
            challenge=payload.get("challenge", ""),
            token=payload.get("token"),
        )

    header = payload.get("header")
    if header is not None:
        event_type = header.get("event_type")
        if event_type == LARK_MESSAGE_EVENT:
            return _lark_message_event(payload)
        if event_type == "im.chat.updated_v1":
            event = payload.get("event") or {}
            after = event.get("after_change") or {}
            if after.get("name"):
                return ChannelRenamed(
                    platform=Platform.LARK,
                    workspace_id=header.get("tenant_key"),
                    channel_id=event.get("chat_id", ""),
                    name=after["name"],
                )
        return IgnoredEvent(reason=f"lark event {event_type}")

    event = payload.get("event") or {}
    if event.get("type") == "message":
        return _lark_message_event(payload)
    return IgnoredEvent(reason=f"lark v1 event {event.get('type')}")


def _lark_message_event(payload: dict[str, Any]) -> InboundEvent:
    message = normalize_lark_message(payload)
    if message is None:
        return IgnoredEvent(reason="empty lark message")
    if message.is_mention:
        return MentionEvent(message=message)
    return MessageEvent(message=message)


# =============================================================================
# Rendering
# =============================================================================


class ChannelOverride(NamedTuple):
    """Result of applying a leading ``#channel`` reference."""

    destination: Destination
    text: str
    unresolved: Optional[str] = None


def unresolved_channel_banner(name: str) -> str:
    """Warning prepended when a referenced channel does not exist."""
    return f"[⚠️ Channel #{name} not found. Sent to the default channel]\n"


async def apply_channel_reference(
    text: str,
    destination: Destination,
    resolver: IdentityResolver,
    client: PlatformClient,
) -> ChannelOverride:
    """Redirect a message that starts with ``#channel`` to that channel.

    An unknown channel keeps the original destination and the full text,
    prefixed with a warning banner.
    """
    name, rest = parse_channel_reference(text)
    if name is None:
        return ChannelOverride(destination, text)

    channel_id = await resolver.resolve_channel_reference(name, client)
    if channel_id is None:
        logger.info(f"Channel #{name} not found, using {destination}")
        return ChannelOverride(destination, unresolved_channel_banner(name) + text, unresolved=name)

    logger.info(f"Channel specified: #{name} -> {channel_id}")
    return ChannelOverride(destination.model_copy(update={"channel_id": channel_id}), rest)


def _post_row(line: str) -> list[dict[str, Any]]:
    """Split a line into Lark post elements, turning <at> markup into at tags."""
    row: list[dict[str, Any]] = []
    position = 0
    for match in _AT_MARKUP.finditer(line):
        if match.start() > position:
            row.append({"tag": "text", "text": line[position : match.start()]})
        row.append({"tag": "at", "user_id": match.group(1), "user_name": match.group(2)})
        position = match.end()
    if position < len(line) or not row:
        row.append({"tag": "text", "text": line[position:]})
    return row


def render(
    message: NormalizedMessage,
    destination_platform: Platform,
    options: Optional[RelayOptions] = None,
) -> RenderedPayload:
    """Render a message for the destination platform.

    Lark receives a rich-text post (title plus workspace, sender, body and
    time rows).
    Slack receives flat text with the sender shown as the bot's username.
    """
    options = options or RelayOptions()
    body = message.text
    if message.is_thread_reply and options.include_thread_replies:
        body = THREAD_REPLY_PREFIX + body

    timestamp = None
    if options.include_timestamp:
        try:
            timestamp = format_timestamp(message.source_timestamp, options.timezone)
        except ValueError:
            logger.debug(f"Unparseable timestamp: {message.source_timestamp}")

    source = message.source_platform.label
    sender = message.display_sender

    if destination_platform is Platform.LARK:
        marker = "📣" if message.is_mention else "📨"
        title = f"{marker} {source}"
        if message.is_shared_channel:
            title += f" {SHARED_CHANNEL_MARKER}"
        if options.include_channel_name:
            title += f" - #{message.display_channel}"

        rows: list[list[dict[str, Any]]] = []
        if message.workspace_name:
            rows.append([{"tag": "text", "text": f"🏢 {message.workspace_name}"}])
        if options.include_user_name:
            rows.append([{"tag": "text", "text": f"👤 {sender}"}])
        rows.extend(_post_row(line) for line in body.split("\n"))
        if timestamp:
            rows.append([{"tag": "text", "text": f"🕐 {timestamp}"}])
        if message.message_link:
            rows.append([{"tag": "a", "text": f"Open in {source}", "href": message.message_link}])

        parts = []
        if message.workspace_name:
            parts.append(f"[{message.workspace_name}]")
        if options.include_channel_name:
            parts.append(f"[#{message.display_channel}]")
        if options.include_user_name:
            parts.append(f"{sender}:")
        parts.append(_AT_MARKUP.sub(lambda m: f"@{m.group(2)}", body))
        text = " ".join(parts)
        if timestamp:
            text += f"\n🕐 {timestamp}"

        return RenderedPayload(text=text, title=title, post=rows)

    header_parts = []
    if options.include_channel_name and message.source_channel_name:
        header_parts.append(f"[#{message.source_channel_name}]")
    if options.include_user_name:
        header_parts.append(f"*{sender}* (from {source})")

    lines = []
    if header_parts:
        lines.append(" ".join(header_parts))
    lines.append(body)
    if timestamp:
        lines.append(f"🕐 {timestamp}")

    return RenderedPayload(
        text="\n".join(lines),
        username=f"{sender} ({source})",
    )
