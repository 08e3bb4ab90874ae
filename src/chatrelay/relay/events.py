"""Inbound events delivered by push transports.

Every envelope a transport hands to the relay is parsed into exactly one of
these variants, discriminated by ``kind``.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from chatrelay.relay.models import NormalizedMessage, Platform


class MessageEvent(BaseModel):
    """A channel or chat message."""

    kind: Literal["message"] = "message"
    message: NormalizedMessage


class MentionEvent(BaseModel):
    """A message that mentions the relay's bot."""

    kind: Literal["mention"] = "mention"
    message: NormalizedMessage


class ChannelRenamed(BaseModel):
    """A channel changed its name."""

    kind: Literal["channel_renamed"] = "channel_renamed"
    platform: Platform
    workspace_id: Optional[str] = None
    channel_id: str
    name: str


class ChannelIdChanged(BaseModel):
    """A channel was given a new id (e.g. after moving into Slack Connect)."""

    kind: Literal["channel_id_changed"] = "channel_id_changed"
    platform: Platform
    workspace_id: Optional[str] = None
    old_channel_id: str
    new_channel_id: str


class UrlVerification(BaseModel):
    """Webhook endpoint verification handshake."""

    kind: Literal["url_verification"] = "url_verification"
    platform: Platform
    challenge: str
    token: Optional[str] = None


class IgnoredEvent(BaseModel):
    """An envelope the relay has no use for."""

    kind: Literal["ignored"] = "ignored"
    reason: str = ""


InboundEvent = Annotated[
    Union[
        MessageEvent,
        MentionEvent,
        ChannelRenamed,
        ChannelIdChanged,
        UrlVerification,
        IgnoredEvent,
    ],
    Field(discriminator="kind"),
]
