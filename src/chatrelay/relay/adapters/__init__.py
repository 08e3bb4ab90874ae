"""Platform clients for Slack and Lark."""

from chatrelay.relay.adapters.lark import LarkClient
from chatrelay.relay.adapters.slack import SlackClient

__all__ = ["LarkClient", "SlackClient"]
