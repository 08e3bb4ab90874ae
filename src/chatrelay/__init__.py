"""
chatrelay - Slack and Lark message relay

Forwards messages between Slack workspaces and Lark chats, rewriting
mentions and channel references, with loop prevention, filtering and
polling for Slack Connect channels.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("chatrelay")
except PackageNotFoundError:
    __version__ = "0.4.0"

__all__ = [
    "__version__",
]
