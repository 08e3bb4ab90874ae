"""HTTP surface for webhook delivery and status."""

from chatrelay.server.app import create_app

__all__ = ["create_app"]
