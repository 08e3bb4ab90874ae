"""
Relay exceptions for chatrelay.

Defines the error taxonomy shared by the relay engine and platform clients.
"""


class RelayError(Exception):
    """Base exception for relay errors."""

    pass


class ConfigurationError(RelayError):
    """Raised when configuration loading or validation fails."""

    pass


class TransientAPIError(RelayError):
    """A platform call failed in a way that may succeed later.

    Covers rate limits, network failures and API errors reported by the
    platform. Never retried in-line.
    """

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message)
        self.platform = platform
        self.retry_after = retry_after


class TransportError(RelayError):
    """A push transport could not be connected."""

    def __init__(self, message: str, platform: str | None = None):
        super().__init__(message)
        self.platform = platform


class WebhookVerificationFailure(RelayError):
    """Inbound webhook failed token or signature verification."""

    pass
