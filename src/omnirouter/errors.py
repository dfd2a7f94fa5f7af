"""Exception types raised by the router and channel adapters."""

from __future__ import annotations

from typing import Any


class RouterError(Exception):
    """Base class for every omnirouter error."""


class ConfigurationError(RouterError, ValueError):
    """A required construction parameter is missing or conflicting."""


class ChannelConnectionError(RouterError, ConnectionError):
    """An adapter could not establish its platform session."""

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"[{channel}] {message}")
        self.channel = channel


class DeliveryError(RouterError):
    """A reply or out-of-band message could not be delivered."""

    def __init__(self, recipient: Any, cause: BaseException) -> None:
        super().__init__(f"Failed to deliver message to {recipient!r}: {cause}")
        self.recipient = recipient
        self.cause = cause


class ReplyServiceError(RouterError):
    """The reply service answered with an error payload."""

    def __init__(self, err: Any) -> None:
        super().__init__(f"Reply service error: {err}")
        self.err = err


class InvalidResponseError(RouterError):
    """The reply service answered without the expected reply payload."""


class NotFoundError(RouterError, LookupError):
    """No adapter is registered under the requested channel name."""

    def __init__(self, channel_name: str) -> None:
        super().__init__(f'Adapter for channel "{channel_name}" not found')
        self.channel_name = channel_name
