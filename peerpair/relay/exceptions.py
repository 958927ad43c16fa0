"""Exception types raised by relay clients and servers."""
from __future__ import annotations


class RelayClientError(Exception):
    """Base exception type for exceptions raised by relay clients."""

    pass


class ChannelUnavailableError(RelayClientError):
    """Exception raised if the channel to the relay server is not live."""

    pass


class ChannelHandshakeError(RelayClientError):
    """Exception raised if the relay server does not greet a new connection."""

    pass


class RelayServerError(Exception):
    """Base exception type for exceptions raised by relay server."""

    pass


class BadRequestError(RelayServerError):
    """A runtime exception indicating a bad client request."""

    pass
