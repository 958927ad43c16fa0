"""Exception types raised by peer session controllers."""
from __future__ import annotations


class PeerSessionError(Exception):
    """Base exception type for peer session errors."""

    pass


class NegotiationError(PeerSessionError):
    """Exception raised when the local negotiation object fails.

    Raised if the negotiation object cannot be created or if creating or
    applying a session description fails.
    """

    pass


class InvalidTransitionError(PeerSessionError):
    """Exception raised for a transition missing from the state table."""

    pass
