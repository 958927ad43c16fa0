"""Message channel protocol."""
from __future__ import annotations

import uuid
from typing import Callable
from typing import Protocol
from typing import runtime_checkable

from peerpair.relay.messages import Message


@runtime_checkable
class MessageChannel(Protocol):
    """Persistent, ordered, bidirectional channel to the relay server.

    The [`PeerSessionController`][peerpair.client.controller.PeerSessionController]
    only depends on this interface, so tests and alternative transports can
    provide their own channel.
    """

    @property
    def handle(self) -> uuid.UUID | None:
        """Handle assigned by the relay server or `None` if disconnected."""
        ...

    @property
    def is_live(self) -> bool:
        """Check if the channel is currently connected."""
        ...

    def on_connect(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked each time the channel connects."""
        ...

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked each time the channel disconnects."""
        ...

    def on_message(self, callback: Callable[[Message], None]) -> None:
        """Register a callback invoked with each received message."""
        ...

    async def send(self, message: Message) -> None:
        """Send a message to the relay server.

        Raises:
            ChannelUnavailableError: If the channel is not connected.
        """
        ...

    async def ensure_connected(self, timeout: float | None = None) -> None:
        """Make a single bounded attempt to connect if not connected.

        Raises:
            ChannelUnavailableError: If the channel could not be connected
                within the timeout.
        """
        ...

    def schedule_reconnect(self) -> None:
        """Start reconnecting in the background if not already doing so."""
        ...

    async def reinitialize(self) -> None:
        """Drop the current connection and start a fresh one.

        Registered callbacks are preserved.
        """
        ...

    async def close(self) -> None:
        """Close the channel."""
        ...
