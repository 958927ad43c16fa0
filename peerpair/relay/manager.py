"""Helper classes for managing clients connected to a relay server."""
from __future__ import annotations

import dataclasses
import datetime

from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from peerpair.relay.registry import ClientHandle


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(frozen=True, eq=False)
class Client:
    """Representation of a client connection.

    Attributes:
        handle: Handle assigned to the connection.
        websocket: WebSocket connection to the client.
        created: Time the client was created at.
    """

    handle: ClientHandle
    websocket: ServerConnection
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Client):
            return self.handle == other.handle
        else:
            return False

    def __hash__(self) -> int:
        return hash(self.handle)

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(self.websocket.remote_address)
        return (
            f'{self.__class__.__name__}(handle={self.handle}, '
            f'address={address}, created={created})'
        )


class ClientManager:
    """Manages active client connections.

    Warning:
        This class is intended for internal use by the
        [`RelayServer`][peerpair.relay.server.RelayServer].
    """

    def __init__(self) -> None:
        self._clients: dict[ClientHandle, Client] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def add_client(self, client: Client) -> None:
        """Add a newly connected client."""
        self._clients[client.handle] = client

    def get_clients(self) -> list[Client]:
        """Get a list of all clients."""
        return list(self._clients.values())

    def get_client(self, handle: ClientHandle) -> Client | None:
        """Get a client by its handle."""
        return self._clients.get(handle, None)

    def is_live(self, handle: ClientHandle) -> bool:
        """Check if a client is still connected with an open socket."""
        client = self._clients.get(handle, None)
        return client is not None and client.websocket.state is State.OPEN

    def remove_client(self, client: Client) -> None:
        """Remove a client."""
        self._clients.pop(client.handle, None)
