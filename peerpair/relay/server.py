"""Relay server implementation for pairing clients and relaying signaling.

The relay server (or signaling server) is a lightweight server accessible by
all clients (e.g., has a public IP address). It matches clients that request
a partner and forwards the WebRTC session descriptions and ICE candidates
between the two members of a session, after which media flows directly
between the clients.
"""
from __future__ import annotations

import http
import logging
import sys
import uuid

import websockets.exceptions
from websockets.asyncio.server import ServerConnection
from websockets.http11 import Request
from websockets.http11 import Response

from peerpair.relay.exceptions import BadRequestError
from peerpair.relay.manager import Client
from peerpair.relay.manager import ClientManager
from peerpair.relay.matchmaker import Delivery
from peerpair.relay.matchmaker import Matchmaker
from peerpair.relay.messages import Connected
from peerpair.relay.messages import decode_message
from peerpair.relay.messages import encode_message
from peerpair.relay.messages import FindPartner
from peerpair.relay.messages import LeaveChat
from peerpair.relay.messages import Message
from peerpair.relay.messages import MessageDecodeError
from peerpair.relay.messages import MessageEncodeError
from peerpair.relay.messages import SignalingMessage

logger = logging.getLogger(__name__)

STATUS_MESSAGE = 'peerpair relay server is running\n'


class RelayServer:
    """WebRTC matchmaking and relay server.

    The relay server acts as a public third-party that pairs anonymous
    clients and helps the two members of a pair establish a peer-to-peer
    connection. The relay server's responsibility is just to maintain the
    waiting queue and session registry and to forward session descriptions
    and candidates between partners. The server never inspects the
    negotiation payloads and forwards them byte-for-byte.

    To learn more about the WebRTC peer connection process, check out
    https://webrtc.org/getting-started/peer-connections.

    The relay server is built on websockets and designed to be
    served using [`serve()`][peerpair.relay.run.serve].

    Args:
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed. Note that message size is computed using
            [`sys.getsizeof()`][sys.getsizeof] so will also include the
            PyObject overhead.
    """

    def __init__(self, max_message_bytes: int | None = None) -> None:
        self._client_manager = ClientManager()
        self._matchmaker = Matchmaker(self._client_manager.is_live)
        self._max_message_bytes = max_message_bytes

    @property
    def client_manager(self) -> ClientManager:
        """Manager of connected clients."""
        return self._client_manager

    @property
    def matchmaker(self) -> Matchmaker:
        """Matchmaker owning the waiting queue and session registry."""
        return self._matchmaker

    async def send(self, client: Client, message: Message) -> None:
        """Send message on the socket.

        Note:
            Messages are JSON string encoded using
            [`encode_message()`][peerpair.relay.messages.encode_message].

        Args:
            client: Client to send message to.
            message: Message to encode and send via the websocket connection
                to the client.
        """
        try:
            message_str = encode_message(message)
        except MessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')
            return

        await self._send_str(client, message_str)

    async def _send_str(self, client: Client, message_str: str) -> None:
        try:
            await client.websocket.send(message_str)
        except websockets.exceptions.ConnectionClosed:
            logger.error(
                f'Connection to client {client.handle} closed while '
                'attempting to send message',
            )

    async def deliver(self, deliveries: list[Delivery]) -> None:
        """Send notifications produced by the matchmaker.

        Notifications for clients which are no longer connected are dropped.
        """
        for delivery in deliveries:
            client = self.client_manager.get_client(delivery.handle)
            if client is None:
                logger.debug(
                    f'Dropping {delivery.message.__class__.__name__} for '
                    f'disconnected client {delivery.handle}',
                )
                continue
            await self.send(client, delivery.message)

    async def connect(self, websocket: ServerConnection) -> Client:
        """Register a new client connection and greet it with its handle.

        Args:
            websocket: Websocket connection with the new client.

        Returns:
            The registered client.
        """
        client = Client(handle=uuid.uuid4(), websocket=websocket)
        self.client_manager.add_client(client)
        logger.info(f'Connected client: {client}')
        await self.send(client, Connected(handle=client.handle))
        return client

    async def disconnect(self, client: Client, expected: bool) -> None:
        """Remove a client, ending its session and notifying its partner.

        Args:
            client: Client to remove.
            expected: If the connection was closed intentionally or due to an
                error.
        """
        reason = 'ok' if expected else 'unexpected'
        logger.info(
            f'Disconnecting client {client.handle} for {reason} reason',
        )
        self.client_manager.remove_client(client)
        await self.deliver(self.matchmaker.leave(client.handle))
        await client.websocket.close(code=1000 if expected else 1001)

    async def relay(
        self,
        source_client: Client,
        message: SignalingMessage,
        message_str: str,
    ) -> None:
        """Forward a signaling message to the partner of the source client.

        The original frame is forwarded rather than re-encoding `message` so
        the partner receives the payload unmodified. If the source client is
        not paired, the message is dropped. This is expected when the
        partner disconnects while signaling messages are still in flight.

        Args:
            source_client: Client sending the message.
            message: Decoded signaling message.
            message_str: Frame received from the source client.
        """
        partner = self.matchmaker.partner_of(source_client.handle)
        target_client = (
            None
            if partner is None
            else self.client_manager.get_client(partner)
        )
        if target_client is None:
            logger.debug(
                f'Dropping {message.message_type} message from unpaired '
                f'client {source_client.handle}',
            )
            return

        logger.debug(
            f'Relaying {message.message_type} message from '
            f'{source_client.handle} to {target_client.handle}',
        )
        await self._send_str(target_client, message_str)

    async def _process_message(
        self,
        client: Client,
        message: Message,
        message_str: str,
    ) -> None:
        # Dispatches the message to the correct method depending on the type
        if isinstance(message, FindPartner):
            logger.info(f'Client {client.handle} is looking for a partner')
            await self.deliver(
                self.matchmaker.request_match(
                    client.handle,
                    message.request_id,
                ),
            )
        elif isinstance(message, LeaveChat):
            logger.info(f'Client {client.handle} is leaving their chat')
            await self.deliver(self.matchmaker.leave(client.handle))
        elif isinstance(message, SignalingMessage):
            await self.relay(client, message, message_str)
        else:
            raise BadRequestError(
                f'Clients cannot send {type(message).__name__} messages.',
            )

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        The handler will close the connection for the following reasons.

        - An unexpected message type is received (code 4000).
        - The client sends a message larger than the allowed size (code 4003).

        Args:
            websocket: Websocket connection with the client.
        """
        client = await self.connect(websocket)

        while True:
            try:
                message_str = await websocket.recv()
            except websockets.exceptions.ConnectionClosedOK:
                await self.disconnect(client, expected=True)
                break
            except websockets.exceptions.ConnectionClosedError:
                await self.disconnect(client, expected=False)
                break

            if (
                self._max_message_bytes is not None
                and sys.getsizeof(message_str) > self._max_message_bytes
            ):
                logger.warning(
                    f'Client {client.handle} sent message with size '
                    f'{sys.getsizeof(message_str)} bytes which exceeds the '
                    f'max configured size of {self._max_message_bytes} '
                    'bytes. Connection closed with error code 4003',
                )
                await websocket.close(
                    4003,
                    reason='Message length exceeds limit.',
                )
                await self.disconnect(client, expected=False)
                break

            try:
                if isinstance(message_str, bytes):
                    raise MessageDecodeError(
                        'Got message as bytes but expected str.',
                    )
                message = decode_message(message_str)
                await self._process_message(client, message, message_str)
            except (BadRequestError, MessageDecodeError) as e:
                logger.error(
                    'Closing websocket because an unexpected message was '
                    f'received from client {client.handle}. {e}',
                )
                await websocket.close(4000, reason='Unknown message type.')
                await self.disconnect(client, expected=False)
                break


def process_request(
    connection: ServerConnection,
    request: Request,
) -> Response | None:
    """Answer plain HTTP requests with a status message.

    Requests which are not WebSocket upgrades (e.g., health checks from a
    load balancer or a browser) get a `200 OK`. Upgrade requests continue
    with the WebSocket handshake.
    """
    if 'upgrade' in request.headers.get('Connection', '').lower():
        return None
    return connection.respond(http.HTTPStatus.OK, STATUS_MESSAGE)
