"""Client interface to a relay server."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
import uuid
from types import TracebackType
from typing import Any
from typing import Callable
from typing import Generator

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as websockets_connect
from websockets.protocol import State

from peerpair.client.config import ReconnectPolicy
from peerpair.relay.exceptions import ChannelHandshakeError
from peerpair.relay.exceptions import ChannelUnavailableError
from peerpair.relay.messages import Connected
from peerpair.relay.messages import decode_message
from peerpair.relay.messages import encode_message
from peerpair.relay.messages import Message
from peerpair.relay.messages import MessageDecodeError
from peerpair.utils.tasks import cancel_and_wait
from peerpair.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

# Exceptions that we should wait and retry again for
_RETRYABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    websockets.exceptions.ConnectionClosed,
    websockets.exceptions.InvalidHandshake,
    ChannelHandshakeError,
)

UNAVAILABLE_MESSAGE = (
    'Unable to connect to the server. Please try again later.'
)


class RelayClient:
    """Client interface to a relay server.

    This interface abstracts the low-level WebSocket connection to a
    relay server to provide automatic reconnection and callback based
    message delivery. It implements the
    [`MessageChannel`][peerpair.relay.protocols.MessageChannel] protocol.

    Tip:
        This class can be used as an async context manager!
        ```python
        from peerpair.relay.client import RelayClient

        async with RelayClient('ws://localhost:3000') as client:
            client.on_message(print)
            await client.send(FindPartner())
        ```

    Note:
        WebSocket connections are not opened until
        [`connect()`][peerpair.relay.client.RelayClient.connect] or
        [`ensure_connected()`][peerpair.relay.client.RelayClient.ensure_connected]
        is called. Initializing the client with `await` will call
        [`connect()`][peerpair.relay.client.RelayClient.connect].
        ```python
        client = await RelayClient(...)
        ```

    Args:
        address: Address of the relay server. Should start with `ws://` or
            `wss://`.
        policy: Reconnection policy. Connection attempts are retried with a
            delay starting at `policy.initial_delay` which doubles up to
            `policy.max_delay`.
        reconnect: Automatically reconnect in the background when the
            websocket connection closes.
        ssl_context: Custom SSL context to pass to
            [`websockets.connect()`][websockets.asyncio.client.connect]. A TLS
            context is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        timeout: Time to wait in seconds on opening the connection and on
            the server greeting.
        verify_certificate: Verify the relay server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        *,
        policy: ReconnectPolicy | None = None,
        reconnect: bool = True,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Relay server address must start with ws:// or wss://.'
                f'Got {address}.',
            )

        self._address = address
        self._policy = ReconnectPolicy() if policy is None else policy
        self._timeout = timeout

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._ssl_context = ssl_context
        self._reconnect = reconnect
        self._closed = False

        self._connect_callbacks: list[Callable[[], None]] = []
        self._disconnect_callbacks: list[Callable[[], None]] = []
        self._message_callbacks: list[Callable[[Message], None]] = []

        self._connect_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._websocket: ClientConnection | None = None
        self._handle: uuid.UUID | None = None

    def __await__(self) -> Generator[Any, None, Self]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def _log_prefix(self) -> str:
        return f'{type(self).__name__}[{self._address}]'

    @property
    def address(self) -> str:
        """Address of the relay server."""
        return self._address

    @property
    def handle(self) -> uuid.UUID | None:
        """Handle assigned by the relay server or `None` if disconnected."""
        return self._handle if self.is_live else None

    @property
    def is_live(self) -> bool:
        """Check if the websocket connection is open."""
        return (
            self._websocket is not None
            and self._websocket.state is State.OPEN
        )

    @property
    def websocket(self) -> ClientConnection:
        """Websocket connection to the relay server.

        Raises:
            ChannelUnavailableError: if the websocket connection to the relay
                server is not open. This usually indicates that
                [`connect()`][peerpair.relay.client.RelayClient.connect]
                needs to be called.
        """
        if self._websocket is not None and self.is_live:
            return self._websocket
        else:
            raise ChannelUnavailableError(
                'Websocket connection to the relay server is not open. '
                'Try calling connect() first.',
            )

    def on_connect(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked each time the channel connects."""
        self._connect_callbacks.append(callback)

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked each time the channel disconnects."""
        self._disconnect_callbacks.append(callback)

    def on_message(self, callback: Callable[[Message], None]) -> None:
        """Register a callback invoked with each received message."""
        self._message_callbacks.append(callback)

    async def _open(
        self,
        timeout: float,
    ) -> tuple[ClientConnection, uuid.UUID]:
        """Open a websocket connection and wait on the server greeting.

        Args:
            timeout: Timeout to wait on opening the initial connection and
                waiting for the server greeting.

        Returns:
            Open websocket connection with the relay server and the handle \
            the server assigned to it.

        Raises:
            OSError: If the server could not be connected to.
            asyncio.TimeoutError: If the server did not greet the client
                within the timeout.
            websockets.exceptions.ConnectionClosed: If the websocket connection
                was closed before the greeting.
            ChannelHandshakeError: If the server's first message is not a
                greeting.
        """
        websocket = await websockets_connect(
            self._address,
            open_timeout=timeout,
            ssl=self._ssl_context,
        )

        try:
            message_str = await asyncio.wait_for(websocket.recv(), timeout)
            if not isinstance(message_str, str):
                raise ChannelHandshakeError(
                    'Received non-string type on websocket.',
                )
            try:
                message = decode_message(message_str)
            except MessageDecodeError as e:
                raise ChannelHandshakeError(
                    'Unable to decode greeting from the relay server.',
                ) from e
            if not isinstance(message, Connected):
                raise ChannelHandshakeError(
                    'Relay server replied with unexpected message type: '
                    f'{type(message).__name__}.',
                )
        except BaseException:
            await websocket.close()
            raise

        return websocket, message.handle

    async def connect(self, retry: bool = True) -> None:
        """Connect to the relay server.

        Note:
            This method is a no-op if a connection is already established.
            Otherwise, a new connection will be attempted with
            exponential backoff when `retry` is True for connection failures.
            There is no limit on the number of attempts.

        Args:
            retry: Retry the connection with exponential backoff starting at
                `policy.initial_delay` seconds and increasing to a max of
                `policy.max_delay` seconds.
        """
        async with self._connect_lock:
            if self.is_live:
                return

            backoff_seconds = self._policy.initial_delay
            while True:
                try:
                    websocket, handle = await self._open(self._timeout)
                except _RETRYABLE_ERRORS as e:
                    if not retry:
                        raise

                    logger.warning(
                        f'{self._log_prefix}: connection failed because of '
                        f'{e!r}. Retrying connection in {backoff_seconds} '
                        'seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(
                        backoff_seconds * 2,
                        self._policy.max_delay,
                    )
                else:
                    break

            self._websocket = websocket
            self._handle = handle
            self._reader_task = spawn_guarded_background_task(
                self._read_messages,
                websocket,
                name='relay-client-reader',
            )

        logger.info(
            f'{self._log_prefix}: established connection with handle '
            f'{handle}',
        )
        for callback in list(self._connect_callbacks):
            callback()

    async def ensure_connected(self, timeout: float | None = None) -> None:
        """Make a single bounded attempt to connect if not connected.

        Args:
            timeout: Seconds to wait on the connection. Defaults to
                `policy.connect_timeout`.

        Raises:
            ChannelUnavailableError: If the connection could not be made
                within the timeout.
        """
        if self.is_live:
            return

        timeout = self._policy.connect_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self.connect(retry=False), timeout)
        except _RETRYABLE_ERRORS as e:
            logger.warning(
                f'{self._log_prefix}: bounded connection attempt failed '
                f'because of {e!r}',
            )
            await self.reinitialize()
            raise ChannelUnavailableError(UNAVAILABLE_MESSAGE) from e

    def schedule_reconnect(self) -> None:
        """Start reconnecting in the background.

        This is a no-op if the client is closed, already connected, or
        already reconnecting.
        """
        if self._closed or self.is_live:
            return
        task = self._reconnect_task
        if task is not None and not task.done():
            return
        logger.info(f'{self._log_prefix}: scheduling reconnection')
        self._reconnect_task = spawn_guarded_background_task(
            self.connect,
            name='relay-client-reconnect',
        )

    async def reinitialize(self) -> None:
        """Drop the current connection and start a fresh one.

        Cancels the reader and any pending reconnection, closes the current
        websocket, and schedules a new connection. Registered callbacks are
        preserved.
        """
        logger.warning(f'{self._log_prefix}: reinitializing connection')
        was_live = self.is_live
        await self._cancel_tasks()

        websocket, self._websocket, self._handle = self._websocket, None, None
        if websocket is not None:
            await websocket.close()
        if was_live:
            self._notify_disconnect()

        self.schedule_reconnect()

    async def close(self) -> None:
        """Close the connection to the relay server."""
        self._closed = True
        await self._cancel_tasks()

        if self._websocket is not None:
            await self._websocket.close()
        self._websocket = None
        self._handle = None

    async def send(self, message: Message) -> None:
        """Send a message.

        Args:
            message: The message to send to the relay server.

        Raises:
            ChannelUnavailableError: If the websocket connection is not open
                or closes while sending.
        """
        message_str = encode_message(message)
        websocket = self.websocket

        try:
            await websocket.send(message_str)
        except websockets.exceptions.ConnectionClosed as e:
            raise ChannelUnavailableError(
                'Websocket connection closed while sending '
                f'{message.__class__.__name__}.',
            ) from e

    async def _cancel_tasks(self) -> None:
        for task in (self._reconnect_task, self._reader_task):
            await cancel_and_wait(task)
        self._reconnect_task = None
        self._reader_task = None

    async def _read_messages(self, websocket: ClientConnection) -> None:
        """Dispatch received messages until the websocket closes.

        This is intended to be run as an asyncio task and should only
        be started after the websocket connection has been created.
        """
        while True:
            try:
                message_str = await websocket.recv()
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning(f'{self._log_prefix}: connection closed ({e})')
                break

            if not isinstance(message_str, str):
                logger.error(
                    f'{self._log_prefix}: received non-string message',
                )
                continue

            try:
                message = decode_message(message_str)
            except MessageDecodeError as e:
                logger.error(
                    f'{self._log_prefix}: failed to decode message: {e}',
                )
                continue

            logger.debug(
                f'{self._log_prefix}: received {message.__class__.__name__}',
            )
            for callback in list(self._message_callbacks):
                callback(message)

        if self._websocket is websocket:
            self._websocket = None
            self._handle = None
            self._notify_disconnect()
            if self._reconnect:
                self.schedule_reconnect()

    def _notify_disconnect(self) -> None:
        for callback in list(self._disconnect_callbacks):
            callback()
