from __future__ import annotations

import asyncio
import logging
import ssl
import uuid
from typing import AsyncGenerator
from typing import Awaitable
from typing import Callable

import pytest
import pytest_asyncio
from websockets.asyncio.server import serve
from websockets.asyncio.server import ServerConnection

from peerpair.client.config import ReconnectPolicy
from peerpair.relay.client import RelayClient
from peerpair.relay.client import UNAVAILABLE_MESSAGE
from peerpair.relay.exceptions import ChannelHandshakeError
from peerpair.relay.exceptions import ChannelUnavailableError
from peerpair.relay.messages import Connected
from peerpair.relay.messages import encode_message
from peerpair.relay.messages import FindPartner
from peerpair.relay.messages import Matched
from peerpair.relay.messages import Message
from peerpair.relay.protocols import MessageChannel
from testing.relay_server import RelayServerInfo
from testing.utils import open_port
from testing.utils import wait_for_condition

_FAST_POLICY = ReconnectPolicy(
    initial_delay=0.01,
    max_delay=0.02,
    connect_timeout=1,
)


@pytest_asyncio.fixture()
async def scripted_server() -> AsyncGenerator[
    Callable[[Callable[[ServerConnection], Awaitable[None]]], Awaitable[str]],
    None,
]:
    """Start servers running a custom connection handler."""
    servers = []

    async def _start(
        handler: Callable[[ServerConnection], Awaitable[None]],
    ) -> str:
        port = open_port()
        server = await serve(handler, 'localhost', port)
        servers.append(server)
        return f'ws://localhost:{port}'

    yield _start

    for server in servers:
        server.close()
        await server.wait_closed()


def test_invalid_address_protocol() -> None:
    with pytest.raises(ValueError, match='wss://'):
        RelayClient('myserver.com')


@pytest.mark.asyncio()
async def test_default_ssl_context() -> None:
    client = RelayClient('wss://myserver.com', ssl_context=None)
    assert client._ssl_context is not None


@pytest.mark.asyncio()
async def test_default_ssl_context_no_verify() -> None:
    client = RelayClient(
        'wss://myserver.com',
        ssl_context=None,
        verify_certificate=False,
    )
    assert client._ssl_context is not None
    assert client._ssl_context.check_hostname is False
    assert client._ssl_context.verify_mode == ssl.CERT_NONE


@pytest.mark.asyncio()
async def test_open_and_close() -> None:
    client = RelayClient('ws://localhost')
    assert not client.is_live
    assert client.handle is None
    await client.close()


@pytest.mark.asyncio()
async def test_implements_message_channel() -> None:
    client = RelayClient('ws://localhost')
    assert isinstance(client, MessageChannel)
    await client.close()


@pytest.mark.asyncio()
async def test_connect_receives_handle(relay_server: RelayServerInfo) -> None:
    async with RelayClient(relay_server.address) as client:
        assert client.is_live
        assert client.address == relay_server.address
        assert client.handle is not None
        client_manager = relay_server.relay_server.client_manager
        assert client_manager.get_client(client.handle) is not None

    assert not client.is_live
    assert client.handle is None


@pytest.mark.asyncio()
async def test_await_client(relay_server: RelayServerInfo) -> None:
    client = await RelayClient(relay_server.address)
    assert client.is_live
    # Connecting again is a no-op
    handle = client.handle
    await client.connect()
    assert client.handle == handle
    await client.close()


@pytest.mark.asyncio()
async def test_websocket_property_not_connected() -> None:
    client = RelayClient('ws://localhost')
    with pytest.raises(ChannelUnavailableError, match='connect()'):
        _ = client.websocket


@pytest.mark.asyncio()
async def test_send_not_connected() -> None:
    client = RelayClient('ws://localhost')
    with pytest.raises(ChannelUnavailableError):
        await client.send(FindPartner())


@pytest.mark.asyncio()
async def test_send_and_receive_callbacks(
    relay_server: RelayServerInfo,
) -> None:
    received: dict[str, list[Message]] = {'first': [], 'second': []}
    connects: list[str] = []

    first = RelayClient(relay_server.address)
    second = RelayClient(relay_server.address)
    for name, client in (('first', first), ('second', second)):
        client.on_message(received[name].append)
        client.on_connect(lambda name=name: connects.append(name))

    await first.connect()
    await second.connect()
    assert connects == ['first', 'second']

    matchmaker = relay_server.relay_server.matchmaker
    await first.send(FindPartner())
    assert first.handle is not None
    handle = first.handle
    await wait_for_condition(lambda: matchmaker.is_waiting(handle))
    await second.send(FindPartner())

    await wait_for_condition(
        lambda: len(received['first']) == 1 and len(received['second']) == 1,
    )
    assert received['first'] == [Matched(initiator=False)]
    assert received['second'] == [Matched(initiator=True)]

    await first.close()
    await second.close()


@pytest.mark.asyncio()
async def test_connect_without_retry_raises() -> None:
    client = RelayClient(f'ws://localhost:{open_port()}', timeout=1)
    with pytest.raises(OSError):
        await client.connect(retry=False)
    assert not client.is_live
    await client.close()


@pytest.mark.asyncio()
async def test_connect_retries_with_backoff(
    relay_server: RelayServerInfo,
    caplog,
) -> None:
    caplog.set_level(logging.WARNING)
    client = RelayClient(relay_server.address, policy=_FAST_POLICY)

    attempts = 0
    original_open = client._open

    async def _open(timeout: float):
        nonlocal attempts
        attempts += 1
        if attempts <= 3:
            raise OSError('Connection refused.')
        return await original_open(timeout)

    client._open = _open  # type: ignore[method-assign]
    await client.connect()

    assert client.is_live
    assert attempts == 4
    retries = [
        record.message
        for record in caplog.records
        if 'Retrying connection' in record.message
    ]
    assert len(retries) == 3
    assert 'Retrying connection in 0.01 seconds' in retries[0]
    assert 'Retrying connection in 0.02 seconds' in retries[1]
    # Delay is capped at the policy max delay
    assert 'Retrying connection in 0.02 seconds' in retries[2]

    await client.close()


@pytest.mark.asyncio()
async def test_ensure_connected(relay_server: RelayServerInfo) -> None:
    client = RelayClient(relay_server.address, policy=_FAST_POLICY)
    await client.ensure_connected()
    assert client.is_live
    # No-op if already connected
    await client.ensure_connected()
    await client.close()


@pytest.mark.asyncio()
async def test_ensure_connected_unavailable(caplog) -> None:
    caplog.set_level(logging.WARNING)
    client = RelayClient(
        f'ws://localhost:{open_port()}',
        policy=_FAST_POLICY,
        timeout=1,
    )

    with pytest.raises(ChannelUnavailableError) as exc_info:
        await client.ensure_connected(timeout=1)
    assert str(exc_info.value) == UNAVAILABLE_MESSAGE
    assert any(
        'reinitializing connection' in record.message
        for record in caplog.records
    )

    await client.close()


@pytest.mark.asyncio()
async def test_handshake_unexpected_greeting(scripted_server) -> None:
    async def _handler(websocket: ServerConnection) -> None:
        await websocket.send(encode_message(Matched(initiator=True)))
        await websocket.wait_closed()

    address = await scripted_server(_handler)
    client = RelayClient(address, timeout=1)
    with pytest.raises(ChannelHandshakeError, match='Matched'):
        await client.connect(retry=False)
    assert not client.is_live
    await client.close()


@pytest.mark.asyncio()
async def test_handshake_bad_greeting(scripted_server) -> None:
    async def _handler(websocket: ServerConnection) -> None:
        await websocket.send('not a message')
        await websocket.wait_closed()

    address = await scripted_server(_handler)
    client = RelayClient(address, timeout=1)
    with pytest.raises(ChannelHandshakeError, match='decode'):
        await client.connect(retry=False)
    await client.close()


@pytest.mark.asyncio()
async def test_reader_skips_invalid_messages(scripted_server, caplog) -> None:
    caplog.set_level(logging.ERROR)

    async def _handler(websocket: ServerConnection) -> None:
        await websocket.send(encode_message(Connected(handle=uuid.uuid4())))
        await websocket.send('garbage')
        await websocket.send(b'bytes')
        await websocket.send(encode_message(Matched(initiator=False)))
        await websocket.wait_closed()

    address = await scripted_server(_handler)
    received: list[Message] = []
    client = RelayClient(address, reconnect=False)
    client.on_message(received.append)
    await client.connect()

    await wait_for_condition(lambda: len(received) == 1)
    assert received == [Matched(initiator=False)]
    assert any(
        'failed to decode message' in record.message
        for record in caplog.records
    )
    assert any(
        'non-string message' in record.message for record in caplog.records
    )

    await client.close()


@pytest.mark.asyncio()
async def test_automatic_reconnect(relay_server: RelayServerInfo) -> None:
    connects = 0
    disconnects = 0

    def _on_connect() -> None:
        nonlocal connects
        connects += 1

    def _on_disconnect() -> None:
        nonlocal disconnects
        disconnects += 1

    client = RelayClient(relay_server.address, policy=_FAST_POLICY)
    client.on_connect(_on_connect)
    client.on_disconnect(_on_disconnect)
    await client.connect()
    old_handle = client.handle
    assert old_handle is not None

    client_manager = relay_server.relay_server.client_manager
    server_client = client_manager.get_client(old_handle)
    assert server_client is not None
    await server_client.websocket.close()

    await wait_for_condition(lambda: connects == 2)
    assert disconnects == 1
    assert client.is_live
    assert client.handle != old_handle

    await client.close()


@pytest.mark.asyncio()
async def test_no_reconnect_when_disabled(
    relay_server: RelayServerInfo,
) -> None:
    disconnected = asyncio.Event()
    client = RelayClient(relay_server.address, reconnect=False)
    client.on_disconnect(disconnected.set)
    await client.connect()
    assert client.handle is not None

    client_manager = relay_server.relay_server.client_manager
    server_client = client_manager.get_client(client.handle)
    assert server_client is not None
    await server_client.websocket.close()

    await asyncio.wait_for(disconnected.wait(), 1)
    assert not client.is_live
    assert client._reconnect_task is None

    await client.close()


@pytest.mark.asyncio()
async def test_reinitialize(relay_server: RelayServerInfo) -> None:
    events: list[str] = []
    client = RelayClient(relay_server.address, policy=_FAST_POLICY)
    client.on_connect(lambda: events.append('connect'))
    client.on_disconnect(lambda: events.append('disconnect'))
    await client.connect()
    old_handle = client.handle

    await client.reinitialize()

    await wait_for_condition(lambda: client.is_live)
    assert client.handle != old_handle
    assert events == ['connect', 'disconnect', 'connect']

    await client.close()


@pytest.mark.asyncio()
async def test_schedule_reconnect_noop_when_closed_or_live(
    relay_server: RelayServerInfo,
) -> None:
    client = RelayClient(relay_server.address)
    await client.connect()
    client.schedule_reconnect()
    assert client._reconnect_task is None

    await client.close()
    client.schedule_reconnect()
    assert client._reconnect_task is None


@pytest.mark.asyncio()
async def test_schedule_reconnect_once(relay_server: RelayServerInfo) -> None:
    client = RelayClient(relay_server.address)
    client.schedule_reconnect()
    task = client._reconnect_task
    assert task is not None
    client.schedule_reconnect()
    assert client._reconnect_task is task

    await wait_for_condition(lambda: client.is_live)
    await client.close()
