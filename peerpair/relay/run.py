"""CLI and serving functions for running a relay server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click
from websockets.asyncio.server import serve as websockets_serve

from peerpair.relay.config import RelayLoggingConfig
from peerpair.relay.config import RelayServingConfig
from peerpair.relay.server import process_request
from peerpair.relay.server import RelayServer
from peerpair.utils.tasks import cancel_and_wait
from peerpair.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

LOG_FORMAT = (
    '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: %(message)s'
)
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _status_message(server: RelayServer, limit: float | None) -> str:
    clients = server.client_manager.get_clients()
    waiting = server.matchmaker.waiting
    sessions = server.matchmaker.sessions()
    summary = (
        f'Connected clients: {len(clients)}, '
        f'waiting: {len(waiting)}, '
        f'sessions: {len(sessions)}'
    )
    if limit is None or not 0 < len(clients) < limit:
        return summary

    lines = [summary]
    lines.extend(f'  waiting {handle}' for handle in waiting)
    sessions = sorted(sessions, key=lambda session: session.created)
    lines.extend(
        f'  session {session.initiator} <-> {session.responder}'
        for session in sessions
    )
    return '\n'.join(lines)


def periodic_client_logger(
    server: RelayServer,
    interval: float = 60,
    limit: float | None = 60,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs the state of the relay server.

    Each message contains the number of connected clients, clients waiting
    for a partner, and active sessions.

    Args:
        server: Relay server instance to log the state of.
        interval: Seconds between log messages.
        limit: Also list each waiting client and active session if the
            number of connected clients is less than this number. If `None`,
            only the counts are logged.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            logger.log(level, _status_message(server, limit))

    return spawn_guarded_background_task(
        _log,
        name='relay-server-client-logger',
    )


def _server_ssl_context(config: RelayServingConfig) -> ssl.SSLContext | None:
    if config.certfile is None:
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(config.certfile, keyfile=config.keyfile)
    return context


async def serve(config: RelayServingConfig) -> None:
    """Run the relay server until SIGINT or SIGTERM is received.

    Initializes a [`RelayServer`][peerpair.relay.server.RelayServer] and
    starts a websocket server listening for new connections and incoming
    messages. Connections use TLS if `config.certfile` is set.

    Note:
        This function will not configure any logging. Call
        [`configure_logging()`][peerpair.relay.run.configure_logging] first
        to log according to
        [`RelayServingConfig.logging`][peerpair.relay.config.RelayServingConfig].

    Args:
        config: Serving configuration.
    """
    server = RelayServer(max_message_bytes=config.max_message_bytes)

    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    client_logger_task: asyncio.Task[None] | None = None
    if config.logging.current_client_interval is not None:  # pragma: no branch
        level = config.logging.default_level
        client_logger_task = periodic_client_logger(
            server,
            config.logging.current_client_interval,
            config.logging.current_client_limit,
            level=(
                level
                if isinstance(level, int)
                else logging.getLevelName(level)
            ),
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Relay serving configuration:\n{config_repr}')

    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        process_request=process_request,
        ssl=_server_ssl_context(config),
        ping_interval=config.ping_interval,
        ping_timeout=config.ping_timeout,
    ):
        logger.info(f'Relay server listening on port {config.port}')
        logger.info('Use ctrl-C to stop')
        await stop

    await cancel_and_wait(client_logger_task)

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Relay server shutdown')


def configure_logging(config: RelayLoggingConfig) -> None:
    """Configure the root logger of a relay server process.

    Logs are written to stdout and, if `config.log_dir` is set, to a
    `relay.log` file in that directory which is rotated weekly.

    Args:
        config: Logging configuration.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_dir is not None:
        os.makedirs(config.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.log_dir, 'relay.log'),
                # Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        level=config.default_level,
        handlers=handlers,
    )
    logging.getLogger('websockets').setLevel(config.websockets_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a relay server instance.

    The relay server pairs clients looking for a partner and relays the
    messages the two clients need to establish a peer-to-peer WebRTC
    connection. Options given on the command line override those in the
    configuration file. Without a configuration file the defaults of
    [`RelayServingConfig()`][peerpair.relay.config.RelayServingConfig]
    are used.
    """
    config = (
        RelayServingConfig()
        if config_path is None
        else RelayServingConfig.from_toml(config_path)
    )

    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = log_level.upper()

    configure_logging(config.logging)
    asyncio.run(serve(config))
