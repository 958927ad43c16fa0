"""CLI for running a headless peer client."""
from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole

from peerpair.client.config import PeerConfig
from peerpair.client.controller import PeerSessionController
from peerpair.client.states import PeerSessionState
from peerpair.relay.client import RelayClient
from peerpair.relay.exceptions import ChannelUnavailableError
from peerpair.utils.tasks import cancel_and_wait
from peerpair.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


async def chat(config: PeerConfig, *, auto_next: bool = False) -> None:
    """Join the relay server and chat with partners until interrupted.

    Remote media is received and discarded. When `auto_next` is set, a new
    partner is requested whenever the current session ends.

    Args:
        config: Peer configuration.
        auto_next: Request a new partner after each session ends.
    """
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    sinks: list[MediaBlackhole] = []
    ended: asyncio.Queue[None] = asyncio.Queue()

    def _on_state_change(old: PeerSessionState, new: PeerSessionState) -> None:
        logger.info(f'Session state: {old.value} -> {new.value}')
        if new is PeerSessionState.ENDED and old not in (
            PeerSessionState.IDLE,
            PeerSessionState.AWAITING_MATCH,
        ):
            ended.put_nowait(None)

    def _on_track(track: MediaStreamTrack) -> None:
        logger.info(f'Receiving {track.kind} from partner')
        sink = MediaBlackhole()
        sink.addTrack(track)
        sinks.append(sink)
        spawn_guarded_background_task(sink.start, name=f'sink-{track.kind}')

    def _on_error(error: Exception) -> None:
        logger.error(f'Session error: {error}')

    channel = RelayClient(
        config.relay_address,
        policy=config.reconnect,
        verify_certificate=config.verify_certificate,
    )
    controller = PeerSessionController(channel, config=config)
    controller.on_state_change(_on_state_change)
    controller.on_track(_on_track)
    controller.on_error(_on_error)

    async def _next_partners() -> None:
        while True:
            await ended.get()
            if not auto_next:
                continue
            await controller.reset()
            try:
                await controller.request_match()
            except ChannelUnavailableError as e:
                logger.error(str(e))

    async with controller:
        try:
            await controller.request_match()
        except ChannelUnavailableError as e:
            logger.error(str(e))
        else:
            next_task = spawn_guarded_background_task(
                _next_partners,
                name='peer-client-next-partner',
            )
            await stop
            await cancel_and_wait(next_task)

    await channel.close()
    for sink in sinks:
        await sink.stop()

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option(
    '--relay-address',
    metavar='URI',
    help='Relay server address (ws:// or wss://).',
)
@click.option(
    '--auto-next',
    is_flag=True,
    default=False,
    help='Request a new partner whenever the current one leaves.',
)
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    default='INFO',
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    relay_address: str | None,
    auto_next: bool,
    log_level: str,
) -> None:
    """Chat with anonymous partners from the command line.

    The client connects to a relay server, requests a partner, and
    negotiates a WebRTC session with aiortc. Remote audio and video are
    received and discarded. Session state changes are logged.
    """
    config = (
        PeerConfig()
        if config_path is None
        else PeerConfig.from_toml(config_path)
    )
    if relay_address is not None:
        config.relay_address = relay_address

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=log_level.upper(),
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger('websockets').setLevel(logging.WARNING)
    logging.getLogger('aioice').setLevel(logging.WARNING)

    asyncio.run(chat(config, auto_next=auto_next))
