"""Peer session controller driving one client's WebRTC sessions."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import sys
import uuid
from types import TracebackType
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Generator

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from aiortc import MediaStreamTrack

from peerpair.client.candidates import PendingCandidateBuffer
from peerpair.client.config import PeerConfig
from peerpair.client.exceptions import NegotiationError
from peerpair.client.health import ChannelHealthMonitor
from peerpair.client.negotiation import aiortc_negotiator_factory
from peerpair.client.negotiation import Negotiator
from peerpair.client.negotiation import NegotiatorFactory
from peerpair.client.states import check_transition
from peerpair.client.states import PeerSessionState
from peerpair.relay.exceptions import ChannelUnavailableError
from peerpair.relay.messages import Answer
from peerpair.relay.messages import FindPartner
from peerpair.relay.messages import IceCandidate
from peerpair.relay.messages import LeaveChat
from peerpair.relay.messages import Matched
from peerpair.relay.messages import Message
from peerpair.relay.messages import Offer
from peerpair.relay.messages import PartnerDisconnected
from peerpair.relay.protocols import MessageChannel
from peerpair.utils.tasks import cancel_and_wait
from peerpair.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

StateCallback = Callable[[PeerSessionState, PeerSessionState], None]
TrackCallback = Callable[[MediaStreamTrack], None]
ErrorCallback = Callable[[Exception], None]

_IN_SESSION = frozenset(
    {
        PeerSessionState.MATCHED,
        PeerSessionState.NEGOTIATING,
        PeerSessionState.CONNECTED,
        PeerSessionState.RECOVERING,
    },
)
_LINK_UP = frozenset({'connected', 'completed'})


@dataclasses.dataclass
class _Event:
    handler: Callable[..., Awaitable[Any]]
    args: tuple[Any, ...]
    future: asyncio.Future[Any] | None = None


class _SessionListener:
    """Posts negotiator events tagged with the session epoch."""

    def __init__(self, controller: PeerSessionController, epoch: int) -> None:
        self._controller = controller
        self._epoch = epoch

    def on_candidate(self, payload: dict[str, Any]) -> None:
        self._controller._post(
            self._controller._handle_local_candidate,
            self._epoch,
            payload,
        )

    def on_link_state(self, state: str) -> None:
        self._controller._post(
            self._controller._handle_link_state,
            self._epoch,
            state,
        )

    def on_negotiation_needed(self) -> None:
        self._controller._post(
            self._controller._handle_negotiation_needed,
            self._epoch,
        )

    def on_track(self, track: MediaStreamTrack) -> None:
        self._controller._post(
            self._controller._handle_remote_track,
            self._epoch,
            track,
        )


class PeerSessionController:
    """Client-side state machine of anonymous peer sessions.

    The controller requests partners from the relay server, negotiates a
    direct WebRTC link with each partner, recovers failed links, and tears
    sessions down. States and the allowed transitions between them are
    enumerated in [`peerpair.client.states`][peerpair.client.states].

    All state is owned by a single worker task. Channel messages, channel
    connection changes, negotiation callbacks, and timers only post events
    to the worker's queue. Public methods post an event and wait on its
    result so exceptions raised while handling the event propagate to the
    caller. Exceptions raised while handling events that have no caller are
    logged and passed to the callbacks registered with
    [`on_error()`][peerpair.client.controller.PeerSessionController.on_error].

    Tip:
        This class can be used as an async context manager!
        ```python
        from peerpair.client.controller import PeerSessionController
        from peerpair.relay.client import RelayClient

        async with RelayClient('ws://localhost:3000') as channel:
            async with PeerSessionController(channel) as controller:
                controller.on_state_change(print)
                await controller.request_match()
                ...
                await controller.skip()
        ```

    Args:
        channel: Channel to the relay server.
        negotiator_factory: Callable creating the negotiation object of a
            session. Defaults to
            [`AiortcNegotiator`][peerpair.client.negotiation.AiortcNegotiator]
            instances configured with `config.ice_servers`.
        config: Peer configuration. Defaults to
            [`PeerConfig()`][peerpair.client.config.PeerConfig].
        monitor_health: Start a
            [`ChannelHealthMonitor`][peerpair.client.health.ChannelHealthMonitor]
            for the channel while the controller is running.
    """

    def __init__(
        self,
        channel: MessageChannel,
        negotiator_factory: NegotiatorFactory | None = None,
        *,
        config: PeerConfig | None = None,
        monitor_health: bool = True,
    ) -> None:
        self._channel = channel
        self._config = PeerConfig() if config is None else config
        self._negotiator_factory = (
            aiortc_negotiator_factory(self._config.ice_servers)
            if negotiator_factory is None
            else negotiator_factory
        )
        self._monitor = (
            ChannelHealthMonitor(channel, self._config.reconnect)
            if monitor_health
            else None
        )

        self._state = PeerSessionState.IDLE
        self._initiator: bool | None = None
        self._negotiator: Negotiator | None = None
        self._candidates = PendingCandidateBuffer(
            self._config.max_pending_candidates,
        )
        self._tracks: list[MediaStreamTrack] = []
        self._epoch = 0
        self._grace_timer: asyncio.TimerHandle | None = None
        self._recovery_timer: asyncio.TimerHandle | None = None
        self._restart_attempts = 0
        self._offer_deferred = False
        self._match_requested_on: uuid.UUID | None = None
        self._match_request_id: str | None = None

        self._state_callbacks: list[StateCallback] = []
        self._track_callbacks: list[TrackCallback] = []
        self._error_callbacks: list[ErrorCallback] = []

        self._events: asyncio.Queue[_Event] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._registered = False
        self._closed = False

    def __await__(self) -> Generator[Any, None, Self]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Self:
        self.start()
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
        handle = self._channel.handle
        return (
            f'{self.__class__.__name__}'
            f'[{"disconnected" if handle is None else handle}]'
        )

    @property
    def state(self) -> PeerSessionState:
        """Current session state."""
        return self._state

    @property
    def initiator(self) -> bool | None:
        """If this client creates the first offer of the current session.

        `None` if the client is not matched.
        """
        return self._initiator

    @property
    def pending_candidates(self) -> int:
        """Number of local candidates waiting for the channel."""
        return len(self._candidates)

    @property
    def restart_attempts(self) -> int:
        """Number of link restarts attempted in the current session."""
        return self._restart_attempts

    def on_state_change(self, callback: StateCallback) -> None:
        """Register a callback invoked with `(old, new)` on state changes."""
        self._state_callbacks.append(callback)

    def on_track(self, callback: TrackCallback) -> None:
        """Register a callback invoked with each remote media track."""
        self._track_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        """Register a callback invoked with errors that have no caller.

        For example, a failure to create the offer after being matched.
        """
        self._error_callbacks.append(callback)

    def start(self) -> None:
        """Start processing events.

        This is a no-op if the controller is already running.

        Raises:
            RuntimeError: If the controller was closed.
        """
        if self._closed:
            raise RuntimeError('Peer session controller is closed.')
        if self._worker is not None:
            return

        if not self._registered:
            self._channel.on_connect(self._on_channel_connect)
            self._channel.on_disconnect(self._on_channel_disconnect)
            self._channel.on_message(self._on_channel_message)
            self._registered = True

        self._events = asyncio.Queue()
        self._worker = spawn_guarded_background_task(
            self._process_events,
            name='peer-session-controller',
        )
        if self._monitor is not None:
            self._monitor.start()
        logger.info(f'{self._log_prefix}: started')

    async def close(self) -> None:
        """End the current session and stop processing events.

        Note:
            This will not close the channel.
        """
        if self._closed or self._worker is None:
            self._closed = True
            return

        await self._submit(self._handle_shutdown)
        self._closed = True

        if self._monitor is not None:
            await self._monitor.stop()

        await cancel_and_wait(self._worker)
        self._worker = None

        assert self._events is not None
        while not self._events.empty():
            event = self._events.get_nowait()
            if event.future is not None and not event.future.done():
                event.future.cancel()
        logger.info(f'{self._log_prefix}: closed')

    async def request_match(self) -> None:
        """Request a new partner.

        A bounded attempt to connect the channel is made first. Any current
        session is ended locally before the request is sent.

        Raises:
            ChannelUnavailableError: If the channel could not be connected
                within `config.reconnect.connect_timeout` seconds.
        """
        await self._submit(self._handle_request_match)

    async def leave(self) -> None:
        """Leave the current session or the waiting queue.

        The relay server is told if the channel is live. The session always
        ends locally.
        """
        await self._submit(self._handle_leave)

    async def skip(self) -> None:
        """Leave the current partner and request a new one."""
        await self.leave()
        await self.request_match()

    async def reset(self) -> None:
        """End any current session and return to the idle state."""
        await self._submit(self._handle_reset)

    async def initialize_connection(self) -> None:
        """Create the negotiation object ahead of a session.

        If the channel is not live, a reconnect is also scheduled.

        Raises:
            NegotiationError: If the negotiation object cannot be created.
                The controller remains in its current state.
        """
        await self._submit(self._handle_initialize_connection)

    async def add_track(self, track: MediaStreamTrack) -> None:
        """Attach a local media track to this and all future sessions."""
        await self._submit(self._handle_add_track, track)

    async def sync(self) -> None:
        """Wait until all previously posted events have been processed."""
        await self._submit(self._handle_noop)

    def _post(
        self,
        handler: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> None:
        if self._closed or self._events is None:
            logger.debug(
                f'{self._log_prefix}: dropping {handler.__name__} event '
                'because the controller is not running',
            )
            return
        self._events.put_nowait(_Event(handler, args))

    async def _submit(
        self,
        handler: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        self.start()
        assert self._events is not None
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._events.put_nowait(_Event(handler, args, future))
        return await future

    async def _process_events(self) -> None:
        assert self._events is not None
        while True:
            event = await self._events.get()
            try:
                result = await event.handler(*event.args)
            except asyncio.CancelledError:
                if event.future is not None:
                    event.future.cancel()
                raise
            except Exception as e:
                if event.future is not None and not event.future.done():
                    event.future.set_exception(e)
                else:
                    self._report_error(e)
            else:
                if event.future is not None and not event.future.done():
                    event.future.set_result(result)

    def _report_error(self, error: Exception) -> None:
        logger.error(
            f'{self._log_prefix}: error in state {self._state.name}: '
            f'{error!r}',
        )
        for callback in list(self._error_callbacks):
            callback(error)

    def _transition(self, target: PeerSessionState) -> None:
        check_transition(self._state, target)
        old, self._state = self._state, target
        logger.info(f'{self._log_prefix}: {old.name} -> {target.name}')
        for callback in list(self._state_callbacks):
            callback(old, target)

    def _is_stale(self, epoch: int, event: str) -> bool:
        if epoch != self._epoch:
            logger.debug(
                f'{self._log_prefix}: ignoring {event} from a previous '
                'session',
            )
            return True
        return False

    def _ensure_negotiator(self) -> Negotiator:
        if self._negotiator is not None:
            return self._negotiator

        try:
            negotiator = self._negotiator_factory(
                _SessionListener(self, self._epoch),
            )
            for track in self._tracks:
                negotiator.add_track(track)
        except Exception as e:
            raise NegotiationError(
                f'Failed to create negotiation object: {e}',
            ) from e

        self._negotiator = negotiator
        logger.debug(f'{self._log_prefix}: created negotiation object')
        return negotiator

    async def _send_offer(self, *, ice_restart: bool = False) -> None:
        negotiator = self._ensure_negotiator()
        payload = await negotiator.create_offer(ice_restart=ice_restart)
        await self._channel.send(Offer(payload))
        logger.info(
            f'{self._log_prefix}: sent offer'
            f'{" with ICE restart" if ice_restart else ""}',
        )

    async def _renegotiate(self) -> None:
        self._offer_deferred = False
        await self._send_offer()
        self._transition(PeerSessionState.NEGOTIATING)

    async def _mark_connected(self) -> None:
        self._cancel_grace_timer()
        self._cancel_recovery_timer()
        self._restart_attempts = 0
        self._transition(PeerSessionState.CONNECTED)
        if self._offer_deferred and self._channel.is_live:
            await self._renegotiate()

    async def _maybe_connected(self) -> None:
        # Renegotiation over an established link never reports a new
        # link state so check the current one.
        if (
            self._negotiator is not None
            and self._negotiator.link_state in _LINK_UP
            and self._state
            in (PeerSessionState.NEGOTIATING, PeerSessionState.RECOVERING)
        ):
            await self._mark_connected()

    def _cancel_grace_timer(self) -> None:
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None

    def _cancel_recovery_timer(self) -> None:
        if self._recovery_timer is not None:
            self._recovery_timer.cancel()
            self._recovery_timer = None

    async def _end_session(self) -> None:
        self._epoch += 1
        self._cancel_grace_timer()
        self._cancel_recovery_timer()
        negotiator, self._negotiator = self._negotiator, None
        discarded = len(self._candidates.drain_in_order())
        if discarded > 0:
            logger.debug(
                f'{self._log_prefix}: discarded {discarded} pending '
                'candidate(s)',
            )
        self._initiator = None
        self._restart_attempts = 0
        self._offer_deferred = False

        if self._state is not PeerSessionState.ENDED:
            self._transition(PeerSessionState.ENDED)

        if negotiator is not None:
            try:
                await negotiator.close()
            except Exception as e:
                logger.warning(
                    f'{self._log_prefix}: error closing negotiation '
                    f'object: {e!r}',
                )

    async def _send_leave(self) -> None:
        if not self._channel.is_live:
            return
        try:
            await self._channel.send(LeaveChat())
        except ChannelUnavailableError as e:
            logger.warning(
                f'{self._log_prefix}: unable to notify the relay server of '
                f'leaving: {e}',
            )

    async def _restart(self) -> None:
        self._restart_attempts += 1
        if self._restart_attempts > self._config.max_restart_attempts:
            logger.error(
                f'{self._log_prefix}: link could not be restored after '
                f'{self._config.max_restart_attempts} restart attempt(s), '
                'ending session',
            )
            await self._send_leave()
            await self._end_session()
            return

        if self._state is not PeerSessionState.RECOVERING:
            self._transition(PeerSessionState.RECOVERING)

        # A failed link may never report another state change
        self._cancel_recovery_timer()
        self._recovery_timer = asyncio.get_running_loop().call_later(
            self._config.restart_timeout,
            self._post,
            self._handle_recovery_expired,
            self._epoch,
        )

        negotiator = self._ensure_negotiator()
        logger.warning(
            f'{self._log_prefix}: restarting link (attempt '
            f'{self._restart_attempts}/{self._config.max_restart_attempts})',
        )
        try:
            await negotiator.restart_ice()
        except NotImplementedError:
            if not self._initiator:
                # Restart offers come from the initiator
                logger.info(
                    f'{self._log_prefix}: waiting on the partner to send a '
                    'restart offer',
                )
                return
            if not self._channel.is_live:
                logger.info(
                    f'{self._log_prefix}: channel is not live, deferring '
                    'restart offer until reconnected',
                )
                self._offer_deferred = True
                return
            await self._send_offer(ice_restart=True)

    async def _handle_noop(self) -> None:
        pass

    async def _handle_shutdown(self) -> None:
        if self._state in (PeerSessionState.IDLE, PeerSessionState.ENDED):
            return
        await self._send_leave()
        await self._end_session()

    async def _handle_request_match(self) -> None:
        await self._channel.ensure_connected(
            self._config.reconnect.connect_timeout,
        )
        if self._state is not PeerSessionState.IDLE:
            await self._end_session()
            self._transition(PeerSessionState.IDLE)
        self._match_request_id = str(uuid.uuid4())
        await self._channel.send(
            FindPartner(request_id=self._match_request_id),
        )
        self._match_requested_on = self._channel.handle
        self._transition(PeerSessionState.AWAITING_MATCH)

    async def _handle_leave(self) -> None:
        await self._send_leave()
        await self._end_session()

    async def _handle_reset(self) -> None:
        if self._state is PeerSessionState.IDLE:
            return
        await self._end_session()
        self._transition(PeerSessionState.IDLE)

    async def _handle_initialize_connection(self) -> None:
        if not self._channel.is_live:
            logger.warning(
                f'{self._log_prefix}: channel is not live, reconnecting',
            )
            self._channel.schedule_reconnect()
        self._ensure_negotiator()

    async def _handle_add_track(self, track: MediaStreamTrack) -> None:
        self._tracks.append(track)
        if self._negotiator is not None:
            self._negotiator.add_track(track)

    async def _handle_message(self, message: Message) -> None:
        if isinstance(message, Matched):
            await self._handle_matched(message)
        elif isinstance(message, Offer):
            await self._handle_offer(message)
        elif isinstance(message, Answer):
            await self._handle_answer(message)
        elif isinstance(message, IceCandidate):
            await self._handle_remote_candidate(message)
        elif isinstance(message, PartnerDisconnected):
            await self._handle_partner_disconnected()
        else:
            logger.debug(
                f'{self._log_prefix}: ignoring {type(message).__name__} '
                'message',
            )

    async def _handle_matched(self, message: Matched) -> None:
        if self._state is not PeerSessionState.AWAITING_MATCH:
            logger.debug(
                f'{self._log_prefix}: ignoring matched message in state '
                f'{self._state.name}',
            )
            return
        if (
            message.request_id is not None
            and message.request_id != self._match_request_id
        ):
            # Pairing made before an earlier request was withdrawn
            logger.debug(
                f'{self._log_prefix}: ignoring matched message for partner '
                f'request {message.request_id}',
            )
            return

        self._initiator = message.initiator
        self._transition(PeerSessionState.MATCHED)
        logger.info(
            f'{self._log_prefix}: matched as '
            f'{"initiator" if message.initiator else "responder"}',
        )
        if message.initiator:
            await self._send_offer()
            self._transition(PeerSessionState.NEGOTIATING)

    async def _handle_offer(self, message: Offer) -> None:
        if self._state not in _IN_SESSION:
            logger.debug(
                f'{self._log_prefix}: ignoring offer in state '
                f'{self._state.name}',
            )
            return

        negotiator = self._ensure_negotiator()
        await negotiator.set_remote_description(message.payload)
        answer = await negotiator.create_answer()
        await self._channel.send(Answer(answer))
        logger.info(f'{self._log_prefix}: sent answer')

        if self._state in (
            PeerSessionState.MATCHED,
            PeerSessionState.CONNECTED,
        ):
            self._transition(PeerSessionState.NEGOTIATING)
        await self._maybe_connected()

    async def _handle_answer(self, message: Answer) -> None:
        if self._negotiator is None or self._state not in (
            PeerSessionState.NEGOTIATING,
            PeerSessionState.CONNECTED,
            PeerSessionState.RECOVERING,
        ):
            logger.debug(
                f'{self._log_prefix}: ignoring answer in state '
                f'{self._state.name}',
            )
            return

        await self._negotiator.set_remote_description(message.payload)
        logger.info(f'{self._log_prefix}: applied answer')
        await self._maybe_connected()

    async def _handle_remote_candidate(self, message: IceCandidate) -> None:
        if self._state not in _IN_SESSION:
            logger.debug(
                f'{self._log_prefix}: ignoring remote candidate in state '
                f'{self._state.name}',
            )
            return

        negotiator = self._ensure_negotiator()
        try:
            await negotiator.add_candidate(message.payload)
        except Exception as e:
            logger.error(
                f'{self._log_prefix}: failed to apply remote candidate: '
                f'{e!r}',
            )

    async def _handle_partner_disconnected(self) -> None:
        if self._state not in _IN_SESSION:
            logger.debug(
                f'{self._log_prefix}: ignoring partner disconnect in state '
                f'{self._state.name}',
            )
            return
        logger.info(f'{self._log_prefix}: partner left the session')
        await self._end_session()

    async def _handle_local_candidate(
        self,
        epoch: int,
        payload: dict[str, Any],
    ) -> None:
        if self._is_stale(epoch, 'local candidate'):
            return

        if self._channel.is_live:
            try:
                await self._channel.send(IceCandidate(payload))
                return
            except ChannelUnavailableError as e:
                logger.warning(
                    f'{self._log_prefix}: failed to send local candidate: {e}',
                )

        logger.info(
            f'{self._log_prefix}: channel is not live, buffering local '
            'candidate',
        )
        self._candidates.enqueue(payload)

    async def _handle_link_state(self, epoch: int, state: str) -> None:
        if self._is_stale(epoch, f'link state {state}'):
            return

        logger.info(f'{self._log_prefix}: link state is {state}')
        if state in _LINK_UP:
            self._cancel_grace_timer()
            if self._state in (
                PeerSessionState.NEGOTIATING,
                PeerSessionState.RECOVERING,
            ):
                await self._mark_connected()
        elif state == 'disconnected':
            if (
                self._state
                in (PeerSessionState.NEGOTIATING, PeerSessionState.CONNECTED)
                and self._grace_timer is None
            ):
                self._grace_timer = asyncio.get_running_loop().call_later(
                    self._config.disconnect_grace_period,
                    self._post,
                    self._handle_grace_expired,
                    self._epoch,
                )
        elif state == 'failed':
            self._cancel_grace_timer()
            if self._state in (
                PeerSessionState.NEGOTIATING,
                PeerSessionState.CONNECTED,
                PeerSessionState.RECOVERING,
            ):
                await self._restart()

    async def _handle_grace_expired(self, epoch: int) -> None:
        if self._is_stale(epoch, 'disconnect grace timer'):
            return

        self._grace_timer = None
        if (
            self._negotiator is not None
            and self._negotiator.link_state == 'disconnected'
            and self._state
            in (PeerSessionState.NEGOTIATING, PeerSessionState.CONNECTED)
        ):
            logger.warning(
                f'{self._log_prefix}: link did not recover within '
                f'{self._config.disconnect_grace_period} seconds',
            )
            await self._restart()

    async def _handle_recovery_expired(self, epoch: int) -> None:
        if self._is_stale(epoch, 'restart deadline'):
            return

        self._recovery_timer = None
        if self._state is not PeerSessionState.RECOVERING or (
            self._negotiator is not None
            and self._negotiator.link_state in _LINK_UP
        ):
            return
        logger.warning(
            f'{self._log_prefix}: link did not recover within '
            f'{self._config.restart_timeout} seconds of restarting',
        )
        await self._restart()

    async def _handle_negotiation_needed(self, epoch: int) -> None:
        if self._is_stale(epoch, 'negotiation needed'):
            return

        if self._state is PeerSessionState.CONNECTED:
            if self._channel.is_live:
                await self._renegotiate()
            else:
                logger.info(
                    f'{self._log_prefix}: channel is not live, deferring '
                    'renegotiation until reconnected',
                )
                self._offer_deferred = True
        elif self._state is PeerSessionState.RECOVERING and self._initiator:
            if self._channel.is_live:
                await self._send_offer(ice_restart=True)
            else:
                self._offer_deferred = True
        elif self._state is PeerSessionState.NEGOTIATING:
            # Renegotiate once the current exchange completes
            self._offer_deferred = True

    async def _handle_remote_track(
        self,
        epoch: int,
        track: MediaStreamTrack,
    ) -> None:
        if self._is_stale(epoch, 'remote track'):
            return
        logger.info(f'{self._log_prefix}: received remote {track.kind} track')
        for callback in list(self._track_callbacks):
            callback(track)

    async def _handle_channel_connect(self) -> None:
        logger.info(f'{self._log_prefix}: channel connected')
        candidates = self._candidates.drain_in_order()
        for i, payload in enumerate(candidates):
            try:
                await self._channel.send(IceCandidate(payload))
            except ChannelUnavailableError:
                for remaining in candidates[i:]:
                    self._candidates.enqueue(remaining)
                logger.warning(
                    f'{self._log_prefix}: channel closed while flushing '
                    f'candidates, {len(candidates) - i} remain buffered',
                )
                return
        if len(candidates) > 0:
            logger.info(
                f'{self._log_prefix}: flushed {len(candidates)} buffered '
                'candidate(s)',
            )

        if (
            self._state is PeerSessionState.AWAITING_MATCH
            and self._match_requested_on != self._channel.handle
        ):
            # The relay server forgets a client when its connection drops
            await self._channel.send(
                FindPartner(request_id=self._match_request_id),
            )
            self._match_requested_on = self._channel.handle
            logger.info(f'{self._log_prefix}: renewed partner request')
        elif self._offer_deferred:
            if self._state is PeerSessionState.CONNECTED:
                await self._renegotiate()
            elif self._state is PeerSessionState.RECOVERING:
                self._offer_deferred = False
                await self._send_offer(ice_restart=True)

    async def _handle_channel_disconnect(self) -> None:
        logger.warning(
            f'{self._log_prefix}: channel disconnected in state '
            f'{self._state.name}',
        )

    def _on_channel_connect(self) -> None:
        self._post(self._handle_channel_connect)

    def _on_channel_disconnect(self) -> None:
        self._post(self._handle_channel_disconnect)

    def _on_channel_message(self, message: Message) -> None:
        self._post(self._handle_message, message)
