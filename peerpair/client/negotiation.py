"""Local WebRTC negotiation objects.

The [`PeerSessionController`][peerpair.client.controller.PeerSessionController]
drives a [`Negotiator`][peerpair.client.negotiation.Negotiator] which wraps
the local WebRTC peer connection. Negotiation payloads use the JSON layout
of browser session descriptions (`{type, sdp}`) and ICE candidates
(`{candidate, sdpMid, sdpMLineIndex}`) so aiortc clients interoperate with
browser clients through the relay server.
"""
from __future__ import annotations

import logging
from typing import Any
from typing import Callable
from typing import Protocol
from typing import runtime_checkable
from typing import Sequence

from aiortc import MediaStreamTrack
from aiortc import RTCConfiguration
from aiortc import RTCIceCandidate
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from peerpair.client.config import IceServer
from peerpair.client.exceptions import NegotiationError

logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = 'candidate:'
# foundation component transport priority address port typ type
_CANDIDATE_MIN_FIELDS = 8


@runtime_checkable
class NegotiationListener(Protocol):
    """Receiver of events emitted by a negotiator.

    Listeners must not block. Events are typically posted to an event queue
    and processed later.
    """

    def on_candidate(self, payload: dict[str, Any]) -> None:
        """Local ICE candidate discovered."""
        ...

    def on_link_state(self, state: str) -> None:
        """Peer link changed state.

        States are the `connectionState` values of a WebRTC peer connection:
        `new`, `connecting`, `connected`, `disconnected`, `failed`, and
        `closed`. ICE level `completed` is treated as `connected`.
        """
        ...

    def on_negotiation_needed(self) -> None:
        """Local changes require a new offer and answer exchange."""
        ...

    def on_track(self, track: MediaStreamTrack) -> None:
        """Remote media track received."""
        ...


@runtime_checkable
class Negotiator(Protocol):
    """Local negotiation object of one peer session."""

    @property
    def link_state(self) -> str:
        """Current state of the peer link."""
        ...

    def add_track(self, track: MediaStreamTrack) -> None:
        """Attach a local media track."""
        ...

    async def create_offer(
        self,
        *,
        ice_restart: bool = False,
    ) -> dict[str, Any]:
        """Create an offer and set it as the local description.

        Args:
            ice_restart: Request new ICE credentials so connectivity checks
                start over.

        Returns:
            Offer payload.
        """
        ...

    async def create_answer(self) -> dict[str, Any]:
        """Create an answer and set it as the local description.

        Returns:
            Answer payload.
        """
        ...

    async def set_remote_description(self, payload: dict[str, Any]) -> None:
        """Apply an offer or answer payload received from the partner."""
        ...

    async def add_candidate(self, payload: dict[str, Any]) -> None:
        """Apply an ICE candidate payload received from the partner."""
        ...

    async def restart_ice(self) -> None:
        """Restart connectivity checks in place.

        Raises:
            NotImplementedError: If in-place restarts are not supported. The
                caller should fall back to a new offer with `ice_restart`.
        """
        ...

    async def close(self) -> None:
        """Close the negotiation object and release its resources."""
        ...


NegotiatorFactory = Callable[[NegotiationListener], Negotiator]
"""Callable creating a negotiator that reports to the listener."""


def description_to_payload(
    description: RTCSessionDescription,
) -> dict[str, Any]:
    """Convert a session description to a JSON payload."""
    return {'type': description.type, 'sdp': description.sdp}


def payload_to_description(payload: Any) -> RTCSessionDescription:
    """Convert a JSON payload to a session description.

    Raises:
        NegotiationError: If the payload is not a valid description.
    """
    if not isinstance(payload, dict):
        raise NegotiationError(
            f'Session description must be an object. Got {payload!r}.',
        )
    try:
        return RTCSessionDescription(sdp=payload['sdp'], type=payload['type'])
    except (KeyError, ValueError) as e:
        raise NegotiationError(f'Invalid session description: {e}') from e


def payload_to_candidate(payload: Any) -> RTCIceCandidate | None:
    """Convert a JSON payload to an ICE candidate.

    Returns:
        The candidate or `None` if the payload signals the end of \
        candidates (an empty `candidate` string).

    Raises:
        NegotiationError: If the payload is not a valid candidate.
    """
    if not isinstance(payload, dict) or not isinstance(
        payload.get('candidate'),
        str,
    ):
        raise NegotiationError(f'Invalid ICE candidate payload: {payload!r}.')

    line = payload['candidate']
    if line == '':
        return None
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX) :]
    if len(line.split()) < _CANDIDATE_MIN_FIELDS:
        raise NegotiationError(
            'Invalid ICE candidate: expected at least '
            f'{_CANDIDATE_MIN_FIELDS} fields in {line!r}.',
        )

    try:
        candidate = candidate_from_sdp(line)
    except (IndexError, ValueError) as e:
        raise NegotiationError(f'Invalid ICE candidate: {e}') from e
    candidate.sdpMid = payload.get('sdpMid')
    candidate.sdpMLineIndex = payload.get('sdpMLineIndex')
    return candidate


def _to_rtc_ice_server(server: IceServer) -> RTCIceServer:
    return RTCIceServer(
        urls=server.urls,
        username=server.username,
        credential=server.credential,
    )


class AiortcNegotiator:
    """Negotiator backed by an aiortc peer connection.

    Note:
        aiortc gathers all local ICE candidates while setting the local
        description and embeds them in the SDP, so this negotiator never
        emits [`on_candidate()`][peerpair.client.negotiation.NegotiationListener.on_candidate]
        events. Candidates trickled by browser partners are applied with
        [`add_candidate()`][peerpair.client.negotiation.AiortcNegotiator.add_candidate].

    Note:
        aiortc does not support in-place ICE restarts, so
        [`restart_ice()`][peerpair.client.negotiation.AiortcNegotiator.restart_ice]
        always raises [`NotImplementedError`][NotImplementedError].

    Args:
        listener: Receiver of negotiation events.
        ice_servers: STUN/TURN servers. If `None`, aiortc's default STUN
            server is used.
    """

    def __init__(
        self,
        listener: NegotiationListener,
        ice_servers: Sequence[IceServer] | None = None,
    ) -> None:
        self._listener = listener
        configuration = (
            RTCConfiguration()
            if ice_servers is None
            else RTCConfiguration(
                iceServers=[_to_rtc_ice_server(s) for s in ice_servers],
            )
        )
        self._pc = RTCPeerConnection(configuration)
        self._pc.on('connectionstatechange', self._on_connection_state)
        self._pc.on('track', self._listener.on_track)

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._pc.connectionState}]'

    @property
    def link_state(self) -> str:
        """Current `connectionState` of the aiortc peer connection."""
        return self._pc.connectionState

    def _on_connection_state(self) -> None:
        logger.debug(
            f'{self._log_prefix}: connection state changed to '
            f'{self._pc.connectionState}',
        )
        self._listener.on_link_state(self._pc.connectionState)

    def add_track(self, track: MediaStreamTrack) -> None:
        """Attach a local media track.

        If a remote description was already applied, the listener is told a
        new negotiation is needed.
        """
        self._pc.addTrack(track)
        logger.info(f'{self._log_prefix}: added local {track.kind} track')
        if self._pc.remoteDescription is not None:
            self._listener.on_negotiation_needed()

    def _ensure_receiving(self) -> None:
        # Same as offerToReceiveAudio/offerToReceiveVideo in browsers
        kinds = {t.kind for t in self._pc.getTransceivers()}
        for kind in ('audio', 'video'):
            if kind not in kinds:
                self._pc.addTransceiver(kind, direction='recvonly')

    async def create_offer(
        self,
        *,
        ice_restart: bool = False,
    ) -> dict[str, Any]:
        """Create an offer and set it as the local description.

        Args:
            ice_restart: Logged only. aiortc creates a fresh offer from the
                current transceivers either way.

        Raises:
            NegotiationError: If the offer cannot be created.
        """
        self._ensure_receiving()
        if ice_restart:
            logger.info(f'{self._log_prefix}: creating offer for ICE restart')
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except Exception as e:
            raise NegotiationError(f'Failed to create offer: {e}') from e
        return description_to_payload(self._pc.localDescription)

    async def create_answer(self) -> dict[str, Any]:
        """Create an answer and set it as the local description.

        Raises:
            NegotiationError: If the answer cannot be created.
        """
        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except Exception as e:
            raise NegotiationError(f'Failed to create answer: {e}') from e
        return description_to_payload(self._pc.localDescription)

    async def set_remote_description(self, payload: dict[str, Any]) -> None:
        """Apply an offer or answer payload received from the partner.

        Raises:
            NegotiationError: If the payload is invalid or cannot be applied.
        """
        description = payload_to_description(payload)
        try:
            await self._pc.setRemoteDescription(description)
        except Exception as e:
            raise NegotiationError(
                f'Failed to apply remote {description.type}: {e}',
            ) from e

    async def add_candidate(self, payload: dict[str, Any]) -> None:
        """Apply an ICE candidate payload received from the partner.

        Raises:
            NegotiationError: If the payload is invalid.
        """
        candidate = payload_to_candidate(payload)
        if candidate is None:
            logger.debug(f'{self._log_prefix}: end of remote candidates')
            return
        await self._pc.addIceCandidate(candidate)

    async def restart_ice(self) -> None:
        """Not supported by aiortc.

        Raises:
            NotImplementedError: Always.
        """
        raise NotImplementedError('aiortc does not support ICE restarts.')

    async def close(self) -> None:
        """Close the aiortc peer connection."""
        await self._pc.close()


def aiortc_negotiator_factory(
    ice_servers: Sequence[IceServer] | None = None,
) -> NegotiatorFactory:
    """Get a factory of [`AiortcNegotiator`][peerpair.client.negotiation.AiortcNegotiator] instances."""  # noqa: E501

    def _factory(listener: NegotiationListener) -> Negotiator:
        return AiortcNegotiator(listener, ice_servers)

    return _factory
