"""Peer session states and the allowed transitions between them."""
from __future__ import annotations

import enum

from peerpair.client.exceptions import InvalidTransitionError


class PeerSessionState(enum.Enum):
    """State of a [`PeerSessionController`][peerpair.client.controller.PeerSessionController]."""  # noqa: E501

    IDLE = 'idle'
    """No session and not waiting for a partner."""
    AWAITING_MATCH = 'awaiting-match'
    """Waiting in the relay server's queue for a partner."""
    MATCHED = 'matched'
    """Partner assigned and role known."""
    NEGOTIATING = 'negotiating'
    """Session descriptions are being exchanged with the partner."""
    CONNECTED = 'connected'
    """The direct link to the partner is established."""
    RECOVERING = 'recovering'
    """The direct link failed and is being restarted."""
    ENDED = 'ended'
    """The session was torn down."""


TRANSITIONS: dict[PeerSessionState, frozenset[PeerSessionState]] = {
    PeerSessionState.IDLE: frozenset(
        {PeerSessionState.AWAITING_MATCH, PeerSessionState.ENDED},
    ),
    PeerSessionState.AWAITING_MATCH: frozenset(
        {PeerSessionState.MATCHED, PeerSessionState.ENDED},
    ),
    PeerSessionState.MATCHED: frozenset(
        {PeerSessionState.NEGOTIATING, PeerSessionState.ENDED},
    ),
    PeerSessionState.NEGOTIATING: frozenset(
        {
            PeerSessionState.CONNECTED,
            PeerSessionState.RECOVERING,
            PeerSessionState.ENDED,
        },
    ),
    PeerSessionState.CONNECTED: frozenset(
        {
            PeerSessionState.NEGOTIATING,
            PeerSessionState.RECOVERING,
            PeerSessionState.ENDED,
        },
    ),
    PeerSessionState.RECOVERING: frozenset(
        {PeerSessionState.CONNECTED, PeerSessionState.ENDED},
    ),
    PeerSessionState.ENDED: frozenset({PeerSessionState.IDLE}),
}
"""Allowed transitions keyed by the current state."""


def can_transition(
    current: PeerSessionState,
    target: PeerSessionState,
) -> bool:
    """Check if `current` may transition to `target`."""
    return target in TRANSITIONS[current]


def check_transition(
    current: PeerSessionState,
    target: PeerSessionState,
) -> None:
    """Validate a transition.

    Raises:
        InvalidTransitionError: If the transition is not in
            [`TRANSITIONS`][peerpair.client.states.TRANSITIONS].
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f'Cannot transition from {current.name} to {target.name}.',
        )
