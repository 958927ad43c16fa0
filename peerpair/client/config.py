"""Peer client configuration file parsing."""
from __future__ import annotations

import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import PositiveFloat
from pydantic import PositiveInt

from peerpair.utils.config import load


class ReconnectPolicy(BaseModel):
    """Channel reconnection policy.

    Attributes:
        health_check_interval: Seconds between channel liveness checks.
        failure_threshold: Number of consecutive failed health checks
            tolerated before the channel is fully reinitialized instead of
            reconnected.
        initial_delay: Seconds to wait after the first failed connection
            attempt. The delay doubles after each failed attempt.
        max_delay: Maximum seconds to wait between connection attempts.
        connect_timeout: Seconds to wait on the bounded connection attempt
            made before requesting a partner.
    """

    model_config = ConfigDict(extra='forbid')

    health_check_interval: PositiveFloat = 5
    failure_threshold: PositiveInt = 3
    initial_delay: PositiveFloat = 1
    max_delay: PositiveFloat = 5
    connect_timeout: PositiveFloat = 8


class IceServer(BaseModel):
    """STUN or TURN server used to discover ICE candidates.

    Attributes:
        urls: One or more server URLs (e.g., `stun:stun.l.google.com:19302`).
        username: Optional TURN username.
        credential: Optional TURN credential. Excluded from the
            [`repr()`][repr] of this class.
    """

    model_config = ConfigDict(extra='forbid')

    urls: str | list[str]
    username: str | None = None
    credential: str | None = Field(default=None, repr=False)


def _default_ice_servers() -> list[IceServer]:
    return [
        IceServer(urls='stun:stun.l.google.com:19302'),
        IceServer(urls='stun:stun1.l.google.com:19302'),
    ]


class PeerConfig(BaseModel):
    """Peer client configuration.

    Attributes:
        relay_address: Address of the relay server. Should start with
            `ws://` or `wss://`.
        verify_certificate: Verify the relay server's SSL certificate.
        ice_servers: STUN/TURN servers passed to the negotiation object.
        disconnect_grace_period: Seconds a disconnected peer link may take to
            recover on its own before a restart is attempted.
        max_restart_attempts: Number of link restarts attempted in a session
            before the session is ended.
        restart_timeout: Seconds a restarted link may take to reconnect
            before the restart counts as failed and another is attempted.
        max_pending_candidates: Capacity of the buffer holding local ICE
            candidates produced while the channel is down.
        reconnect: Channel reconnection policy.
    """

    model_config = ConfigDict(extra='forbid')

    relay_address: str = 'ws://localhost:3000'
    verify_certificate: bool = True
    ice_servers: list[IceServer] = Field(
        default_factory=_default_ice_servers,
    )
    disconnect_grace_period: PositiveFloat = 5
    max_restart_attempts: PositiveInt = 3
    restart_timeout: PositiveFloat = 10
    max_pending_candidates: PositiveInt = 256
    reconnect: ReconnectPolicy = Field(default_factory=ReconnectPolicy)

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse an TOML config file.

        Example:
            ```toml title="peer.toml"
            relay_address = "wss://relay.example.com"
            disconnect_grace_period = 5
            max_restart_attempts = 3
            restart_timeout = 10

            [[ice_servers]]
            urls = "stun:stun.l.google.com:19302"

            [[ice_servers]]
            urls = ["turn:turn.example.com:3478"]
            username = "user"
            credential = "secret"

            [reconnect]
            health_check_interval = 5
            failure_threshold = 3
            initial_delay = 1
            max_delay = 5
            connect_timeout = 8
            ```

            ```python
            from peerpair.client.config import PeerConfig

            config = PeerConfig.from_toml('peer.toml')
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)
