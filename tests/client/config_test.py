from __future__ import annotations

import pathlib

import pydantic
import pytest

from peerpair.client.config import IceServer
from peerpair.client.config import PeerConfig
from peerpair.client.config import ReconnectPolicy


def test_reconnect_policy_default() -> None:
    policy = ReconnectPolicy()
    assert policy.health_check_interval == 5
    assert policy.failure_threshold == 3
    assert policy.initial_delay == 1
    assert policy.max_delay == 5
    assert policy.connect_timeout == 8


def test_peer_config_default() -> None:
    config = PeerConfig()
    assert config.relay_address == 'ws://localhost:3000'
    assert config.disconnect_grace_period == 5
    assert config.max_restart_attempts == 3
    assert config.restart_timeout == 10
    assert len(config.ice_servers) == 2
    assert all(
        isinstance(server.urls, str) and server.urls.startswith('stun:')
        for server in config.ice_servers
    )


def test_ice_server_credential_hidden() -> None:
    server = IceServer(urls='turn:a', username='user', credential='secret')
    assert 'secret' not in repr(server)


@pytest.mark.parametrize(
    'kwargs',
    (
        {'max_restart_attempts': 0},
        {'disconnect_grace_period': -1},
        {'max_pending_candidates': 0},
        {'unknown_option': True},
    ),
)
def test_peer_config_invalid(kwargs: dict[str, object]) -> None:
    with pytest.raises(pydantic.ValidationError):
        PeerConfig(**kwargs)  # type: ignore[arg-type]


def test_read_from_config_file(tmp_path: pathlib.Path) -> None:
    data = """\
relay_address = "wss://relay.example.com"
verify_certificate = false
disconnect_grace_period = 2.5
max_restart_attempts = 1

[[ice_servers]]
urls = ["turn:turn.example.com:3478", "turns:turn.example.com:5349"]
username = "user"
credential = "secret"

[reconnect]
failure_threshold = 5
connect_timeout = 3
"""
    filepath = tmp_path / 'peer.toml'
    with open(filepath, 'w') as f:
        f.write(data)

    config = PeerConfig.from_toml(filepath)

    assert config.relay_address == 'wss://relay.example.com'
    assert not config.verify_certificate
    assert config.disconnect_grace_period == 2.5
    assert config.max_restart_attempts == 1
    assert config.ice_servers == [
        IceServer(
            urls=[
                'turn:turn.example.com:3478',
                'turns:turn.example.com:5349',
            ],
            username='user',
            credential='secret',
        ),
    ]
    assert config.reconnect.failure_threshold == 5
    assert config.reconnect.connect_timeout == 3
    # Omitted values use the defaults
    assert config.reconnect.initial_delay == 1
    assert config.max_pending_candidates == 256


def test_read_from_config_file_unknown_key(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'peer.toml'
    with open(filepath, 'w') as f:
        f.write('[reconnect]\nretries = 3\n')

    with pytest.raises(pydantic.ValidationError):
        PeerConfig.from_toml(filepath)
