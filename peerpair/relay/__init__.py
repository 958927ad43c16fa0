"""Relay server matching clients and forwarding their signaling messages."""
from __future__ import annotations

from peerpair.relay.client import RelayClient
from peerpair.relay.matchmaker import Matchmaker
from peerpair.relay.server import RelayServer
