"""Matchmaking service pairing waiting clients.

The [`Matchmaker`][peerpair.relay.matchmaker.Matchmaker] exclusively owns the
[`WaitingQueue`][peerpair.relay.registry.WaitingQueue] and
[`SessionRegistry`][peerpair.relay.registry.SessionRegistry]. Operations
never perform I/O. Instead, they return the
[`Delivery`][peerpair.relay.matchmaker.Delivery] notifications the caller
must send once the operation has returned.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable
from typing import NamedTuple

from peerpair.relay.messages import Matched
from peerpair.relay.messages import Message
from peerpair.relay.messages import PartnerDisconnected
from peerpair.relay.registry import ClientHandle
from peerpair.relay.registry import Session
from peerpair.relay.registry import SessionRegistry
from peerpair.relay.registry import WaitingQueue

logger = logging.getLogger(__name__)


class Delivery(NamedTuple):
    """Notification to send to a client."""

    handle: ClientHandle
    message: Message


class Matchmaker:
    """Pairs clients requesting a partner in first-come first-served order.

    All operations are serialized with a lock so the same instance can be
    shared by every connection handler. Every operation is O(1) and never
    blocks on I/O while holding the lock.

    Example:
        ```python
        from peerpair.relay.matchmaker import Matchmaker

        matchmaker = Matchmaker()
        assert matchmaker.request_match(x) == []
        deliveries = matchmaker.request_match(y)
        # [Delivery(y, Matched(initiator=True)),
        #  Delivery(x, Matched(initiator=False))]
        assert matchmaker.partner_of(x) == y
        ```

    Args:
        is_live: Callable which returns if the connection of a client is
            still open. Used to discard stale entries at the head of the
            waiting queue. If `None`, all clients are considered live.
    """

    def __init__(
        self,
        is_live: Callable[[ClientHandle], bool] | None = None,
    ) -> None:
        self._is_live = is_live if is_live is not None else lambda _: True
        self._lock = threading.Lock()
        self._queue = WaitingQueue()
        self._registry = SessionRegistry()
        self._request_ids: dict[ClientHandle, str | None] = {}

    @property
    def waiting(self) -> list[ClientHandle]:
        """Snapshot of the waiting queue from head to tail."""
        with self._lock:
            return list(self._queue)

    def is_waiting(self, handle: ClientHandle) -> bool:
        """Check if a client is in the waiting queue."""
        with self._lock:
            return handle in self._queue

    def partner_of(self, handle: ClientHandle) -> ClientHandle | None:
        """Get the partner of a client or `None` if the client is unpaired."""
        with self._lock:
            return self._registry.partner_of(handle)

    def session_of(self, handle: ClientHandle) -> Session | None:
        """Get the session of a client or `None` if the client is unpaired."""
        with self._lock:
            return self._registry.session_of(handle)

    def sessions(self) -> list[Session]:
        """Get a list of all active sessions."""
        with self._lock:
            return self._registry.sessions()

    def request_match(
        self,
        handle: ClientHandle,
        request_id: str | None = None,
    ) -> list[Delivery]:
        """Match a client with the longest waiting client.

        The client is first removed from its current session (notifying the
        old partner) and from the waiting queue. If another client is
        waiting, the two are paired and the requesting client becomes the
        initiator. Otherwise, the client is appended to the waiting queue.

        Each [`Matched`][peerpair.relay.messages.Matched] notification
        echoes the `request_id` its recipient requested a partner with.

        Args:
            handle: Client requesting a partner.
            request_id: Optional identifier of the request.

        Returns:
            Notifications to deliver. Empty if the client is now waiting.
        """
        with self._lock:
            deliveries = self._leave(handle)

            if len(self._queue) == 0:
                self._queue.push(handle)
                self._request_ids[handle] = request_id
                logger.info(f'Client {handle} is waiting for a partner')
                return deliveries

            partner = self._queue.pop()
            partner_request_id = self._request_ids.pop(partner, None)
            if not self._is_live(partner):
                logger.warning(
                    f'Discarded stale waiting client {partner}; client '
                    f'{handle} is waiting for a partner instead',
                )
                self._queue.push(handle)
                self._request_ids[handle] = request_id
                return deliveries

            self._registry.pair(initiator=handle, responder=partner)
            logger.info(f'Matched {handle} (initiator) with {partner}')
            deliveries.extend(
                [
                    Delivery(
                        handle,
                        Matched(initiator=True, request_id=request_id),
                    ),
                    Delivery(
                        partner,
                        Matched(
                            initiator=False,
                            request_id=partner_request_id,
                        ),
                    ),
                ],
            )
            return deliveries

    def leave(self, handle: ClientHandle) -> list[Delivery]:
        """Remove a client from its session and from the waiting queue.

        Calling this method for a client that is neither paired nor waiting
        is a no-op.

        Args:
            handle: Client leaving.

        Returns:
            A notification for the old partner if the client was paired.
        """
        with self._lock:
            return self._leave(handle)

    def _leave(self, handle: ClientHandle) -> list[Delivery]:
        # Caller must hold self._lock
        deliveries: list[Delivery] = []
        session = self._registry.unpair(handle)
        if session is not None:
            partner = session.partner_of(handle)
            deliveries.append(Delivery(partner, PartnerDisconnected()))
            logger.info(f'Disconnected {handle} from {partner}')
        self._request_ids.pop(handle, None)
        if self._queue.remove(handle):
            logger.info(f'Client {handle} removed from the waiting queue')
        return deliveries
