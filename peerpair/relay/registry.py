"""Waiting queue and session registry owned by the matchmaker."""
from __future__ import annotations

import dataclasses
import datetime
import uuid
from typing import Iterator

ClientHandle = uuid.UUID
"""Opaque identifier of one client connection to the relay server."""


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(frozen=True)
class Session:
    """Pairing of two clients.

    Attributes:
        initiator: Client that creates the first offer.
        responder: Client that answers the first offer.
        created: Time the session was created at.
    """

    initiator: ClientHandle
    responder: ClientHandle
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
        compare=False,
    )

    @property
    def members(self) -> frozenset[ClientHandle]:
        """Both clients of the session."""
        return frozenset({self.initiator, self.responder})

    def partner_of(self, handle: ClientHandle) -> ClientHandle:
        """Get the other member of the session.

        Raises:
            ValueError: if `handle` is not a member of this session.
        """
        if handle == self.initiator:
            return self.responder
        elif handle == self.responder:
            return self.initiator
        raise ValueError(f'Client {handle} is not a member of {self}.')


class WaitingQueue:
    """FIFO queue of clients waiting for a partner.

    A handle is present at most once. Pushing a handle that is already
    waiting keeps its original position.
    """

    def __init__(self) -> None:
        # Dicts preserve insertion order and give O(1) removal.
        self._handles: dict[ClientHandle, None] = {}

    def __contains__(self, handle: object) -> bool:
        return handle in self._handles

    def __iter__(self) -> Iterator[ClientHandle]:
        return iter(list(self._handles))

    def __len__(self) -> int:
        return len(self._handles)

    def push(self, handle: ClientHandle) -> bool:
        """Append a handle to the tail of the queue.

        Returns:
            `False` if the handle was already waiting.
        """
        if handle in self._handles:
            return False
        self._handles[handle] = None
        return True

    def pop(self) -> ClientHandle:
        """Remove and return the handle at the head of the queue.

        Raises:
            IndexError: if the queue is empty.
        """
        try:
            handle = next(iter(self._handles))
        except StopIteration:
            raise IndexError('pop from an empty waiting queue') from None
        del self._handles[handle]
        return handle

    def remove(self, handle: ClientHandle) -> bool:
        """Remove a handle if present.

        Returns:
            If the handle was waiting.
        """
        if handle not in self._handles:
            return False
        del self._handles[handle]
        return True


class SessionRegistry:
    """Symmetric mapping of paired clients.

    If the registry maps `x` to `y` it also maps `y` to `x`, and each handle
    has at most one partner.
    """

    def __init__(self) -> None:
        self._sessions: dict[ClientHandle, Session] = {}

    def __contains__(self, handle: object) -> bool:
        return handle in self._sessions

    def __len__(self) -> int:
        """Number of active sessions."""
        return len(self._sessions) // 2

    def pair(
        self,
        initiator: ClientHandle,
        responder: ClientHandle,
    ) -> Session:
        """Register a new session between two unpaired clients.

        Raises:
            ValueError: if the handles are the same or either is already
                paired.
        """
        if initiator == responder:
            raise ValueError(f'Cannot pair client {initiator} with itself.')
        for handle in (initiator, responder):
            if handle in self._sessions:
                raise ValueError(f'Client {handle} is already paired.')

        session = Session(initiator=initiator, responder=responder)
        self._sessions[initiator] = session
        self._sessions[responder] = session
        return session

    def partner_of(self, handle: ClientHandle) -> ClientHandle | None:
        """Get the partner of a client or `None` if the client is unpaired."""
        session = self._sessions.get(handle, None)
        return None if session is None else session.partner_of(handle)

    def session_of(self, handle: ClientHandle) -> Session | None:
        """Get the session of a client or `None` if the client is unpaired."""
        return self._sessions.get(handle, None)

    def sessions(self) -> list[Session]:
        """Get a list of all active sessions."""
        return [
            session
            for handle, session in self._sessions.items()
            if handle == session.initiator
        ]

    def unpair(self, handle: ClientHandle) -> Session | None:
        """Remove the session of a client in both directions.

        Returns:
            The removed session or `None` if the client was not paired.
        """
        session = self._sessions.pop(handle, None)
        if session is not None:
            self._sessions.pop(session.partner_of(handle), None)
        return session
