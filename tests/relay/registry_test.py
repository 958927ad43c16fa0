from __future__ import annotations

import uuid

import pytest

from peerpair.relay.registry import Session
from peerpair.relay.registry import SessionRegistry
from peerpair.relay.registry import WaitingQueue


def test_session_partner_of() -> None:
    a, b = uuid.uuid4(), uuid.uuid4()
    session = Session(initiator=a, responder=b)

    assert session.members == frozenset({a, b})
    assert session.partner_of(a) == b
    assert session.partner_of(b) == a
    with pytest.raises(ValueError, match='not a member'):
        session.partner_of(uuid.uuid4())


def test_waiting_queue_fifo() -> None:
    queue = WaitingQueue()
    handles = [uuid.uuid4() for _ in range(3)]
    for handle in handles:
        assert queue.push(handle)

    assert len(queue) == 3
    assert list(queue) == handles
    assert [queue.pop() for _ in range(3)] == handles
    assert len(queue) == 0


def test_waiting_queue_no_duplicates() -> None:
    queue = WaitingQueue()
    a, b = uuid.uuid4(), uuid.uuid4()

    assert queue.push(a)
    assert queue.push(b)
    assert not queue.push(a)

    assert list(queue) == [a, b]


def test_waiting_queue_remove() -> None:
    queue = WaitingQueue()
    a, b = uuid.uuid4(), uuid.uuid4()
    queue.push(a)
    queue.push(b)

    assert queue.remove(a)
    assert not queue.remove(a)
    assert a not in queue
    assert b in queue
    assert queue.pop() == b


def test_waiting_queue_pop_empty() -> None:
    with pytest.raises(IndexError):
        WaitingQueue().pop()


def test_registry_pair_is_symmetric() -> None:
    registry = SessionRegistry()
    a, b = uuid.uuid4(), uuid.uuid4()

    session = registry.pair(initiator=a, responder=b)

    assert len(registry) == 1
    assert a in registry
    assert b in registry
    assert registry.partner_of(a) == b
    assert registry.partner_of(b) == a
    assert registry.session_of(a) is session
    assert registry.session_of(b) is session
    assert registry.sessions() == [session]


def test_registry_pair_errors() -> None:
    registry = SessionRegistry()
    a, b, c = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()

    with pytest.raises(ValueError, match='itself'):
        registry.pair(a, a)

    registry.pair(a, b)
    with pytest.raises(ValueError, match='already paired'):
        registry.pair(c, a)
    with pytest.raises(ValueError, match='already paired'):
        registry.pair(b, c)

    assert registry.partner_of(c) is None


def test_registry_unpair_both_directions() -> None:
    registry = SessionRegistry()
    a, b = uuid.uuid4(), uuid.uuid4()
    session = registry.pair(a, b)

    assert registry.unpair(b) == session
    assert registry.partner_of(a) is None
    assert registry.partner_of(b) is None
    assert len(registry) == 0
    assert registry.unpair(a) is None
