from __future__ import annotations

import logging

import pytest

from peerpair.client.candidates import PendingCandidateBuffer


def test_invalid_capacity() -> None:
    with pytest.raises(ValueError, match='positive'):
        PendingCandidateBuffer(0)


def test_drain_in_order() -> None:
    buffer = PendingCandidateBuffer()
    assert buffer.capacity == 256
    assert buffer.drain_in_order() == []

    for i in range(5):
        buffer.enqueue({'candidate': f'candidate:{i}'})
    assert len(buffer) == 5

    drained = buffer.drain_in_order()
    assert [c['candidate'] for c in drained] == [
        f'candidate:{i}' for i in range(5)
    ]
    assert len(buffer) == 0
    assert buffer.drain_in_order() == []


def test_full_buffer_drops_oldest(caplog) -> None:
    caplog.set_level(logging.WARNING)
    buffer = PendingCandidateBuffer(capacity=3)

    for i in range(5):
        buffer.enqueue(i)

    assert len(buffer) == 3
    assert buffer.drain_in_order() == [2, 3, 4]
    assert (
        sum(
            'Pending candidate buffer is full' in record.message
            for record in caplog.records
        )
        == 2
    )
