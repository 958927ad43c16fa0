"""Buffer of local ICE candidates produced while the channel is down."""
from __future__ import annotations

import collections
import logging
from typing import Any

logger = logging.getLogger(__name__)


class PendingCandidateBuffer:
    """Bounded FIFO of candidate payloads.

    Candidates can only be appended with
    [`enqueue()`][peerpair.client.candidates.PendingCandidateBuffer.enqueue]
    and removed all at once, in the order they were enqueued, with
    [`drain_in_order()`][peerpair.client.candidates.PendingCandidateBuffer.drain_in_order].
    When the buffer is full, the oldest candidate is dropped.

    Args:
        capacity: Maximum number of buffered candidates.

    Raises:
        ValueError: If `capacity` is not positive.
    """

    def __init__(self, capacity: int = 256) -> None:
        if capacity < 1:
            raise ValueError(f'Capacity must be positive. Got {capacity}.')
        self._capacity = capacity
        self._candidates: collections.deque[Any] = collections.deque()

    def __len__(self) -> int:
        return len(self._candidates)

    @property
    def capacity(self) -> int:
        """Maximum number of buffered candidates."""
        return self._capacity

    def enqueue(self, candidate: Any) -> None:
        """Append a candidate payload to the buffer."""
        if len(self._candidates) >= self._capacity:
            self._candidates.popleft()
            logger.warning(
                f'Pending candidate buffer is full (capacity '
                f'{self._capacity}). Dropped the oldest candidate',
            )
        self._candidates.append(candidate)

    def drain_in_order(self) -> list[Any]:
        """Remove and return all buffered candidates, oldest first."""
        candidates = list(self._candidates)
        self._candidates.clear()
        return candidates
