"""Fixed-capacity experience replay memory."""

from __future__ import annotations

import random
from collections import deque
from typing import Iterator

from .config import ConfigError
from .types import Transition


class ReplayMemory:
    """FIFO ring buffer of transitions with uniform sampling *with replacement*.

    Once ``capacity`` transitions are stored, every ``add`` evicts the oldest
    one. ``sample(n)`` draws ``n`` independent indices, so a batch can contain
    the same transition more than once, including when fewer than ``n``
    transitions are stored. Only an empty memory yields an empty sample.
    """

    def __init__(self, capacity: int = 10_000, rng: random.Random | None = None):
        if capacity <= 0:
            raise ConfigError(f"Replay memory capacity must be > 0, got {capacity}")
        self.capacity = int(capacity)
        self._rng = rng or random.Random()
        self._buffer: deque[Transition] = deque(maxlen=self.capacity)

    def add(self, transition: Transition) -> None:
        self._buffer.append(transition)

    def sample(self, n: int) -> list[Transition]:
        size = len(self._buffer)
        if size == 0 or n <= 0:
            return []
        return [self._buffer[self._rng.randrange(size)] for _ in range(n)]

    def size(self) -> int:
        return len(self._buffer)

    def clear(self) -> None:
        self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)

    def __iter__(self) -> Iterator[Transition]:
        return iter(list(self._buffer))
